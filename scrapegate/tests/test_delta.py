from scrapegate.core.metrics import delta_short_circuit_total
from scrapegate.features.delta.service import compute_delta_signal, evaluate_delta, hash_listing


def test_identical_sets_are_unchanged():
    signal = compute_delta_signal(["a", "b"], ["a", "b"])
    assert signal.changed is False
    assert (signal.delta_count, signal.current_count, signal.last_seen_count) == (0, 2, 2)


def test_new_hash_is_a_change():
    signal = compute_delta_signal(["a", "b", "c"], ["a", "b"])
    assert signal.changed is True
    assert signal.delta_count == 1


def test_removed_listings_alone_are_not_a_change():
    signal = compute_delta_signal(["a"], ["a", "b", "c"])
    assert signal.changed is False
    assert signal.last_seen_count == 3


def test_empty_current_means_nothing_observed():
    signal = compute_delta_signal([], ["a", "b"])
    assert signal.changed is False
    assert signal.current_count == 0
    assert signal.last_seen_count == 2


def test_malformed_input_is_dropped():
    signal = compute_delta_signal(["a", 7, None, " b "], "not-a-list")
    assert signal.current_count == 2
    assert signal.delta_count == 2
    assert signal.last_seen_count == 0


def test_hash_listing_normalizes_title():
    assert hash_listing("123", 19.5, "  Vintage Lamp ") == "123::19.5::vintage lamp"


class TestEvaluateDelta:
    def test_short_circuits_when_nothing_is_new(self):
        meta = {"current_listing_hashes": ["a"], "last_seen_listing_hashes": ["a"]}
        evaluation = evaluate_delta(meta, "ebay")

        assert evaluation.short_circuit is True
        assert delta_short_circuit_total.value({"marketplace": "ebay"}) == 1

    def test_no_metadata_never_short_circuits(self):
        assert evaluate_delta(None).short_circuit is False
        assert evaluate_delta({"last_seen_listing_hashes": ["a"]}).short_circuit is False

    def test_changes_pass_through(self):
        evaluation = evaluate_delta({"current_listing_hashes": ["a", "b"], "last_seen_listing_hashes": ["a"]})
        assert evaluation.short_circuit is False
        assert evaluation.changed is True
