from datetime import timedelta

import pytest

from scrapegate.features.antibot.service import (
    PageClassification,
    PageState,
    classify_page_state,
    cooldown_for_page_state,
    detect_block_signals,
    retry_delay_seconds,
)


@pytest.mark.parametrize(
    "html, state, reason",
    [
        (None, PageState.BLOCKED, "no_results"),
        ("   ", PageState.BLOCKED, "no_results"),
        ("<p>No results found for lamp</p>", PageState.BLOCKED, "no_results"),
        ('<script src="https://js.datadome.co/tags.js"></script>', PageState.BLOCKED, "datadome"),
        ('<div class="cf-turnstile"></div>', PageState.BLOCKED, "turnstile"),
        ("<h1>Access Denied</h1>", PageState.BLOCKED, "blocked_html"),
        ("<form>Please log in to continue</form>", PageState.LOGIN, None),
        ("<p>Verify you are human</p>", PageState.CONSENT, None),
        ("<p>429 Too Many Requests</p>", PageState.RATE_LIMIT, None),
        ('<div data-testid="listing-card">Lamp</div>', PageState.OK, None),
        ("<html><body>something else</body></html>", PageState.BLOCKED, "ambiguous_state"),
    ],
)
def test_classify_page_state(html, state, reason):
    assert classify_page_state(html) == PageClassification(state, reason)


def test_no_results_outranks_block_providers():
    html = "No results found <script>datadome</script>"
    assert classify_page_state(html).reason == "no_results"


def test_detect_block_signals():
    assert detect_block_signals("DataDome").provider == "datadome"
    assert detect_block_signals("<html></html>").blocked is False
    assert detect_block_signals(None).blocked is False


def test_retry_delay_doubles_and_caps():
    assert [retry_delay_seconds(n, base=1, maximum=16) for n in range(1, 7)] == [1, 2, 4, 8, 16, 16]


class TestCooldowns:
    def test_ok_and_empty_pages_have_no_cooldown(self, fixed_now):
        assert cooldown_for_page_state(PageClassification(PageState.OK), fixed_now) is None
        assert cooldown_for_page_state(PageClassification(PageState.BLOCKED, "no_results"), fixed_now) is None

    def test_rate_limit_uses_retry_delay(self, fixed_now, override_settings):
        override_settings(ANTIBOT_RETRY_BASE_SECONDS=2.0, ANTIBOT_RETRY_MAX_SECONDS=60.0)
        until = cooldown_for_page_state(PageClassification(PageState.RATE_LIMIT), fixed_now, attempt=3)
        assert until == fixed_now + timedelta(seconds=8)

    @pytest.mark.parametrize("state", [PageState.BLOCKED, PageState.LOGIN, PageState.CONSENT])
    def test_block_states_use_fixed_cooldown(self, state, fixed_now, override_settings):
        override_settings(ANTIBOT_BLOCK_COOLDOWN_MINUTES=45)
        until = cooldown_for_page_state(PageClassification(state, "datadome"), fixed_now)
        assert until == fixed_now + timedelta(minutes=45)


def test_listing_page_with_login_link_is_ok():
    html = '<nav><a href="/login">Login</a></nav><div data-testid="listing-card">iPhone</div>'
    assert classify_page_state(html) == PageClassification(PageState.OK)


def test_bare_login_or_blocked_words_are_not_markers():
    assert classify_page_state('<a href="/login">Login</a>').reason == "ambiguous_state"
    assert classify_page_state("<p>blocked seller list</p>").reason == "ambiguous_state"


def test_block_provider_outranks_listing_markers():
    html = '<div data-item-id="1"></div><script src="https://js.datadome.co/tags.js"></script>'
    assert classify_page_state(html) == PageClassification(PageState.BLOCKED, "datadome")
