"""
scrapegate/features/delta/service.py

Delta pre-filter: did anything new show up since the last scrape?

An empty current read means "nothing observed this cycle", never
"everything was removed".
"""

import logging
from typing import Any, Iterable, List, Mapping, Optional

from scrapegate.core.metrics import delta_short_circuit_total
from scrapegate.models.delta import DeltaEvaluation, DeltaSignal

logger = logging.getLogger(__name__)


def _normalize_hashes(value: Any) -> List[str]:
    # Non-list input and non-string entries are dropped, not errors
    if not isinstance(value, (list, tuple)):
        return []
    return [item.strip() for item in value if isinstance(item, str)]


def hash_listing(listing_id: str, price: Any, title: str) -> str:
    return f"{listing_id}::{price}::{title.strip().lower()}"


def compute_delta_signal(
    current_listing_hashes: Optional[Iterable[str]],
    last_seen_listing_hashes: Optional[Iterable[str]],
) -> DeltaSignal:
    current = _normalize_hashes(current_listing_hashes)
    last_seen = set(_normalize_hashes(last_seen_listing_hashes))

    if not current:
        return DeltaSignal(changed=False, delta_count=0, current_count=0, last_seen_count=len(last_seen))

    new_hashes = {value for value in current if value not in last_seen}
    return DeltaSignal(
        changed=bool(new_hashes),
        delta_count=len(new_hashes),
        current_count=len(current),
        last_seen_count=len(last_seen),
    )


def evaluate_delta(meta: Optional[Mapping[str, Any]], marketplace: Optional[str] = None) -> DeltaEvaluation:
    """
    Evaluate a job's delta metadata.

    ``meta`` carries ``current_listing_hashes`` and ``last_seen_listing_hashes``.
    ``short_circuit`` is set when listings were observed and none are new.
    """
    meta = meta or {}
    signal = compute_delta_signal(
        meta.get("current_listing_hashes"),
        meta.get("last_seen_listing_hashes"),
    )
    short_circuit = signal.delta_count == 0 and signal.current_count > 0
    if short_circuit:
        delta_short_circuit_total.inc({"marketplace": marketplace or "unknown"})
        logger.info(
            "[delta] short circuit, nothing new",
            extra={"marketplace": marketplace, "current_count": signal.current_count},
        )
    return DeltaEvaluation(**signal.model_dump(), short_circuit=short_circuit)
