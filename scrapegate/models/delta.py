"""
scrapegate/models/delta.py
"""

from pydantic import BaseModel, ConfigDict


class DeltaSignal(BaseModel):
    model_config = ConfigDict(frozen=True)

    changed: bool
    delta_count: int
    current_count: int
    last_seen_count: int


class DeltaEvaluation(DeltaSignal):
    """Signal plus the dispatcher's skip flag (nothing new observed)."""

    short_circuit: bool
