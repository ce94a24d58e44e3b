"""Enforcement input contracts and hashing utilities."""
from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from scrapegate.models.entitlements import EntitlementsSnapshot
from scrapegate.models.telemetry import RecentTelemetry
from scrapegate.models.tier import EnforcementMode, Marketplace, TierKey


def stable_hash(value: object) -> str:
    if isinstance(value, str):
        raw = value
    else:
        raw = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class AdmissionContext(BaseModel):
    """Job context for the hard guardrail chain (quota, refresh floor)."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    entitlements: Optional[EntitlementsSnapshot] = None
    running_jobs: Optional[int] = None
    last_run_at: Optional[datetime] = None


class EnforcementInput(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    user_id: str
    tier: TierKey
    marketplace: Marketplace
    requested_mode: EnforcementMode
    now: datetime
    recent_telemetry: RecentTelemetry = Field(default_factory=RecentTelemetry)
    budget_remaining_usd: Optional[float] = None
    admission: Optional[AdmissionContext] = None

    @field_validator("requested_mode")
    @classmethod
    def _requested_mode_is_an_action(cls, value: EnforcementMode) -> EnforcementMode:
        if value is EnforcementMode.BLOCK:
            raise ValueError("requested_mode must be FULL, PARTIAL or SIGNAL")
        return value


def input_hash(payload: Union[EnforcementInput, dict]) -> str:
    """Stable hash of an enforcement input; equal inputs hash equal."""
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    return stable_hash(payload)
