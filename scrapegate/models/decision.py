"""
scrapegate/models/decision.py

EnforcementDecision is the one artifact callers act on: it picks the
scraper mode, carries the counter delta to apply and the audit trail that
explains the outcome.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from scrapegate.models.guardrails import GuardrailResult
from scrapegate.models.telemetry import TelemetryIncrement
from scrapegate.models.tier import EnforcementMode


class DecisionAudit(BaseModel):
    model_config = ConfigDict(frozen=True)

    guardrails_hit: List[str] = Field(default_factory=list)
    degrade_path: List[str] = Field(default_factory=list)
    cost_model_version: str
    entitlements_version: int
    input_hash: str
    guardrail: Optional[GuardrailResult] = None


class EnforcementDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    mode: EnforcementMode
    reason_code: str
    counters_delta: Optional[TelemetryIncrement] = None
    next_allowed_at: Optional[datetime] = None
    audit: DecisionAudit

    @property
    def outcome(self) -> str:
        """ALLOW / DOWNGRADE / DENY as recorded in the audit trail."""
        if not self.allowed:
            return "DENY"
        if len(self.audit.degrade_path) > 1:
            return "DOWNGRADE"
        return "ALLOW"
