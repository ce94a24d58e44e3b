"""
scrapegate/models/guardrails.py

Guardrail results as a closed tagged union on ``reason_code``.

Each variant carries only the fields relevant to its code, so audit
consumers never have to inspect a loose dict.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class GuardrailDecision(str, Enum):
    ALLOW = "ALLOW"
    THROTTLE = "THROTTLE"
    BLOCK = "BLOCK"


class _GuardrailVariant(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class EntitlementsMissing(_GuardrailVariant):
    reason_code: Literal["ENTITLEMENTS_MISSING"] = "ENTITLEMENTS_MISSING"
    decision: Literal["BLOCK"] = "BLOCK"
    invalid_reason: str


class MaxDailyRunsExceeded(_GuardrailVariant):
    reason_code: Literal["MAX_DAILY_RUNS_EXCEEDED"] = "MAX_DAILY_RUNS_EXCEEDED"
    decision: Literal["BLOCK"] = "BLOCK"
    violated_limit: Literal["max_daily_runs"] = "max_daily_runs"
    suggested_action: Literal["HARD_STOP"] = "HARD_STOP"
    limit: int
    observed: int


class MaxProxyGbExceeded(_GuardrailVariant):
    reason_code: Literal["MAX_PROXY_GB_EXCEEDED"] = "MAX_PROXY_GB_EXCEEDED"
    decision: Literal["BLOCK"] = "BLOCK"
    violated_limit: Literal["max_proxy_gb_per_day"] = "max_proxy_gb_per_day"
    suggested_action: Literal["HARD_STOP"] = "HARD_STOP"
    limit: float
    observed: float


class RefreshIntervalFloor(_GuardrailVariant):
    reason_code: Literal["REFRESH_INTERVAL_FLOOR"] = "REFRESH_INTERVAL_FLOOR"
    decision: Literal["BLOCK"] = "BLOCK"
    violated_limit: Literal["refresh_interval_floor_seconds"] = "refresh_interval_floor_seconds"
    suggested_action: Literal["HARD_STOP"] = "HARD_STOP"
    floor_seconds: float
    elapsed_seconds: float
    next_allowed_at: datetime


class MaxConcurrencyExceeded(_GuardrailVariant):
    reason_code: Literal["MAX_CONCURRENCY_EXCEEDED"] = "MAX_CONCURRENCY_EXCEEDED"
    decision: Literal["THROTTLE"] = "THROTTLE"
    violated_limit: Literal["max_concurrency_user"] = "max_concurrency_user"
    suggested_action: Literal["SOFT_LIMIT"] = "SOFT_LIMIT"
    limit: int
    observed: int


class DailyCostLimitExceeded(_GuardrailVariant):
    reason_code: Literal["DAILY_COST_LIMIT_EXCEEDED"] = "DAILY_COST_LIMIT_EXCEEDED"
    decision: Literal["THROTTLE"] = "THROTTLE"
    violated_limit: Literal["daily_cost_ceiling_usd"] = "daily_cost_ceiling_usd"
    suggested_action: Literal["SOFT_LIMIT"] = "SOFT_LIMIT"
    ceiling_usd: float
    estimated_usd: float


class Allowed(_GuardrailVariant):
    reason_code: Literal["ALLOWED"] = "ALLOWED"
    decision: Literal["ALLOW"] = "ALLOW"


GuardrailResult = Annotated[
    Union[
        EntitlementsMissing,
        MaxDailyRunsExceeded,
        MaxProxyGbExceeded,
        RefreshIntervalFloor,
        MaxConcurrencyExceeded,
        DailyCostLimitExceeded,
        Allowed,
    ],
    Field(discriminator="reason_code"),
]

HARD_STOP_CODES = frozenset({
    "ENTITLEMENTS_MISSING",
    "MAX_DAILY_RUNS_EXCEEDED",
    "MAX_PROXY_GB_EXCEEDED",
    "REFRESH_INTERVAL_FLOOR",
})
