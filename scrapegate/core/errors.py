"""Error taxonomy for the enforcement core.

Policy outcomes (quota, cooldown, cost ceiling) are returned as data with
reason codes. Exceptions are reserved for programmer errors and for the
``assert_*`` helpers that callers use at their dispatch boundary.
"""

from datetime import datetime
from typing import Any, Dict, Optional


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details or {}

    def to_payload(self) -> dict:
        return {
            "error": {"code": self.code, "message": self.message, "details": self.details},
        }


class UnknownTierError(AppError, ValueError):
    """Raised for a tier key outside the tier table (caller bug)."""
    code = "unknown_tier"
    status_code = 500


class UnknownMarketplaceError(AppError, ValueError):
    """Raised for a marketplace key outside the cost table (caller bug)."""
    code = "unknown_marketplace"
    status_code = 500


class ConfigUnavailableError(AppError):
    code = "CONFIG_UNAVAILABLE"
    status_code = 503


class ScrapingDisabledError(AppError):
    code = "SCRAPERS_DISABLED"
    status_code = 503


class GateClosedError(AppError):
    code = "OBSERVABILITY_GATE_CLOSED"
    status_code = 503


class MarketplaceRateLimitedError(AppError):
    code = "MARKETPLACE_RATE_LIMIT"
    status_code = 429


class EnforcementBlockedError(AppError):
    code = "enforcement_blocked"
    status_code = 429

    def __init__(
        self,
        message: str,
        *,
        reason_code: str,
        next_allowed_at: Optional[datetime] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        payload = dict(details or {})
        payload["next_allowed_at"] = next_allowed_at.isoformat() if next_allowed_at else None
        super().__init__(message, code=reason_code, details=payload)
        self.reason_code = reason_code
        self.next_allowed_at = next_allowed_at


class AuditWriteError(AppError):
    code = "audit_write_failed"
    status_code = 500
