"""Audit logging for enforcement decisions."""
from __future__ import annotations

import json
import logging
import threading
from typing import Any, Dict, List, Optional, Protocol, Union

from sqlalchemy import insert, select

from scrapegate.core.config import settings
from scrapegate.core.database import enforcement_events, get_db_session
from scrapegate.core.errors import AuditWriteError
from scrapegate.core.metrics import audit_write_failures_total
from scrapegate.features.guardrails.service import EnforcementGateDecision, GateMode
from scrapegate.models.decision import EnforcementDecision
from scrapegate.models.tier import Marketplace, TierKey

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def write(self, record: Dict[str, Any]) -> None:
        ...


class SqlAuditSink:
    """enforcement_events table via SQLAlchemy Core."""

    def write(self, record: Dict[str, Any]) -> None:
        with get_db_session() as session:
            session.execute(insert(enforcement_events).values(**record))

    def list_events(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        stmt = select(enforcement_events).order_by(enforcement_events.c.id)
        if user_id is not None:
            stmt = stmt.where(enforcement_events.c.user_id == user_id)
        with get_db_session() as session:
            return [dict(row) for row in session.execute(stmt).mappings().all()]


class InMemoryAuditSink:
    def __init__(self):
        self.events: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def write(self, record: Dict[str, Any]) -> None:
        with self._lock:
            self.events.append(dict(record))

    def list_events(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [event for event in self.events if user_id is None or event["user_id"] == user_id]


def _audit_enabled() -> bool:
    return bool(getattr(settings, "ENFORCEMENT_AUDIT_ENABLED", True))


def _audit_mode() -> str:
    mode = getattr(settings, "ENFORCEMENT_AUDIT_MODE", "advisory") or "advisory"
    return mode if mode in {"advisory", "enforced"} else "advisory"


def _json_safe(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


def _key(value: Union[str, Marketplace, TierKey]) -> str:
    return str(getattr(value, "value", value))


def write_audit_record(sink: AuditSink, record: Dict[str, Any]) -> bool:
    """
    Write one audit row.

    Returns False when the write failed in advisory mode. In enforced mode a
    failed write raises AuditWriteError.
    """
    if not _audit_enabled():
        return True
    try:
        sink.write(record)
        return True
    except Exception as exc:
        audit_write_failures_total.inc()
        logger.warning(
            "[audit] write failed",
            extra={"user_id": record.get("user_id"), "reason_code": record.get("reason_code")},
            exc_info=True,
        )
        if _audit_mode() == "enforced":
            raise AuditWriteError("Enforcement audit write failed", details={"reason_code": record.get("reason_code")}) from exc
        return False


def classify_decision(decision: EnforcementDecision) -> str:
    return decision.outcome


def record_enforcement_event(
    sink: AuditSink,
    user_id: str,
    marketplace: Union[str, Marketplace],
    tier: Union[str, TierKey],
    job_id: Optional[str],
    decision: EnforcementDecision,
) -> bool:
    record = {
        "user_id": user_id,
        "marketplace": _key(marketplace),
        "tier": _key(tier),
        "decision": classify_decision(decision),
        "mode": decision.mode.value,
        "reason_code": decision.reason_code,
        "job_id": job_id,
        "audit": decision.audit.model_dump(mode="json"),
    }
    return write_audit_record(sink, record)


def record_gate_event_if_needed(
    sink: AuditSink,
    *,
    user_id: str,
    marketplace: Union[str, Marketplace],
    tier: Union[str, TierKey],
    job_id: Optional[str],
    gate: EnforcementGateDecision,
) -> bool:
    """Record THROTTLED / BLOCKED gate outcomes; NORMAL is not recorded."""
    if gate.enforcement_mode == GateMode.NORMAL:
        return False
    record = {
        "user_id": user_id,
        "marketplace": _key(marketplace),
        "tier": _key(tier),
        "decision": gate.enforcement_mode.value,
        "mode": gate.enforcement_mode.value,
        "reason_code": gate.reason_code,
        "job_id": job_id,
        "audit": {
            "violated_limit": gate.violated_limit,
            "suggested_action": gate.suggested_action,
            "snapshot_json": _json_safe(gate.snapshot),
        },
    }
    return write_audit_record(sink, record)
