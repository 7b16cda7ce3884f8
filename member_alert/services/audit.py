# member_alert/services/audit.py
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from sqlalchemy.orm import Session, sessionmaker

from ..models import AuditEvent
from ..tenancy import current_tenant

log = logging.getLogger("member_alert.audit")
stream_log = logging.getLogger("member_alert.logstream")

SCHEDULED_SCAN_TRIGGERED = "ScheduledScanTriggered"
SCHEDULED_SCAN_SUCCEEDED = "ScheduledScanSucceeded"
SCHEDULED_SCAN_FAILED = "ScheduledScanFailed"
SCHEDULED_SCAN_EXCEPTION = "ScheduledScanException"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dumps(v: Optional[dict[str, Any]]) -> Optional[str]:
    if v is None:
        return None
    return json.dumps(v, sort_keys=True, default=str)


def audit_write(
    db: Session,
    *,
    name: str,
    properties: Optional[dict[str, Any]] = None,
    commit: bool = False,
) -> AuditEvent:
    """
    Adds one audit row stamped with the ambient tenant context.

    Does NOT commit by default so callers can bundle it with other writes.
    """
    ctx = current_tenant()
    row = AuditEvent(
        name=name,
        tenant_id=ctx.tenant_id if ctx else None,
        institution_id=ctx.institution_id if ctx else None,
        principal=ctx.principal_name if ctx else None,
        correlation_id=ctx.correlation_id if ctx else None,
        properties_json=_dumps(properties),
        created_at=_utcnow(),
    )
    db.add(row)
    if commit:
        db.commit()
        db.refresh(row)
    return row


class AuditLogger(Protocol):
    async def track_event(self, name: str, properties: dict[str, Any]) -> None: ...


class SqlAuditLogger:
    """Persists audit events. Failures are logged, never raised."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    def _write(self, name: str, properties: dict[str, Any]) -> None:
        db = self.session_factory()
        try:
            audit_write(db, name=name, properties=properties, commit=True)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def track_event(self, name: str, properties: dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self._write, name, dict(properties))
        except Exception:
            log.exception("audit write failed", extra={"event": name})


@dataclass(frozen=True)
class TrackedEvent:
    name: str
    properties: dict[str, Any]
    tenant_id: Optional[str]
    institution_id: Optional[str]
    is_platform_admin: bool


class InMemoryAuditLogger:
    def __init__(self) -> None:
        self.events: list[TrackedEvent] = []

    async def track_event(self, name: str, properties: dict[str, Any]) -> None:
        ctx = current_tenant()
        self.events.append(
            TrackedEvent(
                name=name,
                properties=dict(properties),
                tenant_id=ctx.tenant_id if ctx else None,
                institution_id=ctx.institution_id if ctx else None,
                is_platform_admin=bool(ctx and ctx.is_platform_admin),
            )
        )

    def names(self) -> list[str]:
        return [e.name for e in self.events]


@dataclass(frozen=True)
class LogEvent:
    message: str
    severity: str = "Information"  # Information|Warning|Error
    category: str = "Scheduler"
    institution_id: Optional[str] = None
    exception: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at_utc: datetime = field(default_factory=_utcnow)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "message": self.message,
            "severity": self.severity,
            "occurredAtUtc": self.occurred_at_utc.isoformat(),
            "category": self.category,
            "institutionId": self.institution_id,
            "exception": self.exception,
        }


_SEVERITY_LEVELS = {
    "information": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class LogStreamPublisher:
    """Forwards log events to the structured log stream."""

    async def publish(self, event: LogEvent) -> None:
        level = _SEVERITY_LEVELS.get(event.severity.lower(), logging.INFO)
        try:
            stream_log.log(level, event.message, extra={"event": "log_stream", "log_event": event.as_dict()})
        except Exception:
            log.exception("log stream publish failed")
