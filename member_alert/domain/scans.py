# member_alert/domain/scans.py
from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Iterable, Optional

from ..results import Result
from .values import TenantInstitutionScope

MAX_STATE_CODE_LENGTH = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScanStatus(str, enum.Enum):
    pending = "Pending"
    running = "Running"
    completed = "Completed"
    failed = "Failed"
    cancelled = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ScanStatus.completed, ScanStatus.failed, ScanStatus.cancelled})

# Legal transitions. Terminal states have no way out.
_TRANSITIONS: dict[ScanStatus, frozenset[ScanStatus]] = {
    ScanStatus.pending: frozenset({ScanStatus.running, ScanStatus.failed, ScanStatus.cancelled}),
    ScanStatus.running: frozenset({ScanStatus.completed, ScanStatus.failed, ScanStatus.cancelled}),
    ScanStatus.completed: frozenset(),
    ScanStatus.failed: frozenset(),
    ScanStatus.cancelled: frozenset(),
}


class ScanJobTransitionError(ValueError):
    def __init__(self, job_id: str, current: ScanStatus, target: ScanStatus) -> None:
        super().__init__(f"scan job {job_id}: illegal transition {current.value} -> {target.value}")
        self.job_id = job_id
        self.current = current
        self.target = target


class ScanJob:
    """
    One scan attempt for one state.

    Pending -> Running -> Completed | Failed | Cancelled
    started_at_utc is stamped once, on Running. completed_at_utc (and
    failure_reason, where there is one) are stamped once, on the terminal
    transition.
    """

    def __init__(
        self,
        *,
        id: str,
        state_or_province: str,
        cohorts: Iterable[TenantInstitutionScope] | None = None,
        status: ScanStatus = ScanStatus.pending,
        started_at_utc: Optional[datetime] = None,
        completed_at_utc: Optional[datetime] = None,
        failure_reason: Optional[str] = None,
        created_at_utc: Optional[datetime] = None,
        updated_at_utc: Optional[datetime] = None,
    ) -> None:
        self._id = id
        self._state_or_province = state_or_province
        self._cohorts: tuple[TenantInstitutionScope, ...] = tuple(dict.fromkeys(cohorts or ()))
        self._status = ScanStatus(status)
        self._started_at_utc = started_at_utc
        self._completed_at_utc = completed_at_utc
        self._failure_reason = failure_reason
        self._created_at_utc = created_at_utc or _utcnow()
        self._updated_at_utc = updated_at_utc or self._created_at_utc

    @classmethod
    def create(
        cls,
        id: str,
        state_or_province: str,
        cohorts: Iterable[TenantInstitutionScope] | None = None,
    ) -> Result["ScanJob"]:
        state = (state_or_province or "").strip()
        if not state or len(state) > MAX_STATE_CODE_LENGTH:
            return Result.validation("State or province must be provided using a short code.")
        if not (id or "").strip():
            return Result.validation("Scan job id is required.")
        return Result.success(cls(id=id.strip(), state_or_province=state.upper(), cohorts=cohorts))

    @classmethod
    def rehydrate(cls, **kwargs) -> "ScanJob":
        return cls(**kwargs)

    @property
    def id(self) -> str:
        return self._id

    @property
    def state_or_province(self) -> str:
        return self._state_or_province

    @property
    def cohorts(self) -> tuple[TenantInstitutionScope, ...]:
        return self._cohorts

    @property
    def status(self) -> ScanStatus:
        return self._status

    @property
    def started_at_utc(self) -> Optional[datetime]:
        return self._started_at_utc

    @property
    def completed_at_utc(self) -> Optional[datetime]:
        return self._completed_at_utc

    @property
    def failure_reason(self) -> Optional[str]:
        return self._failure_reason

    @property
    def created_at_utc(self) -> datetime:
        return self._created_at_utc

    @property
    def updated_at_utc(self) -> datetime:
        return self._updated_at_utc

    @property
    def is_terminal(self) -> bool:
        return self._status.is_terminal

    def _move(self, target: ScanStatus) -> datetime:
        if target not in _TRANSITIONS[self._status]:
            raise ScanJobTransitionError(self._id, self._status, target)
        now = _utcnow()
        self._status = target
        self._updated_at_utc = now
        return now

    def mark_running(self) -> None:
        now = self._move(ScanStatus.running)
        self._started_at_utc = now

    def mark_completed(self) -> None:
        self._completed_at_utc = self._move(ScanStatus.completed)

    def mark_failed(self, reason: str) -> None:
        self._completed_at_utc = self._move(ScanStatus.failed)
        self._failure_reason = (reason or "").strip() or "Scan failed."

    def cancel(self, reason: str) -> None:
        self._completed_at_utc = self._move(ScanStatus.cancelled)
        self._failure_reason = (reason or "").strip() or "Cancelled"

    def as_dict(self) -> dict:
        return {
            "id": self._id,
            "state_or_province": self._state_or_province,
            "cohorts": [c.as_dict() for c in self._cohorts],
            "status": self._status.value,
            "started_at_utc": self._started_at_utc.isoformat() if self._started_at_utc else None,
            "completed_at_utc": self._completed_at_utc.isoformat() if self._completed_at_utc else None,
            "failure_reason": self._failure_reason,
        }

    def __repr__(self) -> str:
        return f"ScanJob(id={self._id!r}, state={self._state_or_province!r}, status={self._status.value!r})"
