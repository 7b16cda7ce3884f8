# member_alert/services/scan_scheduler.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from ..config import settings
from ..domain import InstitutionStatus, TenantInstitutionScope
from ..results import Result
from ..stores.protocols import InstitutionStore, ScheduleStore
from ..tenancy import cohort_context, platform_admin_context, tenant_scope
from .audit import (
    SCHEDULED_SCAN_EXCEPTION,
    SCHEDULED_SCAN_FAILED,
    SCHEDULED_SCAN_SUCCEEDED,
    SCHEDULED_SCAN_TRIGGERED,
    AuditLogger,
    LogEvent,
    LogStreamPublisher,
)
from .scan_orchestrator import ScanOrchestrator

log = logging.getLogger("member_alert.scheduler")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ScanCohort:
    """One (tenant, state) unit of work and the institutions that contributed it."""

    tenant_id: str
    state_or_province: str
    institution_ids: tuple[str, ...]

    @property
    def scopes(self) -> list[TenantInstitutionScope]:
        return [TenantInstitutionScope(self.tenant_id, i) for i in self.institution_ids]

    @property
    def representative_institution_id(self) -> str:
        return self.institution_ids[0]


@dataclass(frozen=True)
class CohortOutcome:
    tenant_id: str
    state_or_province: str
    ok: bool
    scan_job_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class TickSummary:
    due: bool
    ran_at_utc: datetime
    cohorts: tuple[CohortOutcome, ...] = ()
    error: Optional[str] = None

    @property
    def succeeded(self) -> int:
        return sum(1 for c in self.cohorts if c.ok)

    @property
    def failed(self) -> int:
        return sum(1 for c in self.cohorts if not c.ok)

    def as_dict(self) -> dict:
        return {
            "due": self.due,
            "ran_at_utc": self.ran_at_utc.isoformat(),
            "cohorts": len(self.cohorts),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "error": self.error,
        }


class ScanScheduler:
    """
    Cron-gated entry point. One run() per external tick:

    1. load the schedule and return at once if it is not due
    2. as platform admin, page through institutions and collect the
       (tenant, state) cohorts from active addresses of Active institutions
    3. run each cohort through the orchestrator under a non-admin context
       for that tenant
    4. advance last_run_utc, whatever the cohorts did
    """

    def __init__(
        self,
        *,
        schedules: ScheduleStore,
        institutions: InstitutionStore,
        orchestrator: ScanOrchestrator,
        audit: AuditLogger,
        log_stream: Optional[LogStreamPublisher] = None,
        page_size: Optional[int] = None,
        max_parallel_cohorts: Optional[int] = None,
    ) -> None:
        self.schedules = schedules
        self.institutions = institutions
        self.orchestrator = orchestrator
        self.audit = audit
        self.log_stream = log_stream or LogStreamPublisher()
        self.page_size = max(1, page_size or settings.scheduler_institution_page_size)
        self.max_parallel = max(1, max_parallel_cohorts or settings.scheduler_max_parallel_cohorts)

    async def discover_cohorts(self) -> Result[list[ScanCohort]]:
        # tenant key (lower-cased) -> (tenant spelling, state -> institution ids)
        grouped: dict[str, tuple[str, dict[str, list[str]]]] = {}

        with tenant_scope(platform_admin_context()):
            page = 1
            while True:
                res = await self.institutions.list(page, self.page_size)
                if not res.ok:
                    return Result.failure(res.error, res.kind)
                items = res.value.items
                for inst in items:
                    if inst.status != InstitutionStatus.active:
                        continue
                    states = inst.active_states()
                    if not states:
                        continue
                    _, by_state = grouped.setdefault(inst.tenant_id.lower(), (inst.tenant_id, {}))
                    for state in sorted(states):
                        ids = by_state.setdefault(state, [])
                        if inst.id not in ids:
                            ids.append(inst.id)
                if len(items) < self.page_size:
                    break
                page += 1

        cohorts = [
            ScanCohort(tenant_id=tenant, state_or_province=state, institution_ids=tuple(ids))
            for tenant, by_state in grouped.values()
            for state, ids in sorted(by_state.items())
        ]
        return Result.success(cohorts)

    def _properties(self, cohort: ScanCohort, triggered_at: datetime, error: Optional[str] = None) -> dict:
        props = {
            "targetTenantId": cohort.tenant_id,
            "stateOrProvince": cohort.state_or_province,
            "institutions": ",".join(cohort.institution_ids),
            "triggeredAtUtc": triggered_at.isoformat(),
        }
        if error is not None:
            props["error"] = error
        return props

    async def _dispatch(self, cohort: ScanCohort, now: datetime) -> CohortOutcome:
        # One institution: scope the context to it. Several: tenant-wide,
        # non-admin, rather than one representative institution, so every
        # contributor's addresses stay readable. The explicit scopes passed
        # to start_scan bound the job to this cohort.
        institution_id = cohort.institution_ids[0] if len(cohort.institution_ids) == 1 else None
        ctx = cohort_context(cohort.tenant_id, institution_id)

        with tenant_scope(ctx):
            await self.audit.track_event(SCHEDULED_SCAN_TRIGGERED, self._properties(cohort, now))
            await self.log_stream.publish(
                LogEvent(
                    message=f"Scheduled scan triggered for {cohort.tenant_id}/{cohort.state_or_province}.",
                    institution_id=cohort.representative_institution_id,
                )
            )
            try:
                res = await self.orchestrator.start_scan(cohort.state_or_province, cohort.scopes)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.exception(
                    "cohort raised",
                    extra={
                        "event": "cohort_exception",
                        "cohort_tenant_id": cohort.tenant_id,
                        "state": cohort.state_or_province,
                    },
                )
                await self.audit.track_event(SCHEDULED_SCAN_EXCEPTION, self._properties(cohort, now, str(e)))
                await self.log_stream.publish(
                    LogEvent(
                        message=f"Scheduled scan raised for {cohort.tenant_id}/{cohort.state_or_province}.",
                        severity="Error",
                        institution_id=cohort.representative_institution_id,
                        exception=repr(e),
                    )
                )
                return CohortOutcome(cohort.tenant_id, cohort.state_or_province, ok=False, error=str(e))

            if res.ok:
                await self.audit.track_event(SCHEDULED_SCAN_SUCCEEDED, self._properties(cohort, now))
                return CohortOutcome(cohort.tenant_id, cohort.state_or_province, ok=True, scan_job_id=res.value.id)

            await self.audit.track_event(SCHEDULED_SCAN_FAILED, self._properties(cohort, now, res.error))
            await self.log_stream.publish(
                LogEvent(
                    message=f"Scheduled scan failed for {cohort.tenant_id}/{cohort.state_or_province}: {res.error}",
                    severity="Warning",
                    institution_id=cohort.representative_institution_id,
                )
            )
            return CohortOutcome(cohort.tenant_id, cohort.state_or_province, ok=False, error=res.error)

    async def _dispatch_all(self, cohorts: list[ScanCohort], now: datetime) -> list[CohortOutcome]:
        if self.max_parallel == 1:
            return [await self._dispatch(c, now) for c in cohorts]

        gate = asyncio.Semaphore(self.max_parallel)

        async def bounded(cohort: ScanCohort) -> CohortOutcome:
            async with gate:
                return await self._dispatch(cohort, now)

        # each task runs in its own copy of the context
        tasks = [asyncio.create_task(bounded(c)) for c in cohorts]
        return list(await asyncio.gather(*tasks))

    async def run(self, now: Optional[datetime] = None) -> TickSummary:
        now = now or _utcnow()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        loaded = await self.schedules.get()
        if not loaded.ok:
            log.error("schedule unavailable", extra={"event": "schedule_unavailable", "error": loaded.error})
            return TickSummary(due=False, ran_at_utc=now, error=loaded.error)
        schedule = loaded.value
        if not schedule.is_due(now):
            return TickSummary(due=False, ran_at_utc=now)

        discovered = await self.discover_cohorts()
        if not discovered.ok:
            # nothing was dispatched; leave last_run_utc so the next tick retries
            log.error("cohort discovery failed", extra={"event": "discovery_failed", "error": discovered.error})
            return TickSummary(due=True, ran_at_utc=now, error=discovered.error)

        cohorts = discovered.value
        log.info("tick due", extra={"event": "tick_due", "count": len(cohorts)})
        outcomes = await self._dispatch_all(cohorts, now)

        error = None
        schedule.record_run(now)
        saved = await self.schedules.upsert(schedule)
        if not saved.ok:
            log.error("could not advance schedule", extra={"event": "schedule_persist_failed", "error": saved.error})
            error = saved.error

        return TickSummary(due=True, ran_at_utc=now, cohorts=tuple(outcomes), error=error)
