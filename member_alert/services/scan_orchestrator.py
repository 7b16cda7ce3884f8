# member_alert/services/scan_orchestrator.py
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from ..domain import CronScheduleDefinition, ScanJob, ScanStatus, TenantInstitutionScope
from ..results import ErrorKind, Result
from ..stores.protocols import InstitutionStore, ScanJobStore
from ..tenancy import TenantContext, current_tenant
from .listing_match_service import ListingMatchService
from .schedule_service import ScheduleService

log = logging.getLogger("member_alert.orchestrator")

MANUAL_CANCEL_REASON = "Manually cancelled"
TASK_CANCEL_REASON = "Cancelled"
_SCOPE_PAGE_SIZE = 100


@dataclass(frozen=True)
class ScanStatusSummary:
    current_status: ScanStatus = ScanStatus.pending
    scan_job_id: Optional[str] = None
    last_completed_at_utc: Optional[datetime] = None
    institution_counts: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "current_status": self.current_status.value,
            "scan_job_id": self.scan_job_id,
            "last_completed_at_utc": self.last_completed_at_utc.isoformat() if self.last_completed_at_utc else None,
            "institution_counts": dict(self.institution_counts),
        }


class ScanOrchestrator:
    """
    Drives one ScanJob from Pending to a terminal state under whatever
    tenant context is ambient when start_scan is called.

    A job that reached Running is always settled: Completed, Failed (error
    results and unexpected exceptions) or Cancelled (task cancellation,
    after which CancelledError is re-raised).
    """

    def __init__(
        self,
        *,
        jobs: ScanJobStore,
        institutions: InstitutionStore,
        matcher: ListingMatchService,
        schedules: ScheduleService,
    ) -> None:
        self.jobs = jobs
        self.institutions = institutions
        self.matcher = matcher
        self.schedules = schedules

    async def _ambient_scopes(self, ctx: TenantContext) -> Result[list[TenantInstitutionScope]]:
        if ctx.institution_id and not ctx.is_platform_admin:
            return Result.success([TenantInstitutionScope(ctx.tenant_id, ctx.institution_id)])

        scopes: list[TenantInstitutionScope] = []
        page = 1
        while True:
            res = await self.institutions.list(page, _SCOPE_PAGE_SIZE)
            if not res.ok:
                return Result.failure(res.error, res.kind or ErrorKind.unexpected)
            scopes.extend(TenantInstitutionScope(i.tenant_id, i.id) for i in res.value.items)
            if len(res.value.items) < _SCOPE_PAGE_SIZE:
                return Result.success(scopes)
            page += 1

    async def _settle(self, job: ScanJob, reason: str) -> None:
        if not job.is_terminal:
            job.mark_failed(reason)
        saved = await self.jobs.update(job)
        if not saved.ok:
            log.error(
                "could not persist failed scan job",
                extra={"event": "scan_persist_failed", "scan_job_id": job.id, "error": saved.error},
            )

    async def start_scan(
        self,
        state_or_province: str,
        scopes: Optional[Iterable[TenantInstitutionScope]] = None,
    ) -> Result[ScanJob]:
        ctx = current_tenant()
        if ctx is None:
            return Result.no_tenant_context()

        if scopes is None:
            resolved = await self._ambient_scopes(ctx)
            if not resolved.ok:
                return Result.failure(resolved.error, resolved.kind or ErrorKind.unexpected)
            scope_list = resolved.value
        else:
            scope_list = list(scopes)

        created = ScanJob.create(str(uuid.uuid4()), state_or_province, scope_list)
        if not created.ok:
            return created
        job = created.value

        extra = {"scan_job_id": job.id, "state": job.state_or_province}
        try:
            # the create is guarded too: a cancel landing after the insert
            # must still settle the stored job
            saved = await self.jobs.create(job)
            if not saved.ok:
                return Result.failure(saved.error, saved.kind or ErrorKind.unexpected)

            job.mark_running()
            running = await self.jobs.update(job)
            if not running.ok:
                await self._settle(job, running.error or "Could not start scan.")
                return Result.failure(running.error, running.kind or ErrorKind.unexpected)
            log.info("scan started", extra={"event": "scan_started", **extra})

            found = await self.matcher.find_matches(job.state_or_province, job.cohorts)
            if not found.ok:
                await self._settle(job, found.error or "Matching failed.")
                log.warning("scan failed", extra={"event": "scan_failed", "error": found.error, **extra})
                return Result.failure(found.error, found.kind or ErrorKind.unexpected)

            if found.value:
                published = await self.matcher.publish_matches(found.value)
                if not published.ok:
                    await self._settle(job, published.error or "Publishing failed.")
                    log.warning("scan failed", extra={"event": "scan_failed", "error": published.error, **extra})
                    return Result.failure(published.error, published.kind or ErrorKind.upstream)

            job.mark_completed()
            done = await self.jobs.update(job)
            if not done.ok:
                log.error("could not persist completed scan job", extra={"event": "scan_persist_failed", **extra})
                return Result.failure(done.error, done.kind or ErrorKind.unexpected)

            log.info("scan completed", extra={"event": "scan_completed", "count": len(found.value), **extra})
            return Result.success(job)

        except asyncio.CancelledError:
            if not job.is_terminal:
                job.cancel(TASK_CANCEL_REASON)
            await asyncio.shield(self.jobs.update(job))
            log.warning("scan cancelled", extra={"event": "scan_cancelled", **extra})
            raise
        except Exception as e:
            log.exception("scan raised", extra={"event": "scan_exception", **extra})
            await self._settle(job, str(e) or type(e).__name__)
            return Result.failure(str(e) or type(e).__name__, ErrorKind.unexpected)

    async def stop_scan(self, job_id: str, reason: str = MANUAL_CANCEL_REASON) -> Result[ScanJob]:
        if current_tenant() is None:
            return Result.no_tenant_context()
        loaded = await self.jobs.get(job_id)
        if not loaded.ok:
            if loaded.kind == ErrorKind.not_found:
                return Result.not_found("Scan job not found.")
            return loaded
        job = loaded.value
        if job.is_terminal:
            return Result.validation(f"Scan job is already {job.status.value}.")

        job.cancel(reason or MANUAL_CANCEL_REASON)
        saved = await self.jobs.update(job)
        if not saved.ok:
            return saved
        log.info("scan stopped", extra={"event": "scan_stopped", "scan_job_id": job.id})
        return Result.success(job)

    async def get_scan_status(self) -> Result[ScanStatusSummary]:
        if current_tenant() is None:
            return Result.no_tenant_context()
        latest = await self.jobs.get_latest()
        if not latest.ok:
            return Result.failure(latest.error, latest.kind or ErrorKind.unexpected)
        counts = await self.institutions.get_counts()
        if not counts.ok:
            return Result.failure(counts.error, counts.kind or ErrorKind.unexpected)

        job = latest.value
        c = counts.value
        return Result.success(
            ScanStatusSummary(
                current_status=job.status if job else ScanStatus.pending,
                scan_job_id=job.id if job else None,
                last_completed_at_utc=job.completed_at_utc if job else None,
                institution_counts={
                    "total": c.total,
                    "active": c.active,
                    "addresses": c.address_count,
                    "active_addresses": c.active_address_count,
                },
            )
        )

    async def schedule_scan(self, expression: str, time_zone_id: str) -> Result[CronScheduleDefinition]:
        return await self.schedules.update_schedule(expression, time_zone_id)
