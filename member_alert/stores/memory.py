# member_alert/stores/memory.py
"""
Dict-backed stores. Same contracts as stores.sql; used by tests and by the
CLI when no database is wanted.

Objects are deep-copied in and out so callers never share state with the
store (mutating a loaded aggregate does nothing until it is written back).
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional

from ..config import settings
from ..domain import (
    CronScheduleDefinition,
    Institution,
    InstitutionStatus,
    ListingMatch,
    MemberAddress,
    ScanJob,
)
from ..results import PagedResult, Result
from . import isolation
from .protocols import InstitutionCounts


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class MemoryDatabase:
    institutions: dict[str, Institution] = field(default_factory=dict)
    addresses: dict[str, MemberAddress] = field(default_factory=dict)
    scan_jobs: dict[str, ScanJob] = field(default_factory=dict)
    matches: dict[str, ListingMatch] = field(default_factory=dict)
    schedule: Optional[CronScheduleDefinition] = None
    # bumped on every write; tests use it to assert "no writes happened"
    writes: int = 0


def _bare(institution: Institution) -> Institution:
    return _rebuild(institution, [])


def _rebuild(institution: Institution, addresses: Iterable[MemberAddress]) -> Institution:
    return Institution(
        id=institution.id,
        tenant_id=institution.tenant_id,
        name=institution.name,
        time_zone_id=institution.time_zone_id,
        status=institution.status,
        primary_contact_email=institution.primary_contact_email,
        addresses=[copy.deepcopy(a) for a in addresses],
        created_at_utc=institution.created_at_utc,
        updated_at_utc=institution.updated_at_utc,
    )


class MemoryInstitutionStore:
    def __init__(self, db: MemoryDatabase) -> None:
        self.db = db

    def _hydrate(self, ctx, institution: Institution) -> Institution:
        addrs = [
            a
            for a in self.db.addresses.values()
            if a.institution_id == institution.id and isolation.can_read(ctx, a.tenant_id, a.institution_id)
        ]
        addrs.sort(key=lambda a: a.created_at_utc)
        return _rebuild(institution, addrs)

    def _visible(self, ctx, institution_id: str) -> Institution | None:
        row = self.db.institutions.get(institution_id)
        if row is None or not isolation.can_read(ctx, row.tenant_id, row.id):
            return None
        return row

    async def create(self, institution: Institution) -> Result[Institution]:
        ctx = isolation.require_context()
        if ctx is None:
            return Result.no_tenant_context()
        denied = isolation.check_write(
            ctx, institution.tenant_id, institution.id, "Cannot create institutions for a different tenant."
        )
        if denied:
            return denied
        if institution.id in self.db.institutions:
            return Result.validation(f"Institution '{institution.id}' already exists.")

        self.db.institutions[institution.id] = _bare(institution)
        for a in institution.addresses:
            self.db.addresses[a.id] = copy.deepcopy(a)
        self.db.writes += 1
        return Result.success(self._hydrate(ctx, institution))

    async def get(self, institution_id: str) -> Result[Institution]:
        ctx = isolation.require_context()
        if ctx is None:
            return Result.no_tenant_context()
        row = self._visible(ctx, institution_id)
        if row is None:
            return Result.not_found("Institution not found.")
        return Result.success(self._hydrate(ctx, row))

    async def list(self, page: int = 1, page_size: int = 50) -> Result[PagedResult[Institution]]:
        ctx = isolation.require_context()
        if ctx is None:
            return Result.no_tenant_context()
        rows = isolation.filter_visible(ctx, self.db.institutions.values(), lambda i: (i.tenant_id, i.id))
        rows.sort(key=lambda i: (i.created_at_utc, i.id))
        window = isolation.page_window(rows, page, page_size)
        return Result.success(
            PagedResult(
                items=[self._hydrate(ctx, i) for i in window.items],
                total=window.total,
                page=window.page,
                page_size=window.page_size,
            )
        )

    async def update(self, institution: Institution) -> Result[Institution]:
        ctx = isolation.require_context()
        if ctx is None:
            return Result.no_tenant_context()
        existing = self._visible(ctx, institution.id)
        if existing is None:
            return Result.not_found("Institution not found.")
        denied = isolation.check_write(
            ctx, institution.tenant_id, institution.id, "Not authorized to update this institution."
        )
        if denied or existing.tenant_id != institution.tenant_id:
            return denied or Result.unauthorized("Not authorized to update this institution.")

        self.db.institutions[institution.id] = _bare(institution)
        keep = {a.id for a in institution.addresses}
        for aid in [k for k, a in self.db.addresses.items() if a.institution_id == institution.id and k not in keep]:
            del self.db.addresses[aid]
        for a in institution.addresses:
            self.db.addresses[a.id] = copy.deepcopy(a)
        self.db.writes += 1
        return Result.success(self._hydrate(ctx, institution))

    async def delete(self, institution_id: str) -> Result[None]:
        ctx = isolation.require_context()
        if ctx is None:
            return Result.no_tenant_context()
        existing = self._visible(ctx, institution_id)
        if existing is None:
            return Result.not_found("Institution not found.")
        del self.db.institutions[institution_id]
        for aid in [k for k, a in self.db.addresses.items() if a.institution_id == institution_id]:
            del self.db.addresses[aid]
        self.db.writes += 1
        return Result.success()

    async def get_counts(self) -> Result[InstitutionCounts]:
        ctx = isolation.require_context()
        if ctx is None:
            return Result.no_tenant_context()
        insts = isolation.filter_visible(ctx, self.db.institutions.values(), lambda i: (i.tenant_id, i.id))
        addrs = isolation.filter_visible(
            ctx, self.db.addresses.values(), lambda a: (a.tenant_id, a.institution_id)
        )
        return Result.success(
            InstitutionCounts(
                total=len(insts),
                active=sum(1 for i in insts if i.status == InstitutionStatus.active),
                suspended=sum(1 for i in insts if i.status == InstitutionStatus.suspended),
                disabled=sum(1 for i in insts if i.status == InstitutionStatus.disabled),
                address_count=len(addrs),
                active_address_count=sum(1 for a in addrs if a.is_active),
            )
        )


class MemoryMemberAddressStore:
    def __init__(self, db: MemoryDatabase) -> None:
        self.db = db

    def _check_owner(self, ctx, address: MemberAddress) -> Result | None:
        denied = isolation.check_write(
            ctx, address.tenant_id, address.institution_id, "Not authorized to modify addresses for this institution."
        )
        if denied:
            return denied
        inst = self.db.institutions.get(address.institution_id)
        if inst is None:
            return Result.not_found("Institution not found.")
        if inst.tenant_id.strip().lower() != address.tenant_id.strip().lower():
            return Result.unauthorized("Address tenant does not match its institution.")
        return None

    async def create(self, address: MemberAddress) -> Result[MemberAddress]:
        ctx = isolation.require_context()
        if ctx is None:
            return Result.no_tenant_context()
        failure = self._check_owner(ctx, address)
        if failure:
            return failure
        if address.id in self.db.addresses:
            return Result.validation(f"Address with id '{address.id}' already exists.")
        self.db.addresses[address.id] = copy.deepcopy(address)
        self.db.writes += 1
        return Result.success(copy.deepcopy(address))

    async def get(self, address_id: str) -> Result[MemberAddress]:
        ctx = isolation.require_context()
        if ctx is None:
            return Result.no_tenant_context()
        a = self.db.addresses.get(address_id)
        if a is None or not isolation.can_read(ctx, a.tenant_id, a.institution_id):
            return Result.not_found("Address not found.")
        return Result.success(copy.deepcopy(a))

    async def list_by_institution(
        self, institution_id: str, page: int = 1, page_size: int = 50
    ) -> Result[PagedResult[MemberAddress]]:
        ctx = isolation.require_context()
        if ctx is None:
            return Result.no_tenant_context()
        rows = [
            a
            for a in self.db.addresses.values()
            if a.institution_id == institution_id and isolation.can_read(ctx, a.tenant_id, a.institution_id)
        ]
        rows.sort(key=lambda a: (a.created_at_utc, a.id))
        window = isolation.page_window(rows, page, page_size)
        return Result.success(
            PagedResult(
                items=[copy.deepcopy(a) for a in window.items],
                total=window.total,
                page=window.page,
                page_size=window.page_size,
            )
        )

    async def list_by_state(
        self,
        state_or_province: str,
        tenant_id: Optional[str] = None,
        institution_id: Optional[str] = None,
    ) -> Result[list[MemberAddress]]:
        ctx = isolation.require_context()
        if ctx is None:
            return Result.no_tenant_context()
        state = (state_or_province or "").strip().upper()
        out = []
        for a in self.db.addresses.values():
            if a.address.state_or_province.strip().upper() != state:
                continue
            if tenant_id and a.tenant_id.strip().lower() != tenant_id.strip().lower():
                continue
            if institution_id and a.institution_id.strip().lower() != institution_id.strip().lower():
                continue
            if not isolation.can_read(ctx, a.tenant_id, a.institution_id):
                continue
            out.append(copy.deepcopy(a))
        out.sort(key=lambda a: (a.created_at_utc, a.id))
        return Result.success(out)

    async def get_many(self, address_ids: Iterable[str]) -> Result[list[MemberAddress]]:
        ctx = isolation.require_context()
        if ctx is None:
            return Result.no_tenant_context()
        out = []
        for aid in dict.fromkeys(address_ids):
            a = self.db.addresses.get(aid)
            if a is not None and isolation.can_read(ctx, a.tenant_id, a.institution_id):
                out.append(copy.deepcopy(a))
        return Result.success(out)

    async def upsert_bulk(self, institution_id: str, addresses: Iterable[MemberAddress]) -> Result[int]:
        ctx = isolation.require_context()
        if ctx is None:
            return Result.no_tenant_context()
        batch = list(addresses)
        for a in batch:
            if a.institution_id != institution_id:
                return Result.validation(f"Address '{a.id}' belongs to a different institution.")
            failure = self._check_owner(ctx, a)
            if failure:
                return failure
        # validated as a whole before anything is written
        for a in batch:
            self.db.addresses[a.id] = copy.deepcopy(a)
        if batch:
            self.db.writes += 1
        return Result.success(len(batch))

    async def delete(self, address_id: str) -> Result[None]:
        ctx = isolation.require_context()
        if ctx is None:
            return Result.no_tenant_context()
        a = self.db.addresses.get(address_id)
        if a is None or not isolation.can_read(ctx, a.tenant_id, a.institution_id):
            return Result.not_found("Address not found.")
        denied = isolation.check_write(ctx, a.tenant_id, a.institution_id, "Not authorized to delete this address.")
        if denied:
            return denied
        del self.db.addresses[address_id]
        self.db.writes += 1
        return Result.success()


class MemoryScanJobStore:
    def __init__(self, db: MemoryDatabase) -> None:
        self.db = db

    async def create(self, job: ScanJob) -> Result[ScanJob]:
        ctx = isolation.require_context()
        if ctx is None:
            return Result.no_tenant_context()
        if not isolation.job_writable(ctx, job):
            return Result.unauthorized("Not authorized to create scans for this scope.")
        if job.id in self.db.scan_jobs:
            return Result.validation(f"Scan job '{job.id}' already exists.")
        self.db.scan_jobs[job.id] = copy.deepcopy(job)
        self.db.writes += 1
        return Result.success(job)

    async def update(self, job: ScanJob) -> Result[ScanJob]:
        # upsert, last writer wins
        ctx = isolation.require_context()
        if ctx is None:
            return Result.no_tenant_context()
        if not isolation.job_writable(ctx, job):
            return Result.unauthorized("Not authorized to update this scan job.")
        existing = self.db.scan_jobs.get(job.id)
        if existing is not None and not isolation.job_visible(ctx, existing):
            return Result.unauthorized("Not authorized to update this scan job.")
        self.db.scan_jobs[job.id] = copy.deepcopy(job)
        self.db.writes += 1
        return Result.success(job)

    async def get(self, job_id: str) -> Result[ScanJob]:
        ctx = isolation.require_context()
        if ctx is None:
            return Result.no_tenant_context()
        job = self.db.scan_jobs.get(job_id)
        if job is None or not isolation.job_visible(ctx, job):
            return Result.not_found("Scan job not found.")
        return Result.success(copy.deepcopy(job))

    def _visible_newest_first(self, ctx) -> list[ScanJob]:
        jobs = [j for j in self.db.scan_jobs.values() if isolation.job_visible(ctx, j)]
        jobs.sort(key=lambda j: j.created_at_utc, reverse=True)
        return jobs

    async def get_latest(self) -> Result[Optional[ScanJob]]:
        ctx = isolation.require_context()
        if ctx is None:
            return Result.no_tenant_context()
        jobs = self._visible_newest_first(ctx)
        return Result.success(copy.deepcopy(jobs[0]) if jobs else None)

    async def list_recent(self, page: int = 1, page_size: int = 20) -> Result[PagedResult[ScanJob]]:
        ctx = isolation.require_context()
        if ctx is None:
            return Result.no_tenant_context()
        window = isolation.page_window(self._visible_newest_first(ctx), page, page_size, default_size=20)
        return Result.success(
            PagedResult(
                items=[copy.deepcopy(j) for j in window.items],
                total=window.total,
                page=window.page,
                page_size=window.page_size,
            )
        )


class MemoryMatchStore:
    def __init__(self, db: MemoryDatabase) -> None:
        self.db = db

    async def create(self, match: ListingMatch) -> Result[ListingMatch]:
        ctx = isolation.require_context()
        if ctx is None:
            return Result.no_tenant_context()
        if not isolation.match_writable(ctx, match):
            return Result.unauthorized("Not authorized to record matches for this scope.")
        if match.id in self.db.matches:
            return Result.validation(f"Listing match '{match.id}' already exists.")
        self.db.matches[match.id] = copy.deepcopy(match)
        self.db.writes += 1
        return Result.success(match)

    async def list_recent(
        self, institution_id: Optional[str] = None, page: int = 1, page_size: int = 50
    ) -> Result[PagedResult[ListingMatch]]:
        ctx = isolation.require_context()
        if ctx is None:
            return Result.no_tenant_context()
        rows = [m for m in self.db.matches.values() if isolation.match_visible(ctx, m)]
        if institution_id:
            wanted = institution_id.strip().lower()
            rows = [m for m in rows if any(i.lower() == wanted for i in m.matched_institution_ids)]
        rows.sort(key=lambda m: m.detected_at_utc, reverse=True)
        window = isolation.page_window(rows, page, page_size)
        return Result.success(
            PagedResult(
                items=[copy.deepcopy(m) for m in window.items],
                total=window.total,
                page=window.page,
                page_size=window.page_size,
            )
        )

    async def purge_older_than(self, cutoff_utc: datetime) -> Result[int]:
        ctx = isolation.require_context()
        if ctx is None:
            return Result.no_tenant_context()
        cutoff = _as_utc(cutoff_utc)
        doomed = [
            k
            for k, m in self.db.matches.items()
            if _as_utc(m.detected_at_utc) < cutoff and isolation.match_visible(ctx, m)
        ]
        for k in doomed:
            del self.db.matches[k]
        if doomed:
            self.db.writes += 1
        return Result.success(len(doomed))


class MemoryScheduleStore:
    """The schedule is global; it is not tenant-filtered."""

    def __init__(self, db: MemoryDatabase) -> None:
        self.db = db

    async def get(self) -> Result[CronScheduleDefinition]:
        if self.db.schedule is not None:
            return Result.success(copy.deepcopy(self.db.schedule))
        return CronScheduleDefinition.create(settings.default_cron_expression, settings.default_time_zone)

    async def upsert(self, definition: CronScheduleDefinition) -> Result[CronScheduleDefinition]:
        self.db.schedule = copy.deepcopy(definition)
        self.db.writes += 1
        return Result.success(definition)


@dataclass
class MemoryStores:
    db: MemoryDatabase
    institutions: MemoryInstitutionStore
    addresses: MemoryMemberAddressStore
    scan_jobs: MemoryScanJobStore
    matches: MemoryMatchStore
    schedule: MemoryScheduleStore


def build_memory_stores(db: MemoryDatabase | None = None) -> MemoryStores:
    db = db or MemoryDatabase()
    return MemoryStores(
        db=db,
        institutions=MemoryInstitutionStore(db),
        addresses=MemoryMemberAddressStore(db),
        scan_jobs=MemoryScanJobStore(db),
        matches=MemoryMatchStore(db),
        schedule=MemoryScheduleStore(db),
    )
