# member_alert/stores/sql.py
"""
SQLAlchemy-backed stores.

Each public method is async and runs its Session work on a worker thread via
asyncio.to_thread. to_thread copies the caller's contextvars, so the ambient
tenant context is read inside the thread exactly as the caller sees it.
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from ..config import settings
from ..domain import (
    Address,
    CronScheduleDefinition,
    GeoCoordinate,
    Institution,
    InstitutionStatus,
    ListingMatch,
    MemberAddress,
    ScanJob,
    TenantInstitutionScope,
)
from ..models import (
    InstitutionRow,
    ListingMatchInstitutionRow,
    ListingMatchRow,
    ListingMatchTenantRow,
    MemberAddressRow,
    ScanJobCohortRow,
    ScanJobRow,
    ScanScheduleRow,
)
from ..results import PagedResult, Result, normalize_page
from . import isolation
from .protocols import InstitutionCounts

T = TypeVar("T")

SCHEDULE_ROW_ID = "default"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _dumps(v: Any) -> Optional[str]:
    if v is None:
        return None
    return json.dumps(v, sort_keys=True, default=str)


def _loads(s: Optional[str], default: Any) -> Any:
    if not s:
        return default
    try:
        return json.loads(s)
    except Exception:
        return default


# -----------------------------
# row <-> domain mapping
# -----------------------------
def _address_to_domain(row: MemberAddressRow) -> MemberAddress:
    return MemberAddress(
        id=row.id,
        tenant_id=row.tenant_id,
        institution_id=row.institution_id,
        address=Address(
            line1=row.line1,
            line2=row.line2,
            city=row.city,
            state_or_province=row.state_or_province,
            postal_code=row.postal_code,
            country_code=row.country_code,
            coordinate=GeoCoordinate.maybe(row.latitude, row.longitude),
        ),
        is_active=row.is_active,
        tags=_loads(row.tags_json, []),
        last_matched_at_utc=_aware(row.last_matched_at),
        last_matched_listing_id=row.last_matched_listing_id,
        created_at_utc=_aware(row.created_at),
        updated_at_utc=_aware(row.updated_at),
    )


def _address_apply(row: MemberAddressRow, a: MemberAddress) -> None:
    addr = a.address
    row.tenant_id = a.tenant_id
    row.institution_id = a.institution_id
    row.line1 = addr.line1
    row.line2 = addr.line2
    row.city = addr.city
    row.state_or_province = addr.state_or_province.strip().upper()
    row.postal_code = addr.postal_code
    row.country_code = addr.country_code
    row.latitude = addr.coordinate.latitude if addr.coordinate else None
    row.longitude = addr.coordinate.longitude if addr.coordinate else None
    row.is_active = a.is_active
    row.tags_json = _dumps(sorted(a.tags))
    row.last_matched_at = a.last_matched_at_utc
    row.last_matched_listing_id = a.last_matched_listing_id
    row.created_at = a.created_at_utc
    row.updated_at = a.updated_at_utc


def _institution_to_domain(row: InstitutionRow, addresses: Iterable[MemberAddress]) -> Institution:
    return Institution(
        id=row.id,
        tenant_id=row.tenant_id,
        name=row.name,
        time_zone_id=row.time_zone_id,
        status=InstitutionStatus(row.status),
        primary_contact_email=row.primary_contact_email,
        addresses=addresses,
        created_at_utc=_aware(row.created_at),
        updated_at_utc=_aware(row.updated_at),
    )


def _institution_apply(row: InstitutionRow, inst: Institution) -> None:
    row.tenant_id = inst.tenant_id
    row.name = inst.name
    row.time_zone_id = inst.time_zone_id
    row.status = inst.status.value
    row.primary_contact_email = inst.primary_contact_email
    row.created_at = inst.created_at_utc
    row.updated_at = inst.updated_at_utc


def _job_to_domain(row: ScanJobRow) -> ScanJob:
    cohorts = [
        TenantInstitutionScope(c["tenant_id"], c["institution_id"])
        for c in _loads(row.cohorts_json, [])
        if isinstance(c, dict)
    ]
    return ScanJob.rehydrate(
        id=row.id,
        state_or_province=row.state_or_province,
        cohorts=cohorts,
        status=row.status,
        started_at_utc=_aware(row.started_at),
        completed_at_utc=_aware(row.completed_at),
        failure_reason=row.failure_reason,
        created_at_utc=_aware(row.created_at),
        updated_at_utc=_aware(row.updated_at),
    )


def _job_apply(row: ScanJobRow, job: ScanJob) -> None:
    row.state_or_province = job.state_or_province
    row.status = job.status.value
    row.cohorts_json = _dumps([c.as_dict() for c in job.cohorts])
    row.started_at = job.started_at_utc
    row.completed_at = job.completed_at_utc
    row.failure_reason = job.failure_reason
    row.created_at = job.created_at_utc
    row.updated_at = job.updated_at_utc


def _match_to_domain(row: ListingMatchRow) -> ListingMatch:
    return ListingMatch.rehydrate(
        id=row.id,
        listing_id=row.listing_id,
        listing_address=Address.from_dict(_loads(row.listing_address_json, {})),
        monthly_rent=row.monthly_rent,
        listing_url=row.listing_url,
        severity=row.severity,
        matched_address_ids=_loads(row.matched_address_ids_json, []),
        matched_tenant_ids=_loads(row.matched_tenant_ids_json, []),
        matched_institution_ids=_loads(row.matched_institution_ids_json, []),
        detected_at_utc=_aware(row.detected_at),
        region=row.region,
        metadata=_loads(row.metadata_json, {}),
        created_at_utc=_aware(row.created_at),
        updated_at_utc=_aware(row.updated_at),
    )


def _match_row(m: ListingMatch) -> ListingMatchRow:
    return ListingMatchRow(
        id=m.id,
        listing_id=m.listing_id,
        listing_address_json=_dumps(m.listing_address.as_dict()),
        monthly_rent=m.monthly_rent,
        listing_url=m.listing_url,
        severity=m.severity.value,
        region=m.region,
        matched_address_ids_json=_dumps(list(m.matched_address_ids)),
        matched_tenant_ids_json=_dumps(list(m.matched_tenant_ids)),
        matched_institution_ids_json=_dumps(list(m.matched_institution_ids)),
        metadata_json=_dumps(m.metadata),
        detected_at=m.detected_at_utc,
        created_at=m.created_at_utc,
        updated_at=m.updated_at_utc,
    )


class _SqlStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    async def _run(self, fn: Callable[[Session], Result[T]]) -> Result[T]:
        return await asyncio.to_thread(self._in_session, fn)

    def _in_session(self, fn: Callable[[Session], Result[T]]) -> Result[T]:
        db = self.session_factory()
        try:
            res = fn(db)
            if res.ok:
                db.commit()
            else:
                db.rollback()
            return res
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class SqlInstitutionStore(_SqlStore):
    def _addresses_for(self, db: Session, ctx, institution_ids: list[str]) -> dict[str, list[MemberAddress]]:
        out: dict[str, list[MemberAddress]] = {i: [] for i in institution_ids}
        if not institution_ids:
            return out
        stmt = (
            select(MemberAddressRow)
            .where(MemberAddressRow.institution_id.in_(institution_ids))
            .where(*isolation.scope_clauses(ctx, MemberAddressRow.tenant_id, MemberAddressRow.institution_id))
            .order_by(MemberAddressRow.created_at.asc(), MemberAddressRow.id.asc())
        )
        for row in db.scalars(stmt):
            out[row.institution_id].append(_address_to_domain(row))
        return out

    def _visible_row(self, db: Session, ctx, institution_id: str) -> InstitutionRow | None:
        stmt = (
            select(InstitutionRow)
            .where(InstitutionRow.id == institution_id)
            .where(*isolation.scope_clauses(ctx, InstitutionRow.tenant_id, InstitutionRow.id))
        )
        return db.scalar(stmt)

    async def create(self, institution: Institution) -> Result[Institution]:
        def work(db: Session) -> Result[Institution]:
            ctx = isolation.require_context()
            if ctx is None:
                return Result.no_tenant_context()
            denied = isolation.check_write(
                ctx, institution.tenant_id, institution.id, "Cannot create institutions for a different tenant."
            )
            if denied:
                return denied
            if db.get(InstitutionRow, institution.id) is not None:
                return Result.validation(f"Institution '{institution.id}' already exists.")

            row = InstitutionRow(id=institution.id)
            _institution_apply(row, institution)
            db.add(row)
            db.flush()
            for a in institution.addresses:
                arow = MemberAddressRow(id=a.id)
                _address_apply(arow, a)
                db.add(arow)
            return Result.success(institution)

        return await self._run(work)

    async def get(self, institution_id: str) -> Result[Institution]:
        def work(db: Session) -> Result[Institution]:
            ctx = isolation.require_context()
            if ctx is None:
                return Result.no_tenant_context()
            row = self._visible_row(db, ctx, institution_id)
            if row is None:
                return Result.not_found("Institution not found.")
            addrs = self._addresses_for(db, ctx, [row.id])
            return Result.success(_institution_to_domain(row, addrs[row.id]))

        return await self._run(work)

    async def list(self, page: int = 1, page_size: int = 50) -> Result[PagedResult[Institution]]:
        def work(db: Session) -> Result[PagedResult[Institution]]:
            ctx = isolation.require_context()
            if ctx is None:
                return Result.no_tenant_context()
            p, size = normalize_page(page, page_size)
            clauses = isolation.scope_clauses(ctx, InstitutionRow.tenant_id, InstitutionRow.id)

            total = db.scalar(select(func.count()).select_from(InstitutionRow).where(*clauses)) or 0
            rows = list(
                db.scalars(
                    select(InstitutionRow)
                    .where(*clauses)
                    .order_by(InstitutionRow.created_at.asc(), InstitutionRow.id.asc())
                    .offset((p - 1) * size)
                    .limit(size)
                )
            )
            addrs = self._addresses_for(db, ctx, [r.id for r in rows])
            items = [_institution_to_domain(r, addrs[r.id]) for r in rows]
            return Result.success(PagedResult(items=items, total=int(total), page=p, page_size=size))

        return await self._run(work)

    async def update(self, institution: Institution) -> Result[Institution]:
        def work(db: Session) -> Result[Institution]:
            ctx = isolation.require_context()
            if ctx is None:
                return Result.no_tenant_context()
            row = self._visible_row(db, ctx, institution.id)
            if row is None:
                return Result.not_found("Institution not found.")
            denied = isolation.check_write(
                ctx, institution.tenant_id, institution.id, "Not authorized to update this institution."
            )
            if denied:
                return denied
            if row.tenant_id != institution.tenant_id:
                return Result.unauthorized("Not authorized to update this institution.")

            _institution_apply(row, institution)
            keep = {a.id for a in institution.addresses}
            stale = delete(MemberAddressRow).where(MemberAddressRow.institution_id == institution.id)
            if keep:
                stale = stale.where(MemberAddressRow.id.not_in(keep))
            db.execute(stale)
            for a in institution.addresses:
                arow = db.get(MemberAddressRow, a.id) or MemberAddressRow(id=a.id)
                _address_apply(arow, a)
                db.add(arow)
            return Result.success(institution)

        return await self._run(work)

    async def delete(self, institution_id: str) -> Result[None]:
        def work(db: Session) -> Result[None]:
            ctx = isolation.require_context()
            if ctx is None:
                return Result.no_tenant_context()
            row = self._visible_row(db, ctx, institution_id)
            if row is None:
                return Result.not_found("Institution not found.")
            db.execute(delete(MemberAddressRow).where(MemberAddressRow.institution_id == institution_id))
            db.delete(row)
            return Result.success()

        return await self._run(work)

    async def get_counts(self) -> Result[InstitutionCounts]:
        def work(db: Session) -> Result[InstitutionCounts]:
            ctx = isolation.require_context()
            if ctx is None:
                return Result.no_tenant_context()
            inst_clauses = isolation.scope_clauses(ctx, InstitutionRow.tenant_id, InstitutionRow.id)
            by_status = dict(
                db.execute(
                    select(InstitutionRow.status, func.count()).where(*inst_clauses).group_by(InstitutionRow.status)
                ).all()
            )
            addr_clauses = isolation.scope_clauses(ctx, MemberAddressRow.tenant_id, MemberAddressRow.institution_id)
            addr_total = db.scalar(select(func.count()).select_from(MemberAddressRow).where(*addr_clauses)) or 0
            addr_active = (
                db.scalar(
                    select(func.count())
                    .select_from(MemberAddressRow)
                    .where(*addr_clauses)
                    .where(MemberAddressRow.is_active.is_(True))
                )
                or 0
            )
            return Result.success(
                InstitutionCounts(
                    total=int(sum(by_status.values())),
                    active=int(by_status.get(InstitutionStatus.active.value, 0)),
                    suspended=int(by_status.get(InstitutionStatus.suspended.value, 0)),
                    disabled=int(by_status.get(InstitutionStatus.disabled.value, 0)),
                    address_count=int(addr_total),
                    active_address_count=int(addr_active),
                )
            )

        return await self._run(work)


class SqlMemberAddressStore(_SqlStore):
    def _check_owner(self, db: Session, ctx, address: MemberAddress) -> Result | None:
        denied = isolation.check_write(
            ctx, address.tenant_id, address.institution_id, "Not authorized to modify addresses for this institution."
        )
        if denied:
            return denied
        inst = db.get(InstitutionRow, address.institution_id)
        if inst is None:
            return Result.not_found("Institution not found.")
        if inst.tenant_id.strip().lower() != address.tenant_id.strip().lower():
            return Result.unauthorized("Address tenant does not match its institution.")
        return None

    def _scoped(self, ctx):
        return select(MemberAddressRow).where(
            *isolation.scope_clauses(ctx, MemberAddressRow.tenant_id, MemberAddressRow.institution_id)
        )

    async def create(self, address: MemberAddress) -> Result[MemberAddress]:
        def work(db: Session) -> Result[MemberAddress]:
            ctx = isolation.require_context()
            if ctx is None:
                return Result.no_tenant_context()
            failure = self._check_owner(db, ctx, address)
            if failure:
                return failure
            if db.get(MemberAddressRow, address.id) is not None:
                return Result.validation(f"Address with id '{address.id}' already exists.")
            row = MemberAddressRow(id=address.id)
            _address_apply(row, address)
            db.add(row)
            return Result.success(address)

        return await self._run(work)

    async def get(self, address_id: str) -> Result[MemberAddress]:
        def work(db: Session) -> Result[MemberAddress]:
            ctx = isolation.require_context()
            if ctx is None:
                return Result.no_tenant_context()
            row = db.scalar(self._scoped(ctx).where(MemberAddressRow.id == address_id))
            if row is None:
                return Result.not_found("Address not found.")
            return Result.success(_address_to_domain(row))

        return await self._run(work)

    async def list_by_institution(
        self, institution_id: str, page: int = 1, page_size: int = 50
    ) -> Result[PagedResult[MemberAddress]]:
        def work(db: Session) -> Result[PagedResult[MemberAddress]]:
            ctx = isolation.require_context()
            if ctx is None:
                return Result.no_tenant_context()
            p, size = normalize_page(page, page_size)
            clauses = isolation.scope_clauses(ctx, MemberAddressRow.tenant_id, MemberAddressRow.institution_id)
            clauses.append(MemberAddressRow.institution_id == institution_id)

            total = db.scalar(select(func.count()).select_from(MemberAddressRow).where(*clauses)) or 0
            rows = db.scalars(
                select(MemberAddressRow)
                .where(*clauses)
                .order_by(MemberAddressRow.created_at.asc(), MemberAddressRow.id.asc())
                .offset((p - 1) * size)
                .limit(size)
            )
            items = [_address_to_domain(r) for r in rows]
            return Result.success(PagedResult(items=items, total=int(total), page=p, page_size=size))

        return await self._run(work)

    async def list_by_state(
        self,
        state_or_province: str,
        tenant_id: Optional[str] = None,
        institution_id: Optional[str] = None,
    ) -> Result[list[MemberAddress]]:
        def work(db: Session) -> Result[list[MemberAddress]]:
            ctx = isolation.require_context()
            if ctx is None:
                return Result.no_tenant_context()
            stmt = self._scoped(ctx).where(
                MemberAddressRow.state_or_province == (state_or_province or "").strip().upper()
            )
            if tenant_id:
                stmt = stmt.where(func.lower(MemberAddressRow.tenant_id) == tenant_id.strip().lower())
            if institution_id:
                stmt = stmt.where(func.lower(MemberAddressRow.institution_id) == institution_id.strip().lower())
            stmt = stmt.order_by(MemberAddressRow.created_at.asc(), MemberAddressRow.id.asc())
            return Result.success([_address_to_domain(r) for r in db.scalars(stmt)])

        return await self._run(work)

    async def get_many(self, address_ids: Iterable[str]) -> Result[list[MemberAddress]]:
        ids = list(dict.fromkeys(address_ids))

        def work(db: Session) -> Result[list[MemberAddress]]:
            ctx = isolation.require_context()
            if ctx is None:
                return Result.no_tenant_context()
            if not ids:
                return Result.success([])
            rows = {r.id: r for r in db.scalars(self._scoped(ctx).where(MemberAddressRow.id.in_(ids)))}
            return Result.success([_address_to_domain(rows[i]) for i in ids if i in rows])

        return await self._run(work)

    async def upsert_bulk(self, institution_id: str, addresses: Iterable[MemberAddress]) -> Result[int]:
        batch = list(addresses)

        def work(db: Session) -> Result[int]:
            ctx = isolation.require_context()
            if ctx is None:
                return Result.no_tenant_context()
            for a in batch:
                if a.institution_id != institution_id:
                    return Result.validation(f"Address '{a.id}' belongs to a different institution.")
                failure = self._check_owner(db, ctx, a)
                if failure:
                    return failure
            for a in batch:
                row = db.get(MemberAddressRow, a.id) or MemberAddressRow(id=a.id)
                _address_apply(row, a)
                db.add(row)
            return Result.success(len(batch))

        return await self._run(work)

    async def delete(self, address_id: str) -> Result[None]:
        def work(db: Session) -> Result[None]:
            ctx = isolation.require_context()
            if ctx is None:
                return Result.no_tenant_context()
            row = db.scalar(self._scoped(ctx).where(MemberAddressRow.id == address_id))
            if row is None:
                return Result.not_found("Address not found.")
            db.delete(row)
            return Result.success()

        return await self._run(work)


class SqlScanJobStore(_SqlStore):
    """
    A job is visible when any of its cohort rows is in scope. The window is
    filtered, ordered and paged in SQL.
    """

    def _visible_clauses(self, ctx) -> list[Any]:
        if ctx.is_platform_admin:
            return []
        c = ScanJobCohortRow
        in_scope = (
            select(c.job_id)
            .where(c.job_id == ScanJobRow.id)
            .where(*isolation.scope_clauses(ctx, c.tenant_id, c.institution_id))
        )
        return [in_scope.exists()]

    def _save_cohorts(self, db: Session, job: ScanJob) -> None:
        db.execute(delete(ScanJobCohortRow).where(ScanJobCohortRow.job_id == job.id))
        for tenant_id, institution_id in sorted({(c.tenant_id, c.institution_id) for c in job.cohorts}):
            db.add(ScanJobCohortRow(job_id=job.id, tenant_id=tenant_id, institution_id=institution_id))

    def _newest_first(self, ctx):
        return (
            select(ScanJobRow)
            .where(*self._visible_clauses(ctx))
            .order_by(ScanJobRow.created_at.desc(), ScanJobRow.id.desc())
        )

    async def create(self, job: ScanJob) -> Result[ScanJob]:
        def work(db: Session) -> Result[ScanJob]:
            ctx = isolation.require_context()
            if ctx is None:
                return Result.no_tenant_context()
            if not isolation.job_writable(ctx, job):
                return Result.unauthorized("Not authorized to create scans for this scope.")
            if db.get(ScanJobRow, job.id) is not None:
                return Result.validation(f"Scan job '{job.id}' already exists.")
            row = ScanJobRow(id=job.id)
            _job_apply(row, job)
            db.add(row)
            db.flush()
            self._save_cohorts(db, job)
            return Result.success(job)

        return await self._run(work)

    async def update(self, job: ScanJob) -> Result[ScanJob]:
        def work(db: Session) -> Result[ScanJob]:
            ctx = isolation.require_context()
            if ctx is None:
                return Result.no_tenant_context()
            if not isolation.job_writable(ctx, job):
                return Result.unauthorized("Not authorized to update this scan job.")
            row = db.get(ScanJobRow, job.id)
            if row is not None and not isolation.job_visible(ctx, _job_to_domain(row)):
                return Result.unauthorized("Not authorized to update this scan job.")
            row = row or ScanJobRow(id=job.id)
            _job_apply(row, job)
            db.add(row)
            db.flush()
            self._save_cohorts(db, job)
            return Result.success(job)

        return await self._run(work)

    async def get(self, job_id: str) -> Result[ScanJob]:
        def work(db: Session) -> Result[ScanJob]:
            ctx = isolation.require_context()
            if ctx is None:
                return Result.no_tenant_context()
            row = db.scalar(select(ScanJobRow).where(ScanJobRow.id == job_id).where(*self._visible_clauses(ctx)))
            if row is None:
                return Result.not_found("Scan job not found.")
            return Result.success(_job_to_domain(row))

        return await self._run(work)

    async def get_latest(self) -> Result[Optional[ScanJob]]:
        def work(db: Session) -> Result[Optional[ScanJob]]:
            ctx = isolation.require_context()
            if ctx is None:
                return Result.no_tenant_context()
            row = db.scalar(self._newest_first(ctx).limit(1))
            return Result.success(_job_to_domain(row) if row is not None else None)

        return await self._run(work)

    async def list_recent(self, page: int = 1, page_size: int = 20) -> Result[PagedResult[ScanJob]]:
        def work(db: Session) -> Result[PagedResult[ScanJob]]:
            ctx = isolation.require_context()
            if ctx is None:
                return Result.no_tenant_context()
            p, size = normalize_page(page, page_size, 20)
            clauses = self._visible_clauses(ctx)

            total = db.scalar(select(func.count()).select_from(ScanJobRow).where(*clauses)) or 0
            rows = db.scalars(self._newest_first(ctx).offset((p - 1) * size).limit(size))
            items = [_job_to_domain(r) for r in rows]
            return Result.success(PagedResult(items=items, total=int(total), page=p, page_size=size))

        return await self._run(work)


class SqlMatchStore(_SqlStore):
    """Tenancy lives in association rows so visibility and paging stay in SQL."""

    def _visible_clauses(self, ctx, institution_id: Optional[str] = None) -> list[Any]:
        t, i = ListingMatchTenantRow, ListingMatchInstitutionRow

        def has_institution(wanted: str):
            return (
                select(i.match_id)
                .where(i.match_id == ListingMatchRow.id)
                .where(func.lower(i.institution_id) == wanted.strip().lower())
                .exists()
            )

        clauses: list[Any] = []
        if not ctx.is_platform_admin:
            clauses.append(
                select(t.match_id)
                .where(t.match_id == ListingMatchRow.id)
                .where(func.lower(t.tenant_id) == ctx.tenant_id.strip().lower())
                .exists()
            )
            if ctx.institution_id is not None:
                clauses.append(has_institution(ctx.institution_id))
        if institution_id:
            clauses.append(has_institution(institution_id))
        return clauses

    async def create(self, match: ListingMatch) -> Result[ListingMatch]:
        def work(db: Session) -> Result[ListingMatch]:
            ctx = isolation.require_context()
            if ctx is None:
                return Result.no_tenant_context()
            if not isolation.match_writable(ctx, match):
                return Result.unauthorized("Not authorized to record matches for this scope.")
            if db.get(ListingMatchRow, match.id) is not None:
                return Result.validation(f"Listing match '{match.id}' already exists.")
            db.add(_match_row(match))
            db.flush()
            for tenant_id in match.matched_tenant_ids:
                db.add(ListingMatchTenantRow(match_id=match.id, tenant_id=tenant_id))
            for institution_id in match.matched_institution_ids:
                db.add(ListingMatchInstitutionRow(match_id=match.id, institution_id=institution_id))
            return Result.success(match)

        return await self._run(work)

    async def list_recent(
        self, institution_id: Optional[str] = None, page: int = 1, page_size: int = 50
    ) -> Result[PagedResult[ListingMatch]]:
        def work(db: Session) -> Result[PagedResult[ListingMatch]]:
            ctx = isolation.require_context()
            if ctx is None:
                return Result.no_tenant_context()
            p, size = normalize_page(page, page_size)
            clauses = self._visible_clauses(ctx, institution_id)

            total = db.scalar(select(func.count()).select_from(ListingMatchRow).where(*clauses)) or 0
            rows = db.scalars(
                select(ListingMatchRow)
                .where(*clauses)
                .order_by(ListingMatchRow.detected_at.desc(), ListingMatchRow.id.desc())
                .offset((p - 1) * size)
                .limit(size)
            )
            items = [_match_to_domain(r) for r in rows]
            return Result.success(PagedResult(items=items, total=int(total), page=p, page_size=size))

        return await self._run(work)

    async def purge_older_than(self, cutoff_utc: datetime) -> Result[int]:
        def work(db: Session) -> Result[int]:
            ctx = isolation.require_context()
            if ctx is None:
                return Result.no_tenant_context()
            doomed = list(
                db.scalars(
                    select(ListingMatchRow.id)
                    .where(ListingMatchRow.detected_at < _aware(cutoff_utc))
                    .where(*self._visible_clauses(ctx))
                )
            )
            if doomed:
                db.execute(delete(ListingMatchTenantRow).where(ListingMatchTenantRow.match_id.in_(doomed)))
                db.execute(
                    delete(ListingMatchInstitutionRow).where(ListingMatchInstitutionRow.match_id.in_(doomed))
                )
                db.execute(delete(ListingMatchRow).where(ListingMatchRow.id.in_(doomed)))
            return Result.success(len(doomed))

        return await self._run(work)


class SqlScheduleStore(_SqlStore):
    """The schedule is global; it is not tenant-filtered."""

    async def get(self) -> Result[CronScheduleDefinition]:
        def work(db: Session) -> Result[CronScheduleDefinition]:
            row = db.get(ScanScheduleRow, SCHEDULE_ROW_ID)
            if row is not None:
                stored = CronScheduleDefinition.create(row.expression, row.time_zone_id, _aware(row.last_run_at))
                if stored.ok:
                    return stored
            # nothing stored yet (or the stored row no longer parses)
            fallback = CronScheduleDefinition.create(settings.default_cron_expression, settings.default_time_zone)
            if fallback.ok and row is not None and row.last_run_at is not None:
                fallback.value.record_run(_aware(row.last_run_at))
            return fallback

        return await self._run(work)

    async def upsert(self, definition: CronScheduleDefinition) -> Result[CronScheduleDefinition]:
        def work(db: Session) -> Result[CronScheduleDefinition]:
            row = db.get(ScanScheduleRow, SCHEDULE_ROW_ID) or ScanScheduleRow(id=SCHEDULE_ROW_ID)
            row.expression = definition.expression
            row.time_zone_id = definition.time_zone_id
            row.last_run_at = definition.last_run_utc
            row.updated_at = _utcnow()
            db.add(row)
            return Result.success(definition)

        return await self._run(work)


@dataclass
class SqlStores:
    institutions: SqlInstitutionStore
    addresses: SqlMemberAddressStore
    scan_jobs: SqlScanJobStore
    matches: SqlMatchStore
    schedule: SqlScheduleStore


def build_sql_stores(session_factory: sessionmaker) -> SqlStores:
    return SqlStores(
        institutions=SqlInstitutionStore(session_factory),
        addresses=SqlMemberAddressStore(session_factory),
        scan_jobs=SqlScanJobStore(session_factory),
        matches=SqlMatchStore(session_factory),
        schedule=SqlScheduleStore(session_factory),
    )
