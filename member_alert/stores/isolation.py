# member_alert/stores/isolation.py
"""
Tenant isolation rules shared by every store backend.

- no ambient context: every operation fails with TENANT_CONTEXT_MISSING
- platform admin: no filtering at all
- otherwise reads are filtered to the context's tenant (and institution,
  when the context carries one) and writes whose tenant / institution
  disagree with the context are rejected with an authorization failure
"""
from __future__ import annotations

from typing import Any, Callable, Iterable, Optional, Sequence, TypeVar

from sqlalchemy import func

from ..domain import ListingMatch, ScanJob
from ..results import PagedResult, Result, normalize_page
from ..tenancy import TenantContext, current_tenant

T = TypeVar("T")


def require_context() -> TenantContext | None:
    return current_tenant()


def can_read(ctx: TenantContext, tenant_id: Optional[str], institution_id: Optional[str]) -> bool:
    return ctx.allows_institution(tenant_id, institution_id)


def check_write(
    ctx: TenantContext,
    tenant_id: Optional[str],
    institution_id: Optional[str],
    message: str,
) -> Result | None:
    """None when the write is allowed, otherwise the failure to return."""
    if ctx.allows_institution(tenant_id, institution_id):
        return None
    return Result.unauthorized(message)


def job_visible(ctx: TenantContext, job: ScanJob) -> bool:
    # A job is visible when any cohort it was started for is visible.
    if ctx.is_platform_admin:
        return True
    return any(ctx.allows_institution(c.tenant_id, c.institution_id) for c in job.cohorts)


def job_writable(ctx: TenantContext, job: ScanJob) -> bool:
    if ctx.is_platform_admin:
        return True
    return bool(job.cohorts) and all(ctx.allows_institution(c.tenant_id, c.institution_id) for c in job.cohorts)


def match_visible(ctx: TenantContext, match: ListingMatch) -> bool:
    if ctx.is_platform_admin:
        return True
    if not any(ctx.allows_tenant(t) for t in match.matched_tenant_ids):
        return False
    if ctx.institution_id is None:
        return True
    wanted = ctx.institution_id.strip().lower()
    return any(i.strip().lower() == wanted for i in match.matched_institution_ids)


def match_writable(ctx: TenantContext, match: ListingMatch) -> bool:
    # Matches with no resolved tenancy are still persisted.
    if ctx.is_platform_admin or not match.matched_tenant_ids:
        return True
    if not all(ctx.allows_tenant(t) for t in match.matched_tenant_ids):
        return False
    if ctx.institution_id is None:
        return True
    wanted = ctx.institution_id.strip().lower()
    return all(i.strip().lower() == wanted for i in match.matched_institution_ids)


def page_window(items: Sequence[T], page: int, page_size: int, default_size: int = 50) -> PagedResult[T]:
    """Offset/limit over an already-filtered sequence; total is the filtered count."""
    page, page_size = normalize_page(page, page_size, default_size)
    start = (page - 1) * page_size
    return PagedResult(
        items=list(items[start : start + page_size]),
        total=len(items),
        page=page,
        page_size=page_size,
    )


def filter_visible(
    ctx: TenantContext,
    items: Iterable[T],
    key: Callable[[T], tuple[Optional[str], Optional[str]]],
) -> list[T]:
    return [x for x in items if can_read(ctx, *key(x))]


def scope_clauses(ctx: TenantContext, tenant_col: Any, institution_col: Any) -> list[Any]:
    """WHERE clauses equivalent to can_read for SQL backends."""
    if ctx.is_platform_admin:
        return []
    clauses = [func.lower(tenant_col) == ctx.tenant_id.strip().lower()]
    if ctx.institution_id is not None:
        clauses.append(func.lower(institution_col) == ctx.institution_id.strip().lower())
    return clauses
