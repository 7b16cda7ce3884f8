# member_alert/tenancy.py
from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Iterator, Optional

SCHEDULER_PRINCIPAL = "scan-scheduler"
PLATFORM_TENANT_ID = "system"


def _new_correlation_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class TenantContext:
    """
    Who the current operation is acting as.

    - platform admin: bypasses tenant filtering (cohort discovery only)
    - otherwise reads are limited to tenant_id, and to institution_id when set
    """

    tenant_id: str
    institution_id: Optional[str] = None
    is_platform_admin: bool = False
    principal_name: Optional[str] = None
    correlation_id: str = field(default_factory=_new_correlation_id)

    def allows_tenant(self, tenant_id: Optional[str]) -> bool:
        if self.is_platform_admin:
            return True
        return (tenant_id or "").strip().lower() == self.tenant_id.strip().lower()

    def allows_institution(self, tenant_id: Optional[str], institution_id: Optional[str]) -> bool:
        if self.is_platform_admin:
            return True
        if not self.allows_tenant(tenant_id):
            return False
        if self.institution_id is None:
            return True
        return (institution_id or "").strip().lower() == self.institution_id.strip().lower()


tenant_ctx: ContextVar[TenantContext | None] = ContextVar("tenant_context", default=None)


def current_tenant() -> TenantContext | None:
    return tenant_ctx.get()


@contextmanager
def tenant_scope(ctx: TenantContext) -> Iterator[TenantContext]:
    """
    Installs ctx for the duration of the block and restores whatever was
    there before, even if the block raises.

    Each asyncio task runs in a copy of its parent's context, so a scope
    entered inside one task is never visible to a sibling task.
    """
    token = tenant_ctx.set(ctx)
    try:
        yield ctx
    finally:
        tenant_ctx.reset(token)


def platform_admin_context() -> TenantContext:
    return TenantContext(
        tenant_id=PLATFORM_TENANT_ID,
        institution_id=PLATFORM_TENANT_ID,
        is_platform_admin=True,
        principal_name=SCHEDULER_PRINCIPAL,
    )


def cohort_context(tenant_id: str, institution_id: Optional[str]) -> TenantContext:
    return TenantContext(
        tenant_id=tenant_id,
        institution_id=institution_id,
        is_platform_admin=False,
        principal_name=SCHEDULER_PRINCIPAL,
    )
