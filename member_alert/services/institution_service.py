from __future__ import annotations

import uuid
from typing import Iterable, Optional

from ..domain import Address, DomainValidationError, Institution, InstitutionStatus, MemberAddress
from ..results import PagedResult, Result
from ..stores.protocols import InstitutionStore, MemberAddressStore
from ..tenancy import current_tenant


class InstitutionService:
    """Tenant-facing institution / address management. Store calls enforce isolation."""

    def __init__(self, *, institutions: InstitutionStore, addresses: MemberAddressStore) -> None:
        self.institutions = institutions
        self.addresses = addresses

    async def create_institution(
        self,
        name: str,
        time_zone_id: str,
        *,
        institution_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        primary_contact_email: Optional[str] = None,
    ) -> Result[Institution]:
        ctx = current_tenant()
        if ctx is None:
            return Result.no_tenant_context()
        created = Institution.create(
            id=institution_id or str(uuid.uuid4()),
            tenant_id=tenant_id or ctx.tenant_id,
            name=name,
            time_zone_id=time_zone_id,
            primary_contact_email=primary_contact_email,
        )
        if not created.ok:
            return created
        return await self.institutions.create(created.value)

    async def list_institutions(self, page: int = 1, page_size: int = 50) -> Result[PagedResult[Institution]]:
        return await self.institutions.list(page, page_size)

    async def update_institution(
        self,
        institution_id: str,
        *,
        name: str,
        status: InstitutionStatus,
        primary_contact_email: Optional[str] = None,
    ) -> Result[Institution]:
        loaded = await self.institutions.get(institution_id)
        if not loaded.ok:
            return loaded
        inst = loaded.value
        changed = inst.update_details(name, primary_contact_email, status)
        if not changed.ok:
            return changed
        return await self.institutions.update(inst)

    async def add_address(
        self,
        institution_id: str,
        address: dict,
        *,
        address_id: Optional[str] = None,
        tags: Iterable[str] | None = None,
    ) -> Result[MemberAddress]:
        loaded = await self.institutions.get(institution_id)
        if not loaded.ok:
            return loaded
        inst = loaded.value
        try:
            value = Address.from_dict(address)
        except DomainValidationError as e:
            return Result.validation(str(e))

        created = MemberAddress.create(address_id or str(uuid.uuid4()), inst.tenant_id, inst.id, value, tags=tags)
        if not created.ok:
            return created
        added = inst.add_address(created.value)
        if not added.ok:
            return added
        return await self.addresses.create(created.value)

    async def deactivate_address(self, address_id: str) -> Result[MemberAddress]:
        loaded = await self.addresses.get(address_id)
        if not loaded.ok:
            return loaded
        member = loaded.value
        member.deactivate()
        saved = await self.addresses.upsert_bulk(member.institution_id, [member])
        if not saved.ok:
            return saved
        return Result.success(member)
