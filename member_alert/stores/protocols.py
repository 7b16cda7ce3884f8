# member_alert/stores/protocols.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Protocol

from ..domain import CronScheduleDefinition, Institution, ListingMatch, MemberAddress, ScanJob
from ..results import PagedResult, Result


@dataclass(frozen=True)
class InstitutionCounts:
    total: int = 0
    active: int = 0
    suspended: int = 0
    disabled: int = 0
    address_count: int = 0
    active_address_count: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "active": self.active,
            "suspended": self.suspended,
            "disabled": self.disabled,
            "address_count": self.address_count,
            "active_address_count": self.active_address_count,
        }


class InstitutionStore(Protocol):
    """Institutions come back hydrated with the member addresses visible to the caller."""

    async def create(self, institution: Institution) -> Result[Institution]: ...

    async def get(self, institution_id: str) -> Result[Institution]: ...

    async def list(self, page: int = 1, page_size: int = 50) -> Result[PagedResult[Institution]]: ...

    async def update(self, institution: Institution) -> Result[Institution]: ...

    async def delete(self, institution_id: str) -> Result[None]: ...

    async def get_counts(self) -> Result[InstitutionCounts]: ...


class MemberAddressStore(Protocol):
    async def create(self, address: MemberAddress) -> Result[MemberAddress]: ...

    async def get(self, address_id: str) -> Result[MemberAddress]: ...

    async def list_by_institution(
        self, institution_id: str, page: int = 1, page_size: int = 50
    ) -> Result[PagedResult[MemberAddress]]: ...

    async def list_by_state(
        self,
        state_or_province: str,
        tenant_id: Optional[str] = None,
        institution_id: Optional[str] = None,
    ) -> Result[list[MemberAddress]]: ...

    async def get_many(self, address_ids: Iterable[str]) -> Result[list[MemberAddress]]: ...

    async def upsert_bulk(self, institution_id: str, addresses: Iterable[MemberAddress]) -> Result[int]: ...

    async def delete(self, address_id: str) -> Result[None]: ...


class ScanJobStore(Protocol):
    async def create(self, job: ScanJob) -> Result[ScanJob]: ...

    async def update(self, job: ScanJob) -> Result[ScanJob]: ...

    async def get(self, job_id: str) -> Result[ScanJob]: ...

    async def get_latest(self) -> Result[Optional[ScanJob]]: ...

    async def list_recent(self, page: int = 1, page_size: int = 20) -> Result[PagedResult[ScanJob]]: ...


class MatchStore(Protocol):
    async def create(self, match: ListingMatch) -> Result[ListingMatch]: ...

    async def list_recent(
        self, institution_id: Optional[str] = None, page: int = 1, page_size: int = 50
    ) -> Result[PagedResult[ListingMatch]]: ...

    async def purge_older_than(self, cutoff_utc: datetime) -> Result[int]: ...


class ScheduleStore(Protocol):
    async def get(self) -> Result[CronScheduleDefinition]: ...

    async def upsert(self, definition: CronScheduleDefinition) -> Result[CronScheduleDefinition]: ...
