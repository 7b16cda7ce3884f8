# member_alert/domain/institutions.py
from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..results import Result
from .values import Address, same_text


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_known_time_zone(time_zone_id: Optional[str]) -> bool:
    if not (time_zone_id or "").strip():
        return False
    try:
        ZoneInfo(time_zone_id.strip())
        return True
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return False


def _clean_tags(tags: Iterable[str] | None) -> tuple[str, ...]:
    out: list[str] = []
    seen: set[str] = set()
    for t in tags or ():
        v = (t or "").strip()
        if not v or v.casefold() in seen:
            continue
        seen.add(v.casefold())
        out.append(v)
    return tuple(out)


class InstitutionStatus(str, enum.Enum):
    active = "Active"
    suspended = "Suspended"
    disabled = "Disabled"


class MemberAddress:
    """
    A member's address. Owned by an institution but stored on its own so it
    can be queried by state without loading the institution.

    tenant_id / institution_id never change after creation.
    """

    def __init__(
        self,
        *,
        id: str,
        tenant_id: str,
        institution_id: str,
        address: Address,
        is_active: bool = True,
        tags: Iterable[str] | None = None,
        last_matched_at_utc: Optional[datetime] = None,
        last_matched_listing_id: Optional[str] = None,
        created_at_utc: Optional[datetime] = None,
        updated_at_utc: Optional[datetime] = None,
    ) -> None:
        self._id = id
        self._tenant_id = tenant_id
        self._institution_id = institution_id
        self._address = address
        self._is_active = bool(is_active)
        self._tags = _clean_tags(tags)
        self._last_matched_at_utc = last_matched_at_utc
        self._last_matched_listing_id = last_matched_listing_id
        self._created_at_utc = created_at_utc or _utcnow()
        self._updated_at_utc = updated_at_utc or self._created_at_utc

    @classmethod
    def create(
        cls,
        id: str,
        tenant_id: str,
        institution_id: str,
        address: Address,
        tags: Iterable[str] | None = None,
        is_active: bool = True,
    ) -> Result["MemberAddress"]:
        if not (id or "").strip():
            return Result.validation("Address id is required.")
        if not (tenant_id or "").strip():
            return Result.validation("Tenant id is required for addresses.")
        if not (institution_id or "").strip():
            return Result.validation("Institution id is required.")
        return Result.success(
            cls(
                id=id.strip(),
                tenant_id=tenant_id.strip(),
                institution_id=institution_id.strip(),
                address=address,
                is_active=is_active,
                tags=tags,
            )
        )

    # ---- read-only surface ----
    @property
    def id(self) -> str:
        return self._id

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    @property
    def institution_id(self) -> str:
        return self._institution_id

    @property
    def address(self) -> Address:
        return self._address

    @property
    def is_active(self) -> bool:
        return self._is_active

    @property
    def tags(self) -> frozenset[str]:
        return frozenset(self._tags)

    @property
    def last_matched_at_utc(self) -> Optional[datetime]:
        return self._last_matched_at_utc

    @property
    def last_matched_listing_id(self) -> Optional[str]:
        return self._last_matched_listing_id

    @property
    def created_at_utc(self) -> datetime:
        return self._created_at_utc

    @property
    def updated_at_utc(self) -> datetime:
        return self._updated_at_utc

    # ---- mutations ----
    def _touch(self) -> None:
        self._updated_at_utc = _utcnow()

    def activate(self) -> Result[None]:
        self._is_active = True
        self._touch()
        return Result.success()

    def deactivate(self) -> Result[None]:
        self._is_active = False
        self._touch()
        return Result.success()

    def update_address(self, address: Address) -> Result[None]:
        self._address = address
        self._touch()
        return Result.success()

    def record_match(self, listing_id: str, matched_at_utc: datetime) -> None:
        self._last_matched_listing_id = listing_id
        self._last_matched_at_utc = matched_at_utc
        self._touch()

    def replace_tags(self, tags: Iterable[str]) -> None:
        self._tags = _clean_tags(tags)
        self._touch()

    def __repr__(self) -> str:
        return f"MemberAddress(id={self._id!r}, tenant_id={self._tenant_id!r}, institution_id={self._institution_id!r})"


class Institution:
    """
    Aggregate root for a tenant-owned institution and its member addresses.

    Only its own methods mutate it. tenant_id is fixed at creation and the
    time zone must resolve.
    """

    def __init__(
        self,
        *,
        id: str,
        tenant_id: str,
        name: str,
        time_zone_id: str,
        status: InstitutionStatus = InstitutionStatus.active,
        primary_contact_email: Optional[str] = None,
        addresses: Iterable[MemberAddress] | None = None,
        created_at_utc: Optional[datetime] = None,
        updated_at_utc: Optional[datetime] = None,
    ) -> None:
        self._id = id
        self._tenant_id = tenant_id
        self._name = name
        self._time_zone_id = time_zone_id
        self._status = InstitutionStatus(status)
        self._primary_contact_email = primary_contact_email
        self._addresses: list[MemberAddress] = list(addresses or [])
        self._created_at_utc = created_at_utc or _utcnow()
        self._updated_at_utc = updated_at_utc or self._created_at_utc

    @classmethod
    def create(
        cls,
        id: str,
        tenant_id: str,
        name: str,
        time_zone_id: str,
        status: InstitutionStatus = InstitutionStatus.active,
        primary_contact_email: Optional[str] = None,
    ) -> Result["Institution"]:
        if not (id or "").strip():
            return Result.validation("Institution id is required.")
        if not (tenant_id or "").strip():
            return Result.validation("Tenant id is required for institutions.")
        if not (name or "").strip():
            return Result.validation("Institution name is required.")
        if not (time_zone_id or "").strip():
            return Result.validation("Time zone is required.")
        if not is_known_time_zone(time_zone_id):
            return Result.validation(f"Time zone '{time_zone_id}' is not recognized.")

        return Result.success(
            cls(
                id=id.strip(),
                tenant_id=tenant_id.strip(),
                name=name.strip(),
                time_zone_id=time_zone_id.strip(),
                status=status,
                primary_contact_email=(primary_contact_email or "").strip() or None,
            )
        )

    @property
    def id(self) -> str:
        return self._id

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    @property
    def name(self) -> str:
        return self._name

    @property
    def time_zone_id(self) -> str:
        return self._time_zone_id

    @property
    def status(self) -> InstitutionStatus:
        return self._status

    @property
    def primary_contact_email(self) -> Optional[str]:
        return self._primary_contact_email

    @property
    def addresses(self) -> tuple[MemberAddress, ...]:
        return tuple(self._addresses)

    @property
    def created_at_utc(self) -> datetime:
        return self._created_at_utc

    @property
    def updated_at_utc(self) -> datetime:
        return self._updated_at_utc

    def active_states(self) -> set[str]:
        """Distinct upper-cased state codes across active addresses."""
        return {
            a.address.state_or_province.strip().upper()
            for a in self._addresses
            if a.is_active and (a.address.state_or_province or "").strip()
        }

    def _touch(self) -> None:
        self._updated_at_utc = _utcnow()

    def add_address(self, address: MemberAddress) -> Result[MemberAddress]:
        if any(a.id == address.id for a in self._addresses):
            return Result.validation(f"Address with id '{address.id}' already exists.")
        if address.institution_id != self._id:
            return Result.validation("Address belongs to a different institution.")
        if not same_text(address.tenant_id, self._tenant_id):
            return Result.validation("Address belongs to a different tenant.")
        self._addresses.append(address)
        self._touch()
        return Result.success(address)

    def remove_address(self, address_id: str) -> Result[None]:
        for i, a in enumerate(self._addresses):
            if a.id == address_id:
                del self._addresses[i]
                self._touch()
                return Result.success()
        return Result.not_found("Address not found.")

    def update_details(
        self,
        name: str,
        primary_contact_email: Optional[str],
        status: InstitutionStatus,
    ) -> Result[None]:
        if not (name or "").strip():
            return Result.validation("Institution name cannot be empty.")
        self._name = name.strip()
        self._primary_contact_email = (primary_contact_email or "").strip() or None
        self._status = InstitutionStatus(status)
        self._touch()
        return Result.success()

    def __repr__(self) -> str:
        return f"Institution(id={self._id!r}, tenant_id={self._tenant_id!r}, status={self._status.value!r})"
