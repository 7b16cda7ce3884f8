# member_alert/domain/matches.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from ..results import Result
from .values import Address

WARNING_RENT = 2500.0
CRITICAL_RENT = 5000.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertSeverity(str, enum.Enum):
    informational = "Informational"
    warning = "Warning"
    critical = "Critical"


def determine_severity(
    monthly_rent: float,
    *,
    warning_at: float = WARNING_RENT,
    critical_at: float = CRITICAL_RENT,
) -> AlertSeverity:
    # evaluated top-down
    if monthly_rent >= critical_at:
        return AlertSeverity.critical
    if monthly_rent >= warning_at:
        return AlertSeverity.warning
    return AlertSeverity.informational


def distinct_ids(values: Iterable[str] | None) -> tuple[str, ...]:
    """Trimmed, non-empty, case-insensitively distinct; first spelling wins."""
    out: list[str] = []
    seen: set[str] = set()
    for v in values or ():
        s = (v or "").strip()
        if not s or s.casefold() in seen:
            continue
        seen.add(s.casefold())
        out.append(s)
    return tuple(out)


@dataclass(frozen=True)
class RentCastListing:
    """A rental listing as returned by the listings source. Not owned here."""

    listing_id: str
    address: Address
    monthly_rent: float
    listing_url: str
    listed_at_utc: Optional[datetime] = None
    region: Optional[str] = None
    bedrooms: Optional[float] = None
    bathrooms: Optional[float] = None
    square_feet: Optional[int] = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


class ListingMatch:
    """
    One listing correlated with one or more member addresses of a scope.

    matched_address_ids is non-empty from creation. Tenant / institution ids
    start empty and are filled in (both at once) by set_tenancy_details.
    """

    def __init__(
        self,
        *,
        id: str,
        listing_id: str,
        listing_address: Address,
        monthly_rent: float,
        listing_url: str,
        severity: AlertSeverity,
        matched_address_ids: Iterable[str],
        detected_at_utc: datetime,
        region: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        matched_tenant_ids: Iterable[str] | None = None,
        matched_institution_ids: Iterable[str] | None = None,
        created_at_utc: Optional[datetime] = None,
        updated_at_utc: Optional[datetime] = None,
    ) -> None:
        self._id = id
        self._listing_id = listing_id
        self._listing_address = listing_address
        self._monthly_rent = monthly_rent
        self._listing_url = listing_url
        self._severity = AlertSeverity(severity)
        self._matched_address_ids = distinct_ids(matched_address_ids)
        self._matched_tenant_ids = distinct_ids(matched_tenant_ids)
        self._matched_institution_ids = distinct_ids(matched_institution_ids)
        self._detected_at_utc = detected_at_utc
        self._region = region
        self._metadata = dict(metadata or {})
        self._created_at_utc = created_at_utc or _utcnow()
        self._updated_at_utc = updated_at_utc or self._created_at_utc

    @classmethod
    def create(
        cls,
        id: str,
        listing_id: str,
        listing_address: Address,
        monthly_rent: float,
        listing_url: str,
        severity: AlertSeverity,
        matched_address_ids: Iterable[str],
        detected_at_utc: Optional[datetime] = None,
        region: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Result["ListingMatch"]:
        if not (listing_id or "").strip():
            return Result.validation("Listing id is required.")
        address_ids = distinct_ids(matched_address_ids)
        if not address_ids:
            return Result.validation("At least one matched address id must be provided.")
        try:
            rent = round(float(monthly_rent), 2)
        except (TypeError, ValueError):
            return Result.validation("Monthly rent must be a number.")
        if rent <= 0:
            return Result.validation("Monthly rent must be greater than zero.")

        return Result.success(
            cls(
                id=id,
                listing_id=listing_id.strip(),
                listing_address=listing_address,
                monthly_rent=rent,
                listing_url=(listing_url or "").strip(),
                severity=severity,
                matched_address_ids=address_ids,
                detected_at_utc=detected_at_utc or _utcnow(),
                region=region,
                metadata=metadata,
            )
        )

    @classmethod
    def rehydrate(cls, **kwargs) -> "ListingMatch":
        return cls(**kwargs)

    @property
    def id(self) -> str:
        return self._id

    @property
    def listing_id(self) -> str:
        return self._listing_id

    @property
    def listing_address(self) -> Address:
        return self._listing_address

    @property
    def monthly_rent(self) -> float:
        return self._monthly_rent

    @property
    def listing_url(self) -> str:
        return self._listing_url

    @property
    def severity(self) -> AlertSeverity:
        return self._severity

    @property
    def matched_address_ids(self) -> tuple[str, ...]:
        return self._matched_address_ids

    @property
    def matched_tenant_ids(self) -> tuple[str, ...]:
        return self._matched_tenant_ids

    @property
    def matched_institution_ids(self) -> tuple[str, ...]:
        return self._matched_institution_ids

    @property
    def detected_at_utc(self) -> datetime:
        return self._detected_at_utc

    @property
    def region(self) -> Optional[str]:
        return self._region

    @property
    def metadata(self) -> dict[str, Any]:
        return dict(self._metadata)

    @property
    def created_at_utc(self) -> datetime:
        return self._created_at_utc

    @property
    def updated_at_utc(self) -> datetime:
        return self._updated_at_utc

    def set_tenancy_details(self, tenant_ids: Iterable[str], institution_ids: Iterable[str]) -> None:
        # compute both before assigning either
        tenants = distinct_ids(tenant_ids)
        institutions = distinct_ids(institution_ids)
        self._matched_tenant_ids, self._matched_institution_ids = tenants, institutions
        self._updated_at_utc = _utcnow()

    def __repr__(self) -> str:
        return f"ListingMatch(id={self._id!r}, listing_id={self._listing_id!r}, severity={self._severity.value!r})"
