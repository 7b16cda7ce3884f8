# member_alert/domain/values.py
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Optional

EARTH_RADIUS_KM = 6371.0

_POSTAL_CODE_RE = re.compile(r"^[0-9A-Za-z\- ]{3,15}$")


class DomainValidationError(ValueError):
    """Malformed input for a value object."""


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def same_text(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").strip().casefold() == (b or "").strip().casefold()


@dataclass(frozen=True)
class GeoCoordinate:
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        lat = float(self.latitude)
        lon = float(self.longitude)
        if not -90.0 <= lat <= 90.0:
            raise DomainValidationError(f"Latitude must be between -90 and 90 (got {lat}).")
        if not -180.0 <= lon <= 180.0:
            raise DomainValidationError(f"Longitude must be between -180 and 180 (got {lon}).")
        object.__setattr__(self, "latitude", round(lat, 6))
        object.__setattr__(self, "longitude", round(lon, 6))

    def distance_to(self, other: "GeoCoordinate") -> float:
        """Great-circle distance in kilometres."""
        return haversine_km(self.latitude, self.longitude, other.latitude, other.longitude)

    @classmethod
    def maybe(cls, latitude: Any, longitude: Any) -> Optional["GeoCoordinate"]:
        if latitude is None or longitude is None:
            return None
        return cls(float(latitude), float(longitude))


@dataclass(frozen=True)
class Address:
    line1: str
    city: str
    state_or_province: str
    postal_code: str
    country_code: str = "US"
    line2: Optional[str] = None
    coordinate: Optional[GeoCoordinate] = None

    def __post_init__(self) -> None:
        line1 = (self.line1 or "").strip()
        city = (self.city or "").strip()
        state = (self.state_or_province or "").strip()
        postal = (self.postal_code or "").strip()
        country = (self.country_code or "").strip()

        if not line1:
            raise DomainValidationError("Line1 is required.")
        if not city:
            raise DomainValidationError("City is required.")
        if not state:
            raise DomainValidationError("State or province is required.")
        if not 2 <= len(country) <= 3:
            raise DomainValidationError("Country code must be ISO alpha-2/3.")
        if not _POSTAL_CODE_RE.match(postal):
            raise DomainValidationError("Postal code format is invalid.")

        line2 = (self.line2 or "").strip() or None

        object.__setattr__(self, "line1", line1)
        object.__setattr__(self, "line2", line2)
        object.__setattr__(self, "city", city)
        object.__setattr__(self, "state_or_province", state)
        object.__setattr__(self, "postal_code", postal)
        object.__setattr__(self, "country_code", country.upper())

    def __str__(self) -> str:
        parts = [self.line1, self.line2, self.city, self.state_or_province, self.postal_code, self.country_code]
        return ", ".join(p for p in parts if p)

    def as_dict(self) -> dict[str, Any]:
        return {
            "line1": self.line1,
            "line2": self.line2,
            "city": self.city,
            "state_or_province": self.state_or_province,
            "postal_code": self.postal_code,
            "country_code": self.country_code,
            "latitude": self.coordinate.latitude if self.coordinate else None,
            "longitude": self.coordinate.longitude if self.coordinate else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Address":
        return cls(
            line1=data.get("line1") or "",
            line2=data.get("line2"),
            city=data.get("city") or "",
            state_or_province=data.get("state_or_province") or "",
            postal_code=data.get("postal_code") or "",
            country_code=data.get("country_code") or "US",
            coordinate=GeoCoordinate.maybe(data.get("latitude"), data.get("longitude")),
        )


@dataclass(frozen=True)
class TenantInstitutionScope:
    """Addresses exactly one cohort of addresses: one institution of one tenant."""

    tenant_id: str
    institution_id: str

    def __post_init__(self) -> None:
        tenant_id = (self.tenant_id or "").strip()
        institution_id = (self.institution_id or "").strip()
        if not tenant_id:
            raise DomainValidationError("Tenant id must be provided.")
        if not institution_id:
            raise DomainValidationError("Institution id must be provided.")
        object.__setattr__(self, "tenant_id", tenant_id)
        object.__setattr__(self, "institution_id", institution_id)

    def as_dict(self) -> dict[str, str]:
        return {"tenant_id": self.tenant_id, "institution_id": self.institution_id}
