from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import httpx

from ..config import settings
from ..domain import Address, DomainValidationError, GeoCoordinate, RentCastListing
from ..results import ErrorKind, Result

log = logging.getLogger("member_alert.rentcast")


class ListingsSource(Protocol):
    async def get_listings(self, state_or_province: str) -> Result[list[RentCastListing]]: ...


def _num(v: Any) -> Optional[float]:
    return float(v) if isinstance(v, (int, float)) and not isinstance(v, bool) else None


def _parse_dt(v: Any) -> Optional[datetime]:
    if not isinstance(v, str) or not v.strip():
        return None
    try:
        dt = datetime.fromisoformat(v.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def listing_from_payload(item: dict[str, Any]) -> Optional[RentCastListing]:
    """
    Maps one listing object from the API. Returns None when the listing
    has no id, no usable rent or an address that does not validate.
    """
    listing_id = str(item.get("id") or "").strip()
    rent = _num(item.get("monthlyRent"))
    if rent is None:
        rent = _num(item.get("price"))
    if not listing_id or rent is None:
        return None

    try:
        coordinate = GeoCoordinate.maybe(item.get("latitude"), item.get("longitude"))
        address = Address(
            line1=item.get("addressLine1") or "",
            line2=item.get("addressLine2"),
            city=item.get("city") or "",
            state_or_province=item.get("state") or "",
            postal_code=item.get("postalCode") or item.get("zipCode") or "",
            country_code=item.get("country") or "US",
            coordinate=coordinate,
        )
    except (DomainValidationError, TypeError, ValueError) as e:
        log.warning("skipping listing with invalid address", extra={"event": "listing_skipped", "error": str(e)})
        return None

    sqft = item.get("squareFeet") or item.get("squareFootage")
    return RentCastListing(
        listing_id=listing_id,
        address=address,
        monthly_rent=rent,
        listing_url=str(item.get("url") or ""),
        listed_at_utc=_parse_dt(item.get("listedOn") or item.get("listedDate")),
        region=item.get("region"),
        bedrooms=_num(item.get("bedrooms")),
        bathrooms=_num(item.get("bathrooms")),
        square_feet=int(sqft) if isinstance(sqft, (int, float)) else None,
        raw=item,
    )


class RentCastListingsClient:
    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base = (base_url or settings.rentcast_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.rentcast_api_key
        self.timeout = timeout_seconds if timeout_seconds is not None else settings.rentcast_timeout_seconds
        self.max_retries = max(0, max_retries if max_retries is not None else settings.rentcast_max_retries)
        self.retry_delay = (
            retry_delay_seconds if retry_delay_seconds is not None else settings.rentcast_retry_delay_seconds
        )
        self._transport = transport

    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _fetch(self, state: str) -> list[dict[str, Any]]:
        url = f"{self.base}/v1/listings"
        headers = {"X-Api-Key": self.api_key or "", "Accept": "application/json"}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            r = await client.get(url, params={"state": state}, headers=headers)
            r.raise_for_status()
            data = r.json()
        if isinstance(data, dict):
            data = data.get("listings") or data.get("items") or []
        return [x for x in data if isinstance(x, dict)] if isinstance(data, list) else []

    async def get_listings(self, state_or_province: str) -> Result[list[RentCastListing]]:
        state = (state_or_province or "").strip().upper()
        if not state:
            return Result.validation("State or province is required.")
        if not self.api_key:
            return Result.failure("rentcast_api_key not set", ErrorKind.upstream)

        attempt = 0
        while True:
            try:
                payload = await self._fetch(state)
                break
            except (httpx.HTTPError, ValueError) as e:
                # 4xx other than throttling will not get better on retry
                status = e.response.status_code if isinstance(e, httpx.HTTPStatusError) else None
                retryable = status is None or status == 429 or status >= 500
                if not retryable or attempt >= self.max_retries:
                    log.warning(
                        "listings fetch failed",
                        extra={"event": "listings_fetch_failed", "state": state, "error": str(e)},
                    )
                    return Result.failure(f"Listings request failed: {e}", ErrorKind.upstream)
                attempt += 1
                await asyncio.sleep(self.retry_delay * attempt)

        listings = [x for x in (listing_from_payload(i) for i in payload) if x is not None]
        log.info(
            "fetched listings",
            extra={"event": "listings_fetched", "state": state, "count": len(listings)},
        )
        return Result.success(listings)
