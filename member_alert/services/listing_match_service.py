# member_alert/services/listing_match_service.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from ..clients.rentcast import ListingsSource
from ..config import settings
from ..domain import (
    ListingMatch,
    MemberAddress,
    RentCastListing,
    TenantInstitutionScope,
    determine_severity,
)
from ..domain.values import same_text
from ..results import ErrorKind, PagedResult, Result
from ..stores.protocols import MatchStore, MemberAddressStore
from .alert_publisher import AlertPublisher

log = logging.getLogger("member_alert.matching")


@dataclass(frozen=True)
class PublishOutcome:
    persisted: int
    failed: int
    addresses_updated: int
    unresolved_address_ids: tuple[str, ...] = ()


def address_matches(listing: RentCastListing, member: MemberAddress, radius_km: float) -> bool:
    """Same state, then same postal code or within radius_km of each other."""
    la = listing.address
    ma = member.address
    if not same_text(la.state_or_province, ma.state_or_province):
        return False
    if same_text(la.postal_code, ma.postal_code):
        return True
    if la.coordinate is not None and ma.coordinate is not None:
        return la.coordinate.distance_to(ma.coordinate) <= radius_km
    return False


def _distinct_scopes(scopes: Iterable[TenantInstitutionScope]) -> list[TenantInstitutionScope]:
    out: list[TenantInstitutionScope] = []
    seen: set[tuple[str, str]] = set()
    for s in scopes:
        key = (s.tenant_id.lower(), s.institution_id.lower())
        if key in seen:
            continue
        seen.add(key)
        out.append(s)
    return out


class ListingMatchService:
    def __init__(
        self,
        *,
        addresses: MemberAddressStore,
        matches: MatchStore,
        listings: ListingsSource,
        publisher: AlertPublisher,
        radius_km: Optional[float] = None,
        warning_rent: Optional[float] = None,
        critical_rent: Optional[float] = None,
    ) -> None:
        self.addresses = addresses
        self.matches = matches
        self.listings = listings
        self.publisher = publisher
        self.radius_km = settings.match_radius_km if radius_km is None else radius_km
        self.warning_rent = settings.severity_warning_rent if warning_rent is None else warning_rent
        self.critical_rent = settings.severity_critical_rent if critical_rent is None else critical_rent

    # -----------------------------
    # find
    # -----------------------------
    async def find_matches(
        self, state_or_province: str, scopes: Iterable[TenantInstitutionScope]
    ) -> Result[list[ListingMatch]]:
        state = (state_or_province or "").strip().upper()
        if not state:
            return Result.validation("State or province is required.")

        scoped: list[tuple[TenantInstitutionScope, list[MemberAddress]]] = []
        for scope in _distinct_scopes(scopes):
            res = await self.addresses.list_by_state(state, scope.tenant_id, scope.institution_id)
            if not res.ok:
                return Result.failure(res.error, res.kind or ErrorKind.unexpected)
            active = [a for a in res.value if a.is_active]
            if active:
                scoped.append((scope, active))

        if not scoped:
            return Result.success([])

        # one upstream call shared by every scope
        fetched = await self.listings.get_listings(state)
        if not fetched.ok:
            return Result.failure(fetched.error or "Listings source failed.", fetched.kind or ErrorKind.upstream)

        found: list[ListingMatch] = []
        for scope, members in scoped:
            for listing in fetched.value:
                hits = [m.id for m in members if address_matches(listing, m, self.radius_km)]
                if not hits:
                    continue
                created = ListingMatch.create(
                    id=str(uuid.uuid4()),
                    listing_id=listing.listing_id,
                    listing_address=listing.address,
                    monthly_rent=listing.monthly_rent,
                    listing_url=listing.listing_url,
                    severity=determine_severity(
                        listing.monthly_rent, warning_at=self.warning_rent, critical_at=self.critical_rent
                    ),
                    matched_address_ids=hits,
                    region=listing.region,
                    metadata={
                        "scope_tenant_id": scope.tenant_id,
                        "scope_institution_id": scope.institution_id,
                        "state": state,
                        "listed_at_utc": listing.listed_at_utc.isoformat() if listing.listed_at_utc else None,
                    },
                )
                if not created.ok:
                    log.warning(
                        "listing skipped",
                        extra={"event": "listing_skipped", "state": state, "error": created.error},
                    )
                    continue
                found.append(created.value)

        log.info("matching finished", extra={"event": "matches_found", "state": state, "count": len(found)})
        return Result.success(found)

    # -----------------------------
    # publish
    # -----------------------------
    async def publish_matches(self, matches: Sequence[ListingMatch]) -> Result[PublishOutcome]:
        if not matches:
            return Result.success(PublishOutcome(persisted=0, failed=0, addresses_updated=0))

        wanted = list(dict.fromkeys(aid for m in matches for aid in m.matched_address_ids))
        lookup = await self.addresses.get_many(wanted)
        if lookup.ok:
            by_id = {a.id: a for a in lookup.value}
        else:
            log.warning("address lookup failed", extra={"event": "address_lookup_failed", "error": lookup.error})
            by_id = {}

        touched: dict[str, dict[str, MemberAddress]] = {}
        unresolved: list[str] = []
        for m in matches:
            resolved = [by_id[aid] for aid in m.matched_address_ids if aid in by_id]
            missing = [aid for aid in m.matched_address_ids if aid not in by_id]
            if missing:
                unresolved.extend(missing)
                log.warning(
                    "match references unknown addresses",
                    extra={"event": "match_integrity", "match_id": m.id, "error": ",".join(missing)},
                )
            if not resolved:
                continue
            m.set_tenancy_details([a.tenant_id for a in resolved], [a.institution_id for a in resolved])
            for a in resolved:
                a.record_match(m.listing_id, m.detected_at_utc)
                touched.setdefault(a.institution_id, {})[a.id] = a

        persisted = 0
        failed = 0
        for m in matches:
            try:
                res = await self.matches.create(m)
            except Exception as e:
                log.exception("match persist raised", extra={"event": "match_persist_failed", "match_id": m.id})
                res = Result.failure(str(e))
            if res.ok:
                persisted += 1
            else:
                failed += 1
                log.warning(
                    "match persist failed",
                    extra={"event": "match_persist_failed", "match_id": m.id, "error": res.error},
                )

        updated = 0
        for institution_id, batch in touched.items():
            try:
                res = await self.addresses.upsert_bulk(institution_id, batch.values())
            except Exception as e:
                log.exception("address upsert raised", extra={"event": "address_upsert_failed"})
                res = Result.failure(str(e))
            if res.ok:
                updated += len(batch)
            else:
                log.warning(
                    "address upsert failed",
                    extra={"event": "address_upsert_failed", "error": f"{institution_id}: {res.error}"},
                )

        # undelivered alerts fail the whole operation; the writes above stand
        sent = await self.publisher.publish(list(matches))
        if not sent.ok:
            return Result.failure(sent.error or "Alert publishing failed.", sent.kind or ErrorKind.upstream)

        return Result.success(
            PublishOutcome(
                persisted=persisted,
                failed=failed,
                addresses_updated=updated,
                unresolved_address_ids=tuple(dict.fromkeys(unresolved)),
            )
        )

    async def get_recent_matches(
        self, institution_id: Optional[str] = None, page: int = 1, page_size: int = 50
    ) -> Result[PagedResult[ListingMatch]]:
        return await self.matches.list_recent(institution_id, page, page_size)
