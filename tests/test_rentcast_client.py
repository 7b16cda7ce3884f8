# tests/test_rentcast_client.py
from __future__ import annotations

import asyncio

import httpx

from member_alert.clients.rentcast import RentCastListingsClient, listing_from_payload
from member_alert.results import ErrorKind

LISTING = {
    "id": "123-Main-St,-Sacramento,-CA-95814",
    "addressLine1": "123 Main St",
    "addressLine2": "Apt 4",
    "city": "Sacramento",
    "state": "CA",
    "postalCode": "95814",
    "country": "US",
    "monthlyRent": 2600,
    "bedrooms": 2,
    "bathrooms": 1.5,
    "squareFeet": 900,
    "url": "https://listings.example/123",
    "listedOn": "2026-01-10T00:00:00.000Z",
    "latitude": 38.58,
    "longitude": -121.49,
    "region": "Sacramento",
}


def _client(handler, **kw) -> RentCastListingsClient:
    kw.setdefault("max_retries", 2)
    return RentCastListingsClient(
        base_url="https://api.rentcast.test",
        api_key="k-123",
        retry_delay_seconds=0,
        transport=httpx.MockTransport(handler),
        **kw,
    )


def test_payload_mapping():
    listing = listing_from_payload(LISTING)
    assert listing.listing_id == LISTING["id"]
    assert listing.address.line2 == "Apt 4"
    assert listing.address.coordinate.latitude == 38.58
    assert listing.monthly_rent == 2600.0
    assert listing.square_feet == 900
    assert listing.listed_at_utc.year == 2026
    assert listing.region == "Sacramento"


def test_payload_without_rent_or_address_is_skipped():
    assert listing_from_payload({**LISTING, "monthlyRent": None}) is None
    assert listing_from_payload({**LISTING, "addressLine1": ""}) is None
    assert listing_from_payload({**LISTING, "id": ""}) is None


def test_get_listings_sends_state_and_api_key():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[LISTING, {"id": "broken"}])

    res = asyncio.run(_client(handler).get_listings("ca"))
    assert res.ok
    assert [x.listing_id for x in res.value] == [LISTING["id"]]
    assert seen[0].url.path == "/v1/listings"
    assert seen[0].url.params["state"] == "CA"
    assert seen[0].headers["X-Api-Key"] == "k-123"


def test_server_errors_are_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json=[LISTING])

    res = asyncio.run(_client(handler).get_listings("CA"))
    assert res.ok
    assert len(calls) == 3


def test_client_errors_fail_fast_as_upstream():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(401, json={"message": "bad key"})

    res = asyncio.run(_client(handler).get_listings("CA"))
    assert not res.ok
    assert res.kind == ErrorKind.upstream
    assert len(calls) == 1


def test_missing_api_key_is_an_upstream_failure():
    client = RentCastListingsClient(api_key="", transport=httpx.MockTransport(lambda r: httpx.Response(200, json=[])))
    res = asyncio.run(client.get_listings("CA"))
    assert not res.ok
    assert res.kind == ErrorKind.upstream
