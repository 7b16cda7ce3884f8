# tests/test_alert_publisher.py
from __future__ import annotations

import asyncio
import json

import httpx

from member_alert.clients.webhook import WebhookClient
from member_alert.domain import Address, AlertSeverity, ListingMatch
from member_alert.services.alert_publisher import ALERT_SUBJECT, FanOutAlertPublisher, alert_payload


def _match(mid="m1") -> ListingMatch:
    m = ListingMatch.create(
        mid,
        "L1",
        Address(line1="5 Rental Rd", city="Sacramento", state_or_province="CA", postal_code="95814"),
        2600,
        "https://listings.example/L1",
        AlertSeverity.warning,
        ["a1", "a2"],
    ).value
    m.set_tenancy_details(["t1"], ["i1"])
    return m


class RecordingBus:
    def __init__(self, fail_for=()) -> None:
        self.sent = []
        self.fail_for = set(fail_for)

    async def send(self, *, queue, subject, message_id, body):
        if message_id in self.fail_for:
            raise ConnectionError("broker unreachable")
        self.sent.append((queue, subject, message_id, body))


def test_payload_carries_routing_fields():
    payload = alert_payload(_match())
    assert payload["matchId"] == "m1"
    assert payload["listing"] == {
        "listingId": "L1",
        "address": "5 Rental Rd, Sacramento, CA, 95814, US",
        "rent": 2600.0,
        "url": "https://listings.example/L1",
    }
    assert payload["severity"] == "Warning"
    assert payload["tenantIds"] == ["t1"]
    assert payload["institutionIds"] == ["i1"]
    assert payload["matchedAddressIds"] == ["a1", "a2"]
    assert payload["detectedAtUtc"].endswith("+00:00")


def test_webhook_gets_one_post_per_match():
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(202)

    webhook = WebhookClient("https://hooks.example/alerts", transport=httpx.MockTransport(handler))
    publisher = FanOutAlertPublisher(webhook=webhook, enable_webhook=True, enable_message_bus=False)

    res = asyncio.run(publisher.publish([_match("m1"), _match("m2")]))
    assert res.ok
    assert [r["matchId"] for r in received] == ["m1", "m2"]


def test_bus_messages_use_match_id_and_queue():
    bus = RecordingBus()
    publisher = FanOutAlertPublisher(bus=bus, queue_name="member-alerts", enable_message_bus=True, enable_webhook=False)

    match = _match("m1")
    res = asyncio.run(publisher.publish([match]))
    assert res.ok
    assert bus.sent == [("member-alerts", ALERT_SUBJECT, "m1", alert_payload(match))]


def test_failures_are_aggregated_after_trying_every_match():
    bus = RecordingBus(fail_for={"m1"})

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    webhook = WebhookClient("https://hooks.example/alerts", transport=httpx.MockTransport(handler))
    publisher = FanOutAlertPublisher(bus=bus, webhook=webhook, enable_message_bus=True, enable_webhook=True)

    res = asyncio.run(publisher.publish([_match("m1"), _match("m2")]))
    assert not res.ok
    assert res.error.startswith("One or more alerts failed to publish: ")
    assert "bus:m1" in res.error
    assert "webhook:m1" in res.error and "webhook:m2" in res.error
    # m2 still reached the bus
    assert [s[2] for s in bus.sent] == ["m2"]


def test_empty_batch_sends_nothing():
    bus = RecordingBus()
    publisher = FanOutAlertPublisher(bus=bus, enable_message_bus=True, enable_webhook=False)
    assert asyncio.run(publisher.publish([])).ok
    assert bus.sent == []
