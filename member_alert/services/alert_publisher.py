# member_alert/services/alert_publisher.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol, Sequence

from ..clients.webhook import WebhookClient
from ..config import settings
from ..domain import ListingMatch
from ..results import ErrorKind, Result

log = logging.getLogger("member_alert.alerts")

ALERT_SUBJECT = "listing-match"
# consumed by downstream notification workers, not by this service
ALERT_TASK_NAME = "member_alert.alerts.listing_match"


def alert_payload(match: ListingMatch) -> dict[str, Any]:
    return {
        "matchId": match.id,
        "listing": {
            "listingId": match.listing_id,
            "address": str(match.listing_address),
            "rent": match.monthly_rent,
            "url": match.listing_url,
        },
        "severity": match.severity.value,
        "detectedAtUtc": match.detected_at_utc.isoformat(),
        "tenantIds": list(match.matched_tenant_ids),
        "institutionIds": list(match.matched_institution_ids),
        "matchedAddressIds": list(match.matched_address_ids),
    }


class MessageBus(Protocol):
    async def send(self, *, queue: str, subject: str, message_id: str, body: dict[str, Any]) -> None: ...


class CeleryMessageBus:
    def __init__(self, celery_app) -> None:
        self.celery_app = celery_app

    async def send(self, *, queue: str, subject: str, message_id: str, body: dict[str, Any]) -> None:
        # send_task talks to the broker synchronously
        await asyncio.to_thread(
            self.celery_app.send_task,
            ALERT_TASK_NAME,
            args=[body],
            kwargs={"subject": subject},
            queue=queue,
            task_id=message_id,
        )


class AlertPublisher(Protocol):
    async def publish(self, matches: Sequence[ListingMatch]) -> Result[None]: ...


class FanOutAlertPublisher:
    """
    Sends one message per match to the bus and one webhook POST per match.

    Every match is attempted on every enabled channel; failures are collected
    and reported together.
    """

    def __init__(
        self,
        *,
        bus: Optional[MessageBus] = None,
        webhook: Optional[WebhookClient] = None,
        queue_name: Optional[str] = None,
        enable_message_bus: Optional[bool] = None,
        enable_webhook: Optional[bool] = None,
    ) -> None:
        self.bus = bus
        self.webhook = webhook
        self.queue_name = queue_name or settings.alert_queue_name
        self.enable_message_bus = settings.enable_message_bus if enable_message_bus is None else enable_message_bus
        self.enable_webhook = settings.enable_webhook if enable_webhook is None else enable_webhook

    async def publish(self, matches: Sequence[ListingMatch]) -> Result[None]:
        if not matches:
            return Result.success()

        errors: list[str] = []
        use_bus = self.enable_message_bus and self.bus is not None
        use_webhook = self.enable_webhook and self.webhook is not None and self.webhook.enabled()
        if not (use_bus or use_webhook):
            log.warning("no alert channel enabled", extra={"event": "alerts_dropped", "count": len(matches)})
            return Result.success()

        for m in matches:
            payload = alert_payload(m)
            if use_bus:
                try:
                    await self.bus.send(queue=self.queue_name, subject=ALERT_SUBJECT, message_id=m.id, body=payload)
                except Exception as e:
                    errors.append(f"bus:{m.id}: {e}")
            if use_webhook:
                res = await self.webhook.post_json(payload)
                if not res.ok:
                    errors.append(f"webhook:{m.id}: {res.error}")

        if errors:
            log.warning("alert publish failures", extra={"event": "alerts_failed", "count": len(errors)})
            return Result.failure(
                "One or more alerts failed to publish: " + "; ".join(errors),
                ErrorKind.upstream,
            )

        log.info("alerts published", extra={"event": "alerts_published", "count": len(matches)})
        return Result.success()
