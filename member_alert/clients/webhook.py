from __future__ import annotations

from typing import Any, Optional

import httpx

from ..config import settings
from ..results import ErrorKind, Result


class WebhookClient:
    def __init__(
        self,
        url: Optional[str] = None,
        *,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url if url is not None else settings.default_webhook_url
        self.timeout = timeout_seconds if timeout_seconds is not None else settings.webhook_timeout_seconds
        self._transport = transport

    def enabled(self) -> bool:
        return bool((self.url or "").strip())

    async def post_json(self, payload: dict[str, Any]) -> Result[int]:
        if not self.enabled():
            return Result.failure("webhook url not configured", ErrorKind.upstream)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.post(self.url, json=payload)
                r.raise_for_status()
        except httpx.HTTPError as e:
            return Result.failure(f"Webhook delivery failed: {e}", ErrorKind.upstream)
        return Result.success(r.status_code)
