# member_alert/logging_config.py
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from .config import settings
from .tenancy import current_tenant

_EXTRA_KEYS = ("event", "scan_job_id", "state", "match_id", "cohort_tenant_id", "count", "log_event", "error")


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line.
    Includes correlation id + tenant scope (if a tenant context is active),
    level, message, logger, timestamp, exception.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        ctx = current_tenant()
        if ctx is not None:
            payload["correlation_id"] = ctx.correlation_id
            payload["tenant_id"] = ctx.tenant_id
            if ctx.institution_id:
                payload["institution_id"] = ctx.institution_id
            if ctx.is_platform_admin:
                payload["platform_admin"] = True

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        for k in _EXTRA_KEYS:
            if hasattr(record, k):
                payload[k] = getattr(record, k)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str | None = None) -> None:
    level = (level or settings.log_level or "INFO").upper()

    root = logging.getLogger()
    root.setLevel(level)

    # Clear existing handlers (celery/worker reloads install their own)
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonFormatter())

    root.addHandler(handler)

    logging.getLogger("httpx").setLevel("WARNING")
    logging.getLogger("sqlalchemy.engine").setLevel("WARNING")
