# member_alert/workers/scan_tasks.py
from __future__ import annotations

import asyncio
import logging

from ..bootstrap import build_container
from ..logging_config import configure_logging
from ..services.retention import purge_stale_matches
from ..tenancy import platform_admin_context, tenant_scope
from .celery_app import celery_app

log = logging.getLogger("member_alert.workers")

configure_logging()


@celery_app.task(name="member_alert.workers.scan_tasks.run_scan_tick")
def run_scan_tick() -> dict:
    """
    One scheduler tick. Ticks are not mutually excluded: if two ever
    overlap, both can see the schedule as due.
    """
    container = build_container()
    summary = asyncio.run(container.scheduler.run())
    return {"ok": summary.error is None, **summary.as_dict()}


@celery_app.task(name="member_alert.workers.scan_tasks.purge_stale_matches_task")
def purge_stale_matches_task(retention_days: int | None = None) -> dict:
    container = build_container()

    async def _purge():
        with tenant_scope(platform_admin_context()):
            return await purge_stale_matches(container.stores.matches, retention_days)

    res = asyncio.run(_purge())
    if not res.ok:
        log.error("purge failed", extra={"event": "purge_failed", "error": res.error})
        return {"ok": False, "error": res.error}
    return {"ok": True, "purged": res.value}
