from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..config import settings
from ..results import Result
from ..stores.protocols import MatchStore

log = logging.getLogger("member_alert.retention")


async def purge_stale_matches(
    matches: MatchStore,
    retention_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Result[int]:
    days = settings.match_retention_days if retention_days is None else int(retention_days)
    if days < 0:
        return Result.validation("Retention days cannot be negative.")
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
    res = await matches.purge_older_than(cutoff)
    if res.ok:
        log.info("purged stale matches", extra={"event": "matches_purged", "count": res.value})
    return res
