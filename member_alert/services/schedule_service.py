from __future__ import annotations

import logging

from ..domain import CronScheduleDefinition
from ..results import Result
from ..stores.protocols import ScheduleStore

log = logging.getLogger("member_alert.schedule")


class ScheduleService:
    def __init__(self, store: ScheduleStore) -> None:
        self.store = store

    async def get_schedule(self) -> Result[CronScheduleDefinition]:
        return await self.store.get()

    async def update_schedule(self, expression: str, time_zone_id: str) -> Result[CronScheduleDefinition]:
        # a new definition starts with no last run, so the next tick fires
        created = CronScheduleDefinition.create(expression, time_zone_id)
        if not created.ok:
            return created
        saved = await self.store.upsert(created.value)
        if saved.ok:
            log.info(
                "schedule updated to %r (%s)",
                created.value.expression,
                created.value.time_zone_id,
                extra={"event": "schedule_updated"},
            )
        return saved
