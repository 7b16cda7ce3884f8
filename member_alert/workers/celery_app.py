# member_alert/workers/celery_app.py
from __future__ import annotations

from celery import Celery
from celery.schedules import crontab

from ..config import settings

celery_app = Celery(
    "member_alert",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["member_alert.workers.scan_tasks"],
)

celery_app.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    timezone="UTC",
)

celery_app.conf.task_routes = {
    "member_alert.workers.scan_tasks.*": {"queue": "scans"},
    "member_alert.alerts.*": {"queue": settings.alert_queue_name},
}

# The tick is cheap when the stored cron schedule is not due.
celery_app.conf.beat_schedule = {
    "scan-tick": {
        "task": "member_alert.workers.scan_tasks.run_scan_tick",
        "schedule": 300.0,
    },
    "purge-stale-matches": {
        "task": "member_alert.workers.scan_tasks.purge_stale_matches_task",
        "schedule": crontab(hour=3, minute=15),
    },
}
