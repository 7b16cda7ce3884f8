# member_alert/bootstrap.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import sessionmaker

from .clients.rentcast import ListingsSource, RentCastListingsClient
from .clients.webhook import WebhookClient
from .config import Settings, settings as default_settings
from .services.alert_publisher import AlertPublisher, CeleryMessageBus, FanOutAlertPublisher
from .services.audit import AuditLogger, InMemoryAuditLogger, LogStreamPublisher, SqlAuditLogger
from .services.institution_service import InstitutionService
from .services.listing_match_service import ListingMatchService
from .services.scan_orchestrator import ScanOrchestrator
from .services.scan_scheduler import ScanScheduler
from .services.schedule_service import ScheduleService
from .stores.memory import build_memory_stores
from .stores.sql import build_sql_stores


@dataclass
class Container:
    stores: Any
    listings: ListingsSource
    publisher: AlertPublisher
    audit: AuditLogger
    matcher: ListingMatchService
    schedules: ScheduleService
    orchestrator: ScanOrchestrator
    scheduler: ScanScheduler
    institution_service: InstitutionService


def build_container(
    cfg: Optional[Settings] = None,
    *,
    session_factory: Optional[sessionmaker] = None,
    in_memory: bool = False,
    listings: Optional[ListingsSource] = None,
    publisher: Optional[AlertPublisher] = None,
    audit: Optional[AuditLogger] = None,
) -> Container:
    cfg = cfg or default_settings

    if in_memory:
        stores = build_memory_stores()
        audit = audit or InMemoryAuditLogger()
    else:
        if session_factory is None:
            from .db import SessionLocal

            session_factory = SessionLocal
        stores = build_sql_stores(session_factory)
        audit = audit or SqlAuditLogger(session_factory)

    listings = listings or RentCastListingsClient(
        base_url=cfg.rentcast_base_url,
        api_key=cfg.rentcast_api_key,
        timeout_seconds=cfg.rentcast_timeout_seconds,
        max_retries=cfg.rentcast_max_retries,
        retry_delay_seconds=cfg.rentcast_retry_delay_seconds,
    )

    if publisher is None:
        bus = None
        if cfg.enable_message_bus:
            from .workers.celery_app import celery_app

            bus = CeleryMessageBus(celery_app)
        publisher = FanOutAlertPublisher(
            bus=bus,
            webhook=WebhookClient(cfg.default_webhook_url, timeout_seconds=cfg.webhook_timeout_seconds),
            queue_name=cfg.alert_queue_name,
            enable_message_bus=cfg.enable_message_bus,
            enable_webhook=cfg.enable_webhook,
        )

    matcher = ListingMatchService(
        addresses=stores.addresses,
        matches=stores.matches,
        listings=listings,
        publisher=publisher,
        radius_km=cfg.match_radius_km,
        warning_rent=cfg.severity_warning_rent,
        critical_rent=cfg.severity_critical_rent,
    )
    schedules = ScheduleService(stores.schedule)
    orchestrator = ScanOrchestrator(
        jobs=stores.scan_jobs,
        institutions=stores.institutions,
        matcher=matcher,
        schedules=schedules,
    )
    scheduler = ScanScheduler(
        schedules=stores.schedule,
        institutions=stores.institutions,
        orchestrator=orchestrator,
        audit=audit,
        log_stream=LogStreamPublisher(),
        page_size=cfg.scheduler_institution_page_size,
        max_parallel_cohorts=cfg.scheduler_max_parallel_cohorts,
    )
    return Container(
        stores=stores,
        listings=listings,
        publisher=publisher,
        audit=audit,
        matcher=matcher,
        schedules=schedules,
        orchestrator=orchestrator,
        scheduler=scheduler,
        institution_service=InstitutionService(institutions=stores.institutions, addresses=stores.addresses),
    )
