from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ---- App ----
    app_env: str = "local"  # local|dev|prod
    database_url: str = "sqlite:///./member_alert.db"
    log_level: str = "INFO"

    # ---- Schedule ----
    # Used only when no schedule has been stored yet.
    default_cron_expression: str = "0 */30 * * * *"
    default_time_zone: str = "UTC"

    # ---- Scheduler ----
    scheduler_institution_page_size: int = 100
    scheduler_max_parallel_cohorts: int = 1

    # ---- Matching ----
    match_radius_km: float = 2.0
    severity_warning_rent: float = 2500.0
    severity_critical_rent: float = 5000.0
    match_retention_days: int = 30

    # ---- RentCast ----
    rentcast_api_key: str | None = None
    rentcast_base_url: str = "https://api.rentcast.io"
    rentcast_timeout_seconds: float = 30.0
    rentcast_max_retries: int = 2
    rentcast_retry_delay_seconds: float = 1.0

    # ---- Notifications ----
    enable_webhook: bool = True
    default_webhook_url: str | None = None
    webhook_timeout_seconds: float = 10.0
    enable_message_bus: bool = False
    alert_queue_name: str = "member-alerts"

    # ---- Celery ----
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/1"

    def model_post_init(self, __context) -> None:
        env = (self.app_env or "local").strip().lower()
        is_prod = env in ("prod", "production")

        if self.scheduler_max_parallel_cohorts < 1:
            object.__setattr__(self, "scheduler_max_parallel_cohorts", 1)

        # Hard fail: alerts would silently go nowhere
        if is_prod:
            if self.enable_webhook and not (self.default_webhook_url or "").strip():
                raise ValueError("CONFIG: enable_webhook=True requires default_webhook_url in prod")
            if not (self.rentcast_api_key or "").strip():
                raise ValueError("CONFIG: rentcast_api_key is required in prod")


settings = Settings()
