# fieldops/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal

from fieldops.infra.logging_config import get_logger

logger = get_logger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    run_mode: Literal["all", "web", "worker", "poller"] = "all"
    log_level: str = "INFO"

    # Storage
    # "memory"   - single-process in-memory stores (default, nothing survives restart)
    # "postgres" - asyncpg repositories, schema from fieldops/infra/sql
    store_backend: Literal["memory", "postgres"] = "memory"
    # Conversation sessions are transient; postgres is an opt-in drop-in
    session_backend: Literal["memory", "postgres"] = "memory"
    database_url: str | None = None
    pg_pool_min: int = 2
    pg_pool_max: int = 20

    # Security
    admin_token: str | None = None
    allowed_origins: list[str] = ["*"]
    rate_limit_per_minute: int = 60
    chat_rate_limit_per_minute: int = 20  # Max chat events per chat per minute (anti-spam)

    # Telegram
    telegram_bot_token: str | None = None  # Bot token from @BotFather
    telegram_mode: Literal["polling", "webhook"] = "polling"
    telegram_webhook_secret: str | None = None  # X-Telegram-Bot-Api-Secret-Token
    telegram_webhook_url: str | None = None  # Public HTTPS URL of /webhooks/telegram; registered on startup
    telegram_poll_timeout: int = 30
    telegram_conflict_backoff_max: int = 300  # Cap for 409 duplicate-consumer backoff (seconds)

    # Dispatch
    # False: jobs are approved on creation and dispatched immediately.
    # True:  jobs start PENDING and are dispatched when an admin approves them.
    job_approval_required: bool = False
    settings_issue_category: str = "settings issue"  # Repair sub-category routed to admins only
    dispatch_fanout_limit: int = 10  # Concurrent sends per dispatch
    job_lock_timeout_seconds: float = 5.0

    # Scheduler
    scheduler_enabled: bool = True
    reminder_interval_seconds: int = 1800
    reminder_threshold_hours: float = 2.0
    daily_summary_hour: int = 18  # Local hour (see timezone), -1 disables
    timezone: str = "Asia/Jakarta"
    session_ttl_seconds: int = 21600  # Stale conversation sessions are purged after this, 0 disables

    # Feature Flags
    enable_metrics: bool = True
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token)

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("admin_token", self.admin_token),
            ("telegram_bot_token", self.telegram_bot_token),
        ]
        if self.store_backend == "postgres" or self.session_backend == "postgres":
            required_fields.append(("database_url", self.database_url))
        if self.telegram_mode == "webhook":
            required_fields.append(("telegram_webhook_secret", self.telegram_webhook_secret))

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if not s.admin_token:
        warnings.append("admin_token is not set (admin endpoints will answer 503).")

    if not s.telegram_enabled:
        warnings.append("telegram_bot_token is not set: chat messages are only logged, never delivered.")

    if s.store_backend == "memory":
        warnings.append("store_backend=memory: jobs, technicians and registrations are lost on restart.")

    if s.telegram_mode == "webhook" and not s.telegram_webhook_secret:
        warnings.append("telegram_mode=webhook without telegram_webhook_secret: webhook requests are not authenticated.")

    if s.dispatch_fanout_limit < 1:
        warnings.append("dispatch_fanout_limit < 1 is treated as 1.")

    if not -1 <= s.daily_summary_hour <= 23:
        warnings.append(f"daily_summary_hour={s.daily_summary_hour} is outside 0..23, daily summary disabled.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        logger.warning(f"[config] {msg}")


settings = Settings()
