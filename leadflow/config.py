# leadflow/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    run_mode: Literal["all", "web", "worker"] = "all"
    log_level: str = "INFO"
    log_json: bool = False

    # Database
    expected_schema_version: str = "001_init.sql"  # Update on deploy when new migrations are added
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_statement_timeout_ms: int = 30000
    pg_idle_in_tx_timeout_ms: int = 30000

    # Security
    # Bearer token the document store presents on /triggers/* webhooks
    trigger_token: str | None = None
    # Bearer token of the auth proxy that forwards caller identity headers (None = trust headers)
    auth_gateway_token: str | None = None
    metrics_token: str | None = None
    # CIDRs allowed to read /metrics when metrics_token is unset
    internal_networks: str = "10.0.0.0/8,172.16.0.0/12,192.168.0.0/16,127.0.0.0/8,::1/128"
    trust_proxy_headers: bool = False
    allowed_origins: list[str] = ["*"]

    # Push notifications
    # "log"     - write notifications to the application log (dev default)
    # "webhook" - POST to an external push gateway (token lookup + transport live there)
    push_channel: Literal["log", "webhook"] = "log"
    push_gateway_url: str | None = None
    push_gateway_token: str | None = None
    push_timeout_seconds: int = 10

    # Lineup rotation
    lineup_spacing: int = 1000             # Gap between adjacent orders, avoids renumbering
    lineup_default_order: int = 100000     # Order for the first closer of an empty team
    strict_round_robin: bool = False       # Only closers with zero active assignments are eligible
    assignment_max_attempts: int = 3       # Re-select on conditional-write conflicts

    # Appointment reminders
    reminder_lead_minutes: int = 30
    reminder_sweep_batch_size: int = 50
    reminder_sweep_interval_seconds: int = 300   # every 5 minutes
    reminder_supersede_stale: bool = True        # Retire reminders for rescheduled/reassigned/closed leads

    # Scheduled lead promotion (45 minute rule)
    promotion_window_minutes: int = 45
    promotion_batch_size: int = 100
    promotion_interval_seconds: int = 120        # every 2 minutes

    # Job Worker (trigger outbox)
    job_worker_enabled: bool = True
    job_worker_poll_interval: float = 1.0     # Seconds between polls when idle
    job_worker_batch_size: int = 10           # Jobs claimed per poll cycle
    job_worker_base_retry_delay: float = 5.0  # Base delay for exponential backoff (seconds)
    job_worker_stale_timeout: int = 300       # Reset jobs stuck 'running' for this long (seconds)
    job_cleanup_completed_ttl_days: int = 7   # Delete completed jobs older than N days
    job_cleanup_failed_ttl_days: int = 30     # Delete failed jobs older than N days

    # Tick scheduler
    tick_scheduler_enabled: bool = True

    # Feature Flags
    enable_request_logging: bool = True
    enable_metrics: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("database_url", self.database_url),
            ("trigger_token", self.trigger_token),
            ("auth_gateway_token", self.auth_gateway_token),
        ]

        if self.push_channel == "webhook":
            required_fields.append(("push_gateway_url", self.push_gateway_url))

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if not s.trigger_token:
        warnings.append("trigger_token is not set (trigger webhooks accept unauthenticated calls).")

    if not s.auth_gateway_token:
        warnings.append("auth_gateway_token is not set (caller identity headers are trusted as-is).")

    if s.enable_metrics and not s.metrics_token:
        warnings.append("enable_metrics=True but metrics_token is not set: /metrics falls back to the internal network check.")

    if s.push_channel == "log":
        warnings.append("push_channel=log: closers will not receive push notifications.")
    elif not s.push_gateway_url:
        warnings.append("push_channel=webhook but push_gateway_url is missing.")

    if s.lineup_spacing < 2:
        warnings.append("lineup_spacing < 2: front/back placement may collide with existing orders.")

    if not s.reminder_supersede_stale:
        warnings.append("reminder_supersede_stale=False: stale appointment reminders will still fire.")

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
        print(f"[WARN][config] {msg}")

settings = Settings()
validate_or_warn(settings)
