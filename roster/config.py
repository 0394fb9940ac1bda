# roster/config.py
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
    public_site_url: str = "http://localhost:3000"  # Base for confirmation links, status callbacks, vCard

    # Database
    expected_schema_version: str = "003_jobs.sql"  # Update on deploy when new migrations are added
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
    admin_token: str | None = None
    rate_limit_per_minute: int = 60
    require_webhook_validation: bool = True

    # Twilio (SMS)
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_phone_number: str | None = None
    twilio_webhook_url: str | None = None  # Public URL for signature validation (e.g., https://crew.example.com/webhooks/twilio/sms)
    twilio_status_url: str | None = None   # Delivery-status callback (e.g., https://crew.example.com/webhooks/twilio/delivery-status)

    # Email (SMTP)
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    email_from: str = "Roster <noreply@onroster.app>"

    # Batched delivery (provider throughput)
    sms_batch_size: int = 50
    email_batch_size: int = 100
    inter_batch_delay_seconds: float = 1.0

    # Crewing workflow
    crewing_response_window_hours: int = 4
    crewing_throttle_seconds: int = 5  # At most one new contact-attempt workflow per window
    vcard_path: str = "/api/vcard"

    # Monitoring & alerts
    sentry_dsn: str | None = None
    slack_webhook_url: str | None = None
    enable_metrics: bool = True
    enable_request_logging: bool = True

    # Job Worker (DB-backed queue, durable timers)
    job_worker_enabled: bool = False          # Master switch, enable explicitly in worker service
    job_worker_poll_interval: float = 1.0     # Seconds between polls when idle
    job_worker_batch_size: int = 5            # Jobs claimed per poll cycle
    job_worker_base_retry_delay: float = 5.0  # Base delay for exponential backoff (seconds)
    job_worker_stale_timeout: int = 300       # Reset jobs stuck 'running' for this long (seconds)
    job_cleanup_completed_ttl_days: int = 7   # Delete completed jobs older than N days
    job_cleanup_failed_ttl_days: int = 30     # Delete failed jobs older than N days

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def twilio_enabled(self) -> bool:
        return bool(
            self.twilio_account_sid
            and self.twilio_auth_token
            and self.twilio_phone_number
        )

    @property
    def smtp_enabled(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password)

    @property
    def vcard_url(self) -> str:
        return f"{self.public_site_url.rstrip('/')}{self.vcard_path}"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        required_fields = [
            ("admin_token", self.admin_token),
            ("twilio_account_sid", self.twilio_account_sid),
            ("twilio_auth_token", self.twilio_auth_token),
            ("twilio_phone_number", self.twilio_phone_number),
        ]

        return [name for name, value in required_fields if not value]


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if not s.twilio_enabled:
        warnings.append("Twilio is not fully configured (outreach and call-card SMS will fail).")
    if not s.twilio_webhook_url and s.require_webhook_validation:
        warnings.append("twilio: require_webhook_validation=True but twilio_webhook_url is not set.")
    if not s.smtp_enabled:
        warnings.append("SMTP is not configured (call-card emails will fail).")
    if not s.sentry_dsn:
        warnings.append("sentry_dsn is not set (delivery failures are only logged).")
    if s.public_site_url.startswith("http://localhost") and s.is_production:
        warnings.append("prod: public_site_url points at localhost (links in messages will be broken).")
    if s.sms_batch_size < 1 or s.email_batch_size < 1:
        warnings.append("Batch sizes below 1 are clamped to 1.")

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
