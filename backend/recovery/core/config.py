from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "Payment Recovery Engine"
    version: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    APP_DATABASE_DSN: str = "sqlite:////tmp/recovery.db"
    REDIS_URL: str = "redis://localhost:6379"

    # Webhook ingestion
    WEBHOOK_SECRET: str = "whsec_default_secret"
    WEBHOOK_TIMESTAMP_SKEW_SECONDS: int = 300
    WEBHOOK_REQUIRE_TIMESTAMP: bool = False
    RATE_LIMIT_WEBHOOKS_PER_MINUTE: int = 600

    # Recovery defaults (overridden per company by recovery_settings rows)
    DEFAULT_COMPANY_ID: str = "default"
    DEFAULT_REMINDER_OFFSETS_DAYS: list[int] = Field(default_factory=lambda: [0, 2, 4])
    DEFAULT_INCENTIVE_DAYS: int = Field(default=3, ge=0, le=365)
    DEFAULT_ENABLE_PUSH: bool = True
    DEFAULT_ENABLE_DM: bool = False
    ATTRIBUTION_WINDOW_DAYS: int = 14
    EXPIRY_GRACE_HOURS: int = 24
    CANCEL_MEMBERSHIP_ON_EXPIRY: bool = False
    EVENT_RETENTION_DAYS: int = 90

    # Job queue
    JOB_MAX_ATTEMPTS: int = 5
    JOB_BACKOFF_BASE_SECONDS: float = 30.0
    JOB_BACKOFF_MULTIPLIER: float = 2.0
    JOB_BACKOFF_MAX_SECONDS: float = 3600.0
    JOB_HANDLER_TIMEOUT_SECONDS: float = 60.0
    JOB_VISIBILITY_TIMEOUT_SECONDS: int = 900
    WORKER_CONCURRENCY: int = 10
    WORKER_BATCH_SIZE: int = 20
    SCHEDULER_PAGE_SIZE: int = 500

    # Downstream resilience
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_COOLDOWN_SECONDS: float = 60.0
    DOWNSTREAM_MAX_RETRIES: int = 3
    DOWNSTREAM_BASE_DELAY_SECONDS: float = 0.5
    DOWNSTREAM_TIMEOUT_SECONDS: float = 10.0

    # Collaborators
    BILLING_API_URL: str = "https://api.billing.example.com/v1"
    BILLING_API_KEY: str = ""
    NOTIFIER_URL: str = "https://notify.example.com/v1"
    NOTIFIER_API_KEY: str = ""


settings = Settings()
