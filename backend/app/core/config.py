from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    ENV: str = "prod"

    DATABASE_URL: str

    JWT_SECRET: str
    JWT_ACCESS_MINUTES: int = 60

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_TIMEOUT_SECONDS: int = 30
    DB_POOL_RECYCLE_SECONDS: int = 1800

    ALLOWED_HOSTS: str = "localhost,127.0.0.1"
    SECURITY_HEADERS_ENABLED: bool = True

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Billing
    BILLING_CURRENCY: str = "GHS"
    PAYSTACK_SECRET_KEY: str | None = None
    # Per-gateway overrides, "gateway:secret,gateway:secret"
    BILLING_WEBHOOK_SECRETS: str = ""

    SUBSCRIPTION_TRIAL_DAYS: int = 14
    SUBSCRIPTION_GRACE_PERIOD_DAYS: int = 7
    SUBSCRIPTION_MAX_GRACE_PERIOD_DAYS: int = 30
    FREE_TIER_CODE: str = "FREE"

    ADDON_MIN_PRORATION_DAYS: int = 3

    # Data retention after suspension
    DATA_RETENTION_DAYS: int = 30
    DELETION_WARNING_DAYS: int = 7

    # Scheduled jobs
    JOB_DISPATCH_MODE: str = "celery"  # celery|inline
    JOB_BATCH_SIZE: int = 200
    JOB_SOFT_TIME_LIMIT_SECONDS: int = 900
    # RUNNING rows older than this have lost their worker and are closed FAILED
    JOB_STALE_AFTER_SECONDS: int = 21600
    JOB_EXECUTION_RETENTION_DAYS: int = 90

    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/1"

settings = Settings()
