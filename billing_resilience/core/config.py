from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "Billing Resilience"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"  # "development", "staging", "production"

    DATABASE_URL: str = "sqlite:///./billing_resilience.db"

    # Logging / error tracking
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False
    SENTRY_DSN: str = ""

    # Admin endpoints require X-Admin-Token when set; production refuses to run them without one
    ADMIN_API_TOKEN: str = ""

    # Start background jobs inside the API process
    RUN_SCHEDULER: bool = False

    # Circuit breaker
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_SUCCESS_THRESHOLD: int = 2
    CIRCUIT_OPEN_RETRY_DELAY_SECONDS: float = 60.0
    CIRCUIT_PERSIST_STATE: bool = False  # Share breaker state through the database

    # Retry / timeout
    RETRY_MAX_RETRIES: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 1.0
    RETRY_MAX_DELAY_SECONDS: float = 10.0
    RETRY_JITTER_RATIO: float = 0.3
    OPERATION_TIMEOUT_SECONDS: float = 30.0

    # Result cache
    CACHE_TTL_SECONDS: float = 300.0
    CACHE_MAX_ENTRIES: int = 1000

    # Health monitor
    HEALTH_CHECK_INTERVAL_SECONDS: int = 60
    HEALTH_MIN_REQUESTS: int = 10

    # Webhook dead-letter queue
    DLQ_MAX_RETRIES: int = 5
    DLQ_BATCH_SIZE: int = 50
    DLQ_RETRY_INTERVAL_SECONDS: int = 60
    DLQ_STALE_AFTER_DAYS: int = 7
    DLQ_PROCESSING_TIMEOUT_MINUTES: int = 30
    DLQ_COMPLETED_RETENTION_DAYS: int = 30
    DLQ_REDELIVERY_SPACING_SECONDS: float = 0.5

    # Subscription updates
    SUBSCRIPTION_LOCK_TIMEOUT_SECONDS: float = 10.0
    SUBSCRIPTION_OPERATION_MAX_RETRIES: int = 3
    SUBSCRIPTION_EVENT_RETENTION_DAYS: int = 90

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")


settings = Settings()
