from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "chargeflow"
    version: str = "0.1.0"
    DEBUG: bool = False
    APP_DATABASE_DSN: str = "sqlite:////tmp/chargeflow.db"
    REDIS_URL: str = "redis://localhost:6379"
    LOW_PRIORITY_QUEUE_NAME: str = "arq:queue:low"

    # Charge processor
    CHARGE_PROCESSOR: str = "stripe"
    stripe_api_key: str = ""
    stripe_webhook_secret: str = ""

    # Card authentication (SCA) completion window
    SCA_COMPLETION_WINDOW_MINUTES: int = 15

    # Recurring charges and dunning
    DUNNING_THRESHOLD_DAYS: int = 5
    CHARGE_DECLINED_REMINDER_DAYS: int = 2
    NETWORK_ERROR_RETRY_MINUTES: int = 60
    RETRYABLE_DECLINE_RETRY_HOURS: int = 24
    RECURRING_CHARGE_BATCH_SIZE: int = 1000
    RECURRING_CHARGE_BATCH_INTERVAL_SECONDS: int = 600

    # Preorders
    PREORDER_MAX_CHARGE_ATTEMPTS: int = 4
    PREORDER_RETRY_DELAY_MINUTES: int = 120
    PREORDER_DECLINE_CANCEL_DAYS: int = 14

    # Stuck purchase sync window
    STUCK_PURCHASE_MIN_AGE_HOURS: int = 4
    STUCK_PURCHASE_MAX_AGE_HOURS: int = 72

    # Membership price changes
    PRICE_CHANGE_NOTICE_DAYS: int = 7


settings = Settings()
