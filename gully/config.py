from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # Database - PostgreSQL for production, SQLite for development
    database_url: str = Field(
        default="sqlite:///./gully.db",
        alias="DATABASE_URL"
    )

    # Security - tokens are minted by the auth service, we only verify them
    secret_key: str = Field(default="dev-secret-key-at-least-32-characters-long-for-development", alias="SECRET_KEY")
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    # CORS - Frontend URLs from environment (comma-separated)
    allowed_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173",
        alias="ALLOWED_ORIGINS"
    )

    # Rate limiting storage (in-memory when empty)
    redis_url: str = Field(default="", alias="REDIS_URL")

    # ==============================================
    # Razorpay (Server-Side Only!)
    # ==============================================
    razorpay_base_url: str = Field(
        default="https://api.razorpay.com/v1",
        alias="RAZORPAY_BASE_URL"
    )
    razorpay_key_id: str = Field(default="", alias="RAZORPAY_KEY_ID")
    razorpay_key_secret: str = Field(default="", alias="RAZORPAY_KEY_SECRET")

    # Webhook secret for validating X-Razorpay-Signature (empty disables the check)
    razorpay_webhook_secret: str = Field(default="", alias="RAZORPAY_WEBHOOK_SECRET")

    # RazorpayX account number that payouts are debited from
    razorpay_account_number: str = Field(default="", alias="RAZORPAY_ACCOUNT_NUMBER")

    # HTTP timeout for gateway requests
    razorpay_timeout_seconds: int = Field(default=15, alias="RAZORPAY_TIMEOUT_SECONDS")

    currency: str = Field(default="INR", alias="CURRENCY")
    gst_rate_percent: float = Field(default=18.0, alias="GST_RATE_PERCENT")

    # ==============================================
    # Booking / payment workflow
    # ==============================================
    slot_lock_minutes: int = Field(default=10, alias="SLOT_LOCK_MINUTES")
    # Expired locks are invisible immediately; the sweep deletes them after this grace
    slot_lock_reap_grace_minutes: int = Field(default=30, alias="SLOT_LOCK_REAP_GRACE_MINUTES")

    webhook_max_attempts: int = Field(default=5, alias="WEBHOOK_MAX_ATTEMPTS")
    webhook_retry_base_seconds: int = Field(default=5, alias="WEBHOOK_RETRY_BASE_SECONDS")

    payout_max_retries: int = Field(default=3, alias="PAYOUT_MAX_RETRIES")
    payout_retry_base_minutes: int = Field(default=5, alias="PAYOUT_RETRY_BASE_MINUTES")

    # ==============================================
    # Notifications
    # ==============================================
    notification_delay_seconds: int = Field(default=10, alias="NOTIFICATION_DELAY_SECONDS")
    notification_max_attempts: int = Field(default=5, alias="NOTIFICATION_MAX_ATTEMPTS")

    # Firebase service account JSON (push disabled when empty)
    firebase_credentials_path: str = Field(default="", alias="FIREBASE_CREDENTIALS_PATH")

    # SMTP (email disabled when host is empty)
    smtp_host: str = Field(default="", alias="SMTP_HOST")
    smtp_port: int = Field(default=587, alias="SMTP_PORT")
    smtp_user: str = Field(default="", alias="SMTP_USER")
    smtp_password: str = Field(default="", alias="SMTP_PASSWORD")
    smtp_from: str = Field(default="no-reply@gully.app", alias="SMTP_FROM")

    # Worker settings (runs inside FastAPI process)
    worker_enabled: bool = Field(default=True, alias="WORKER_ENABLED")
    worker_poll_interval: int = Field(default=10, alias="WORKER_POLL_INTERVAL")  # seconds
    worker_batch_size: int = Field(default=50, alias="WORKER_BATCH_SIZE")

    @property
    def has_razorpay_credentials(self) -> bool:
        return bool(self.razorpay_key_id and self.razorpay_key_secret)

    @field_validator('secret_key')
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        """Validate SECRET_KEY is strong enough to verify tokens"""
        if not v:
            raise ValueError("SECRET_KEY is required and cannot be empty")
        if len(v) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origins(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        origins = []
        for origin in self.allowed_origins.split(","):
            origin = origin.strip().rstrip("/")
            if origin and origin not in origins:
                origins.append(origin)
        return origins or ["http://localhost:5173"]

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Initialize settings on module load
settings = get_settings()
