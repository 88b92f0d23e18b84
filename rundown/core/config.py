"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the API and the worker.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from dotenv import load_dotenv

from rundown.core.exceptions import ConfigurationError

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    # DATABASE_URL wins when set (tests and local runs use sqlite).
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="rundown")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=10)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration (empty string disables Redis)
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # Shared secret for job triggers and service-to-service calls
    CRON_SECRET: Optional[str] = Field(default=None)

    # Email Configuration
    EMAIL_ENABLED: bool = Field(default=False)
    SMTP_SERVER: str = Field(default="localhost")
    SMTP_PORT: int = Field(default=587)
    SMTP_USERNAME: Optional[str] = Field(default=None)
    SMTP_PASSWORD: Optional[str] = Field(default=None)
    FROM_EMAIL: str = Field(default="notifications@rundownapp.com")
    FROM_NAME: str = Field(default="Rundown")
    SUPPORT_EMAIL: str = Field(default="support@rundownapp.com")

    # SMS (Twilio)
    SMS_ENABLED: bool = Field(default=False)
    TWILIO_ACCOUNT_SID: Optional[str] = Field(default=None)
    TWILIO_AUTH_TOKEN: Optional[str] = Field(default=None)
    TWILIO_FROM_NUMBER: Optional[str] = Field(default=None)
    TWILIO_API_BASE: str = Field(default="https://api.twilio.com/2010-04-01")

    # Push (Expo)
    PUSH_ENABLED: bool = Field(default=False)
    EXPO_PUSH_URL: str = Field(default="https://exp.host/--/api/v2/push/send")

    # Strava API Configuration
    STRAVA_API_BASE: str = Field(default="https://www.strava.com/api/v3")

    # External API Configuration
    EXTERNAL_API_TIMEOUT: int = Field(default=30)
    EXTERNAL_API_RETRY_ATTEMPTS: int = Field(default=3)

    # Public URLs
    PUBLIC_API_BASE_URL: str = Field(default="http://localhost:8000")
    WEB_APP_BASE_URL: str = Field(default="http://localhost:3000")

    # Delivery pass tunables
    DELIVERY_BATCH_SIZE: int = Field(default=50, ge=1)
    DELIVERY_MAX_SENDS_PER_RUN: int = Field(default=100, ge=1)
    DELIVERY_SUB_BATCH_SIZE: int = Field(default=10, ge=1)
    DELIVERY_SUB_BATCH_PAUSE_S: float = Field(default=0.5, ge=0)
    DELIVERY_TIME_BUDGET_S: int = Field(default=240, ge=1)
    # App-wide sends per minute across all workers (Redis window).
    SEND_BUDGET_PER_MINUTE: int = Field(default=120, ge=1)

    # Queue lifecycle
    QUEUE_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    QUEUE_STALE_AFTER_MINUTES: int = Field(default=30, ge=1)

    # Message deduplication
    DEDUP_WINDOW_DAYS: int = Field(default=14, ge=1)
    DEDUP_MAX_ATTEMPTS: int = Field(default=10, ge=1)

    # Contacts
    MAX_ACTIVE_CONTACTS: int = Field(default=5, ge=1)


def validate_runtime_config(
    environment: str,
    debug: bool,
    cron_secret: Optional[str],
    email_enabled: bool = False,
    smtp_username: Optional[str] = None,
    smtp_password: Optional[str] = None,
    sms_enabled: bool = False,
    twilio_account_sid: Optional[str] = None,
    twilio_auth_token: Optional[str] = None,
    twilio_from_number: Optional[str] = None,
) -> None:
    """
    Hard-fail on configuration that would make the pipeline silently misbehave.

    Raises ConfigurationError naming the offending setting.
    """
    if sms_enabled and not (twilio_account_sid and twilio_auth_token and twilio_from_number):
        raise ConfigurationError(
            "SMS_ENABLED requires TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_FROM_NUMBER"
        )

    if environment != "production":
        return

    if debug:
        raise ConfigurationError("DEBUG must be False in production")
    if not (cron_secret or "").strip():
        raise ConfigurationError("CRON_SECRET must be set in production")
    if email_enabled and not (smtp_username and smtp_password):
        raise ConfigurationError("EMAIL_ENABLED requires SMTP_USERNAME and SMTP_PASSWORD in production")


def validate_settings(s: "Settings") -> None:
    """Validate a Settings instance (startup hook)."""
    validate_runtime_config(
        environment=s.ENVIRONMENT,
        debug=s.DEBUG,
        cron_secret=s.CRON_SECRET,
        email_enabled=s.EMAIL_ENABLED,
        smtp_username=s.SMTP_USERNAME,
        smtp_password=s.SMTP_PASSWORD,
        sms_enabled=s.SMS_ENABLED,
        twilio_account_sid=s.TWILIO_ACCOUNT_SID,
        twilio_auth_token=s.TWILIO_AUTH_TOKEN,
        twilio_from_number=s.TWILIO_FROM_NUMBER,
    )


# Global settings instance
settings = Settings()
