"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "Ashram Appointment & Queue Platform"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4
    INSTANCE_NAME: str = "api-1"

    # ── Database ─────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30

    # ── Redis ────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_QUEUE_LOCK_TTL: int = 10      # seconds a queue mutation may hold the lock
    REALTIME_CHANNEL: str = "ashram:realtime"

    # ── OAuth2 - Google ──────────────────────────────────────
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_REDIRECT_URI: str = "http://localhost:8000/auth/google/callback"

    # ── JWT ──────────────────────────────────────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    JWT_REFRESH_TOKEN_EXPIRE_DAYS: int = 30

    # ── Firebase ─────────────────────────────────────────────
    FIREBASE_CREDENTIALS_PATH: str = "./config/firebase-credentials.json"
    FIREBASE_PROJECT_ID: str = ""

    # ── Twilio ───────────────────────────────────────────────
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_FROM_NUMBER: str = ""
    DEFAULT_COUNTRY_CODE: str = "+91"

    # ── Phone OTP login ──────────────────────────────────────
    OTP_LENGTH: int = 6
    OTP_TTL_SECONDS: int = 300
    OTP_MAX_ATTEMPTS: int = 5
    OTP_RESEND_SECONDS: int = 60

    # ── Email ────────────────────────────────────────────────
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = "seva@shivgorakshaashram.org"
    EMAIL_FROM_NAME: str = "Shiv Goraksha Ashram"

    # ── Frontend ─────────────────────────────────────────────
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    # ── Celery ───────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # ── Rate Limiting ────────────────────────────────────────
    RATE_LIMIT_PER_MINUTE: int = 100
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 20

    # ── Ashram Business Config ───────────────────────────────
    ASHRAM_NAME: str = "Shiv Goraksha Ashram"
    ASHRAM_TIMEZONE: str = "Asia/Kolkata"
    ASHRAM_LOCATION_ID: str = "ASHRAM_MAIN"
    ASHRAM_LATITUDE: Optional[float] = 19.0760
    ASHRAM_LONGITUDE: Optional[float] = 72.8777
    CHECKIN_RADIUS_METERS: float = 100.0
    CHECKIN_WINDOW_BEFORE_MINUTES: int = 20
    CHECKIN_WINDOW_AFTER_MINUTES: int = 15
    MANUAL_CHECKIN_DEFAULT_LOCATION: str = "RECEPTION_001"

    BUSINESS_HOURS_START: int = 9       # 09:00 local
    BUSINESS_HOURS_END: int = 18        # 18:00 local
    SLOT_INTERVAL_MINUTES: int = 30
    APPOINTMENT_DURATION_MINUTES: int = 5
    BOOKING_CONFLICT_WINDOW_MINUTES: int = 2
    QUEUE_MINUTES_PER_DEVOTEE: int = 15
    CONSULTATION_REQUIRES_REMEDY: bool = True
    NO_SHOW_GRACE_MINUTES: int = 60
    NOTIFICATION_RETENTION_DAYS: int = 90

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance, shared by the API and the Celery workers."""
    return Settings()


settings = get_settings()
