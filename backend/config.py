"""Dispatch pipeline configuration - read once at startup and passed to every component."""
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Fixed pipeline constants
MAX_MESSAGE_LENGTH = 1600
QUEUE_TTL_SECONDS = 24 * 60 * 60
STATS_RETENTION_SECONDS = 30 * 24 * 60 * 60

SEND_TIMEOUT_SECONDS = 10.0
BULK_SEND_TIMEOUT_SECONDS = 30.0
STATUS_TIMEOUT_SECONDS = 15.0

IMMEDIATE_BATCH_SIZE = 50
STANDARD_BATCH_SIZE = 50
SCHEDULED_BATCH_SIZE = 100
BULK_ENTRIES_PER_RUN = 5
TRACKING_BATCH_SIZE = 200
CAMPAIGN_BATCH_SIZE = 10
CAMPAIGN_BATCH_PAUSE_SECONDS = 2.0

TRACKING_MIN_AGE_SECONDS = 5 * 60
TRACKING_MAX_AGE_SECONDS = 24 * 60 * 60
DUPLICATE_WINDOW_SECONDS = 24 * 60 * 60

# Worker run intervals in minutes
WORKER_INTERVAL_MINUTES = {
    "immediate": 1,
    "standard": 2,
    "scheduled": 5,
    "bulk": 10,
    "delivery": 15,
    "cleanup": 60,
}

# Worker that reclaims each priority's retry queue
RETRY_RECLAIM_WORKER = {
    "immediate": "immediate",
    "high": "standard",
    "normal": "standard",
    "low": "standard",
    "bulk": "bulk",
}


def retry_reclaim_interval_seconds(priority: str) -> int:
    return WORKER_INTERVAL_MINUTES[RETRY_RECLAIM_WORKER[priority]] * 60



def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    mongo_url: str
    db_name: str
    redis_url: str
    environment: str
    sms_base_url: str
    sms_api_key: str
    sms_sender_id: str
    sms_provider_name: str
    immediate_per_minute: int
    bulk_per_hour: int
    daily_limit: int
    unit_cost: float
    currency: str
    default_country_code: str
    max_retries: int
    max_bulk_recipients: int
    retry_reclaim_grace_seconds: int
    log_level: str

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            mongo_url=os.getenv("MONGO_URL", "mongodb://localhost:27017"),
            db_name=os.getenv("DB_NAME", "cams"),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            environment=os.getenv("ENVIRONMENT", "development").strip().lower(),
            sms_base_url=os.getenv("SMS_BASE_URL", "https://smsnotifygh.com/api/v1").rstrip("/"),
            sms_api_key=(os.getenv("SMS_API_KEY") or "").strip(),
            sms_sender_id=os.getenv("SMS_SENDER_ID", "CAMS"),
            sms_provider_name=os.getenv("SMS_PROVIDER_NAME", "SMSnotifyGh"),
            immediate_per_minute=_int_env("SMS_RATE_LIMIT_IMMEDIATE_PER_MINUTE", 100),
            bulk_per_hour=_int_env("SMS_RATE_LIMIT_BULK_PER_HOUR", 500),
            daily_limit=_int_env("SMS_RATE_LIMIT_DAILY", 10000),
            unit_cost=_float_env("SMS_UNIT_COST", 0.05),
            currency=os.getenv("SMS_CURRENCY", "GHS"),
            default_country_code=os.getenv("SMS_DEFAULT_COUNTRY_CODE", "233").lstrip("+"),
            max_retries=_int_env("SMS_MAX_RETRIES", 3),
            max_bulk_recipients=_int_env("SMS_MAX_BULK_RECIPIENTS", 500),
            retry_reclaim_grace_seconds=_int_env("SMS_RETRY_RECLAIM_GRACE_SECONDS", 300),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def provider_mode(self) -> str:
        """'live' only in production with a credential; everything else uses the mock stand-in."""
        if self.is_production and self.sms_api_key:
            return "live"
        return "mock"

    def validate(self) -> None:
        """Validate rate caps and cost settings."""
        for name in ("immediate_per_minute", "bulk_per_hour", "daily_limit", "max_bulk_recipients"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.unit_cost <= 0:
            raise ValueError("SMS_UNIT_COST must be positive")
        if self.max_retries < 0:
            raise ValueError("SMS_MAX_RETRIES cannot be negative")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings.from_env()
    settings.validate()
    return settings
