import os
from typing import Optional

from pydantic import BaseModel


def _flag(name: str, default: str = "1") -> bool:
    return os.getenv(name, default) not in ("0", "false", "False")


class Settings(BaseModel):
    # Core
    APP_NAME: str = os.getenv("APP_NAME", "alertwatch")
    APP_ENV: str = os.getenv("APP_ENV", "prod")  # prod|dev|test
    API_KEY: Optional[str] = os.getenv("API_KEY")

    # Storage
    DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL")
    # Shared cache; unset means a process-local cache (single instance only)
    REDIS_URL: Optional[str] = os.getenv("REDIS_URL")

    # Alert monitor job
    ALERT_MONITOR_ENABLED: bool = _flag("ALERT_MONITOR_ENABLED")
    ALERT_MONITOR_INTERVAL_SEC: float = float(os.getenv("ALERT_MONITOR_INTERVAL_SEC", "60"))
    # Must exceed the interval and the worst-case tick duration
    ALERT_MONITOR_LOCK_TTL_SEC: float = float(os.getenv("ALERT_MONITOR_LOCK_TTL_SEC", "300"))
    ALERT_MONITOR_SKIP_ESCALATE_AFTER: int = int(os.getenv("ALERT_MONITOR_SKIP_ESCALATE_AFTER", "5"))
    ALERT_EXPLANATION_TIMEOUT_SEC: float = float(os.getenv("ALERT_EXPLANATION_TIMEOUT_SEC", "3"))
    BACKGROUND_JOBS_LOCK_ENABLED: bool = _flag("BACKGROUND_JOBS_LOCK_ENABLED")

    # Rate limiting (requests per window, per client ip)
    RATE_LIMIT_ENABLED: bool = _flag("RATE_LIMIT_ENABLED")
    RATE_LIMIT_WINDOW_SEC: int = int(os.getenv("RATE_LIMIT_WINDOW_SEC", "60"))
    RATE_LIMIT_AUTH_PER_MIN: int = int(os.getenv("RATE_LIMIT_AUTH_PER_MIN", "5"))
    RATE_LIMIT_API_PER_MIN: int = int(os.getenv("RATE_LIMIT_API_PER_MIN", "60"))
    RATE_LIMIT_GLOBAL_PER_MIN: int = int(os.getenv("RATE_LIMIT_GLOBAL_PER_MIN", "100"))

    # Notification channels
    TELEGRAM_BOT_TOKEN: Optional[str] = os.getenv("TELEGRAM_BOT_TOKEN")
    NOTIFY_TIMEOUT_SEC: float = float(os.getenv("NOTIFY_TIMEOUT_SEC", "10"))
    NOTIFY_RETRY_COUNT: int = int(os.getenv("NOTIFY_RETRY_COUNT", "3"))
    NOTIFY_RETRY_BASE_SEC: float = float(os.getenv("NOTIFY_RETRY_BASE_SEC", "1"))
    NOTIFY_BREAKER_FAILURES: int = int(os.getenv("NOTIFY_BREAKER_FAILURES", "5"))
    NOTIFY_BREAKER_OPEN_SEC: float = float(os.getenv("NOTIFY_BREAKER_OPEN_SEC", "30"))

    # Alert explanations (optional LLM backend)
    CHATDATA_API_KEY: Optional[str] = os.getenv("CHATDATA_API_KEY")
    CHATDATA_CHATBOT_ID: Optional[str] = os.getenv("CHATDATA_CHATBOT_ID")

    @property
    def lock_ttl_valid(self) -> bool:
        """The job lock must outlive one tick interval, otherwise two
        instances can overlap on every tick."""
        return self.ALERT_MONITOR_LOCK_TTL_SEC > self.ALERT_MONITOR_INTERVAL_SEC


settings = Settings()


class HealthStatus(BaseModel):
    ok: bool
    warnings: list[str]
    cache: str
