import base64
import logging
import os
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


logger = logging.getLogger(__name__)


class Settings(BaseSettings):

    BOT_TOKEN: str = ""

    DATABASE_URL: Optional[str] = None

    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "remnawave_bot"
    POSTGRES_USER: str = "remnawave_user"
    POSTGRES_PASSWORD: str = "secure_password_123"

    SQLITE_PATH: str = "./data/gateway.db"
    DATABASE_MODE: str = "auto"

    TIMEZONE: str = Field(default_factory=lambda: os.getenv("TZ", "UTC"))

    # Upstream control plane
    REMNAWAVE_SUBSCRIPTION_URL: Optional[str] = None
    MARZBAN_API_URL: str = "http://127.0.0.1:8000"
    UPSTREAM_TIMEOUT_SECONDS: float = 15.0
    UPSTREAM_CHUNK_SIZE: int = 16384

    WEB_API_HOST: str = "0.0.0.0"
    WEB_API_PORT: int = 8080
    TRUST_FORWARDED_HEADERS: bool = True

    # Device control
    DEVICE_LIMIT: int = 5
    DEVICE_ACTIVITY_WINDOW_HOURS: int = 24
    DECISION_CACHE_TTL_SECONDS: int = 60
    DECISION_CACHE_SWEEP_INTERVAL_SECONDS: int = 300
    DECISION_CACHE_MAX_ENTRIES: int = 50000

    GEO_LOOKUP_URL: str = "https://ipinfo.io/{ip}/json"
    GEO_LOOKUP_TIMEOUT_SECONDS: float = 3.0
    GEO_CACHE_MAX_ENTRIES: int = 10000

    DEFERRED_QUEUE_MAX_SIZE: int = 1000
    DEFERRED_QUEUE_WORKERS: int = 2
    DEFERRED_QUEUE_DRAIN_TIMEOUT_SECONDS: float = 10.0

    NEW_DEVICE_NOTIFICATIONS_ENABLED: bool = True
    NOTIFICATION_TIMEZONE: str = "Europe/Moscow"

    # Subscription branding
    SUBSCRIPTION_REWRITE_ENABLED: bool = True
    SUBSCRIPTION_PROFILE_TITLE: str = "Outlivion VPN"
    SUBSCRIPTION_UPDATE_INTERVAL_HOURS: int = 12
    SUBSCRIPTION_SUPPORT_URL: Optional[str] = None

    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "logs/gateway.log"

    @field_validator('REMNAWAVE_SUBSCRIPTION_URL', 'MARZBAN_API_URL', mode='before')
    @classmethod
    def strip_trailing_slash(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = str(value).strip().rstrip('/')
        return cleaned or None

    @field_validator('DEVICE_LIMIT', 'DEVICE_ACTIVITY_WINDOW_HOURS', 'DECISION_CACHE_TTL_SECONDS', mode='before')
    @classmethod
    def ensure_positive_int(cls, value) -> int:
        try:
            return max(1, int(value))
        except (TypeError, ValueError):
            raise ValueError("value must be a positive integer")

    @field_validator('LOG_LEVEL', mode='before')
    @classmethod
    def normalize_log_level(cls, value: Optional[str]) -> str:
        normalized = str(value or "INFO").strip().upper()
        if normalized not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            return "INFO"
        return normalized

    @field_validator('TIMEZONE', 'NOTIFICATION_TIMEZONE')
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except Exception as exc:
            raise ValueError(f"Некорректный идентификатор часового пояса: {value}") from exc
        return value

    def get_database_url(self) -> str:
        if self.DATABASE_URL and self.DATABASE_URL.strip():
            return self.DATABASE_URL

        mode = self.DATABASE_MODE.lower()

        if mode == "sqlite":
            return self._get_sqlite_url()
        if mode == "postgresql":
            return self._get_postgresql_url()
        if os.getenv("DOCKER_ENV") == "true" or os.path.exists("/.dockerenv"):
            return self._get_postgresql_url()
        return self._get_sqlite_url()

    def _get_sqlite_url(self) -> str:
        sqlite_path = Path(self.SQLITE_PATH)
        sqlite_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite+aiosqlite:///{sqlite_path.absolute()}"

    def _get_postgresql_url(self) -> str:
        return (f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
                f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}")

    def get_upstream_base_url(self) -> str:
        return self.REMNAWAVE_SUBSCRIPTION_URL or self.MARZBAN_API_URL

    def get_profile_title_header(self) -> Optional[str]:
        """Profile-Title must stay latin-1 on the wire; non-ASCII titles go out as base64."""
        title = (self.SUBSCRIPTION_PROFILE_TITLE or "").strip()
        if not title:
            return None
        if title.isascii():
            return title
        encoded = base64.b64encode(title.encode("utf-8")).decode("ascii")
        return f"base64:{encoded}"

    def is_notifications_enabled(self) -> bool:
        return self.NEW_DEVICE_NOTIFICATIONS_ENABLED and bool(self.BOT_TOKEN.strip())

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore"
    }


settings = Settings()
