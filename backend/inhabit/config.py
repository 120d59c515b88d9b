from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(raw_value: str) -> list[str]:
    return [part.strip() for part in raw_value.split(",") if part.strip()]


def _normalize_env(raw_value: str) -> str:
    normalized = raw_value.strip().lower()
    return "production" if normalized == "production" else "development"


class Settings(BaseSettings):
    APP_ENV: str = "development"
    APP_HOST: str = "0.0.0.0"
    APP_PORT: int = 8000
    LOG_LEVEL: str = "info"

    # CORS
    CORS_ALLOW_ORIGINS: str = ""

    # Auth (tokens are issued elsewhere, only verified here)
    JWT_SECRET: str = ""
    JWT_ALGORITHM: str = "HS256"

    # Database
    DATABASE_URL: str = ""
    DB_STATEMENT_TIMEOUT_MS: int = 5000
    DB_SLOW_QUERY_MS: int = 300
    DB_AUTO_MIGRATE: bool = True

    # Habits
    STREAK_TIMEZONE: str = "UTC"
    HABITS_RECENT_DAYS_DEFAULT: int = 14
    HABITS_RECENT_DAYS_MAX: int = 365
    HABITS_HISTORY_DAYS_DEFAULT: int = 30

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def env_mode(self) -> str:
        return _normalize_env(self.APP_ENV)

    def is_production(self) -> bool:
        return self.env_mode() == "production"

    def get_cors_allow_origins(self) -> list[str]:
        configured = _split_csv(self.CORS_ALLOW_ORIGINS)
        if configured:
            if self.is_production() and "*" in configured:
                raise ValueError("Permissive CORS origin is not allowed in production")
            return configured

        if self.is_production():
            return []

        return [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:5173",
        ]

    def get_streak_timezone(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.STREAK_TIMEZONE.strip() or "UTC")
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown STREAK_TIMEZONE: {self.STREAK_TIMEZONE!r}") from exc

    def get_recent_days_default(self) -> int:
        return max(1, min(int(self.HABITS_RECENT_DAYS_DEFAULT), self.get_recent_days_max()))

    def get_recent_days_max(self) -> int:
        return max(1, int(self.HABITS_RECENT_DAYS_MAX))

    def get_history_days_default(self) -> int:
        return max(1, int(self.HABITS_HISTORY_DAYS_DEFAULT))

    def get_history_days_max(self) -> int:
        # the default history range spans HISTORY_DAYS_DEFAULT + 1 calendar days
        return max(self.get_recent_days_max(), self.get_history_days_default() + 1)

    def database_url(self) -> Optional[str]:
        value = self.DATABASE_URL.strip()
        return value or None


settings = Settings()
