from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(value: str | None) -> list[str]:
    origins = [x.strip() for x in (value or "").split(",") if x.strip()]
    return origins or _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")
    cookie_secure: bool = Field(default=False, alias="COOKIE_SECURE")

    # CORS: comma-separated in env, exposed as list
    cors_origins_raw: str = Field(default="http://localhost:3000,http://localhost:5173", alias="CORS_ORIGINS")

    @property
    def cors_origins(self) -> list[str]:
        return _parse_cors_origins(self.cors_origins_raw)

    # Document store
    store_backend: str = Field(default="memory", alias="STORE_BACKEND")
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="badminton", alias="MONGODB_DB_NAME")
    store_timeout_seconds: float = Field(default=5.0, alias="STORE_TIMEOUT_SECONDS")
    store_retry_attempts: int = Field(default=3, alias="STORE_RETRY_ATTEMPTS")
    store_retry_backoff: float = Field(default=0.05, alias="STORE_RETRY_BACKOFF")
    cas_max_attempts: int = Field(default=8, alias="CAS_MAX_ATTEMPTS")

    # Redis (notification queue)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Notifications: "log" or "queue"
    notification_backend: str = Field(default="log", alias="NOTIFICATION_BACKEND")
    line_channel_token: str = Field(default="", alias="LINE_CHANNEL_TOKEN")
    line_group_id: str = Field(default="", alias="LINE_GROUP_ID")
    app_url: str = Field(default="http://localhost:8000", alias="APP_URL")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # Wallet (integer minor units)
    minimum_balance: int = 10
    low_balance_threshold: int = 10
    gift_amount: int = 10000

    # Fresh session defaults
    default_capacity: int = 12
    default_fee: int = 15000
    lock_window_minutes: int = 120

    # Close-out costs
    players_per_court: int = 6
    court_rate: int = 22000
    equipment_unit_rate: int = 8500

    # Weekly report pricing
    report_base_price: int = 15000
    report_weeks_to_distribute: int = 4


@lru_cache
def get_settings() -> Settings:
    return Settings()
