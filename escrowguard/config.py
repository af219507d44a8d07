from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Map the env var named DATABASE_URL to this field
    database_url: str = Field(default="sqlite:///./escrowguard.sqlite3", alias="DATABASE_URL")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Wall-clock windows, all recomputed on read
    escrow_hold_days: int = Field(default=30, alias="ESCROW_HOLD_DAYS")
    return_window_days: int = Field(default=30, alias="RETURN_WINDOW_DAYS")
    reservation_ttl_minutes: int = Field(default=30, alias="RESERVATION_TTL_MINUTES")

    idempotency_lock_seconds: int = Field(default=15, alias="IDEMPOTENCY_LOCK_SECONDS")

    # Best-effort, per-process; swap in a shared store for multi-instance deployments
    rate_limit_per_minute: int = Field(default=120, alias="RATE_LIMIT_PER_MINUTE")
    notification_dedup_seconds: int = Field(default=60, alias="NOTIFICATION_DEDUP_SECONDS")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # don't error on POSTGRES_USER/PASSWORD/DB
        populate_by_name=True,
    )

settings = Settings()
