"""Settings for the amenity services, read from the environment or a .env file."""
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """One settings object serves the amenities, bookings and cron services."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    database_url: str = Field(
        default="sqlite:///./amenity_booking.db",
        description="SQLAlchemy URL; SQLite locally, Postgres in production",
    )
    run_db_migrations: bool = Field(
        default=False,
        description="Create missing tables when a service starts",
    )
    jwt_secret: str = Field(default="super-secret", description="HMAC key for identity tokens")
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    access_token_expire_minutes: int = Field(default=60, description="Identity token lifetime (minutes)")
    cron_secret: str = Field(default="cron-secret", description="Shared secret for scheduler-invoked sweeps")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="Origins allowed by CORS")
    default_rate_limit: str = Field(default="30/minute", description="Limit applied to routes without their own rule")
    rate_limiting_enabled: bool = Field(default=True, description="Enforce SlowAPI limits; off in tests")
    amenity_cache_ttl: int = Field(default=60, description="TTL (s) for cached amenity configuration")
    log_dir: str = Field(default="logs", description="Directory for per-service audit logs")

    app_base_url: str = Field(default="http://localhost:3000", description="Base URL used in confirm/decline links")
    notifications_enabled: bool = Field(default=True, description="Publish notifications to RabbitMQ")
    rabbitmq_host: str = Field(default="rabbitmq", description="RabbitMQ host for the notification queue")
    notifications_queue: str = Field(default="notifications", description="Durable queue receiving notifications")

    promotion_window_hours: int = Field(default=48, description="Confirmation window after a cancellation-driven promotion")
    no_show_promotion_window_minutes: int = Field(default=30, description="Confirmation window after a no-show promotion")
    expiry_promotion_window_minutes: int = Field(
        default=48 * 60,
        description="Confirmation window when an expired promotion chains to the next entrant",
    )
    no_show_grace_minutes: int = Field(default=25, description="Minutes after start before an unchecked booking is a no-show")
    reminder_window_start_minutes: int = Field(default=45, description="Reminder look-ahead lower bound")
    reminder_window_end_minutes: int = Field(default=75, description="Reminder look-ahead upper bound")
    check_in_early_minutes: int = Field(default=10, description="Minutes before start when check-in opens")

    deposit_threshold: int = Field(default=3, description="No-show count from which a deposit is required")
    suspension_threshold: int = Field(default=3, description="No-show count that triggers a suspension")
    suspension_days: int = Field(default=30, description="Suspension length in days")
    slot_lock_attempts: int = Field(default=3, description="Retries when the slot lock is contended")


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, built on first use."""

    return Settings()


def reset_settings_cache() -> None:
    """Forget the cached settings so the next call re-reads the environment."""

    get_settings.cache_clear()
