"""Runtime configuration for notification dispatch service."""

from typing import Any, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_CHANNEL_OVERRIDES: dict[str, dict[str, Any]] = {
    "sms": {"max_attempts": 2},
    "in_app": {"max_attempts": 3, "backoff_base_seconds": 1.0, "timeout_seconds": 2.0},
    "webhook": {"timeout_seconds": 8.0},
}


class Settings(BaseSettings):
    """Service settings loaded from environment variables."""

    service_name: str = "notification-dispatch-service"
    service_version: str = "0.1.0"
    log_level: str = "INFO"
    metrics_enabled: bool = True

    event_produced_by: str = "apps/notification-dispatch-service"

    dispatch_enabled: bool = True

    enabled_channels_csv: str = "email,sms,push,webhook,in_app"
    fallback_enabled: bool = True

    default_max_attempts: int = 3
    default_timeout_seconds: float = 10.0
    default_backoff_base_seconds: float = 3.0
    default_backoff_multiplier: float = 2.0
    default_backoff_cap_seconds: float = 300.0
    channel_overrides: dict[str, dict[str, Any]] = DEFAULT_CHANNEL_OVERRIDES
    webhook_url: str = "http://127.0.0.1:8300/hooks/notifications"

    queue_driver: Literal["memory", "filesystem"] = "memory"
    queue_path: str = "./var/jobs"
    queue_name: str = "notification-queue"
    visibility_timeout_seconds: float = 60.0
    default_queue_delay_seconds: float = 0.0
    reports_dir_name: str = "reports"

    worker_count: int = 4
    worker_poll_interval_seconds: float = 0.5
    workers_autostart: bool = True
    infra_retry_delay_seconds: float = 5.0

    sweeper_enabled: bool = True
    sweeper_interval_seconds: int = 30
    sweeper_staleness_seconds: float = 120.0
    global_max_attempts: int = 10

    model_config = SettingsConfigDict(env_prefix="NOTIFICATION_DISPATCH_", extra="ignore")

    @property
    def enabled_channels(self) -> tuple[str, ...]:
        values = [value.strip().lower() for value in self.enabled_channels_csv.split(",")]
        unique: list[str] = []
        for value in values:
            if value and value not in unique:
                unique.append(value)
        return tuple(unique)


def get_settings() -> Settings:
    """Return settings object."""

    return Settings()
