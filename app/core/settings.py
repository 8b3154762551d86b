from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    app_name: str = Field(default="Notification Engine", alias="APP_NAME")
    app_env: str = Field(default="local", alias="APP_ENV")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    database_url: str = Field(
        default="sqlite+pysqlite:///./notifications.db",
        alias="DATABASE_URL",
    )

    # Delivery
    default_max_attempts: int = Field(default=3, ge=1, alias="NOTIFY_MAX_ATTEMPTS")
    backoff_base_seconds: float = Field(default=30.0, gt=0, alias="NOTIFY_BACKOFF_BASE_S")
    backoff_factor: float = Field(default=2.0, ge=1, alias="NOTIFY_BACKOFF_FACTOR")
    backoff_cap_seconds: float = Field(default=3600.0, gt=0, alias="NOTIFY_BACKOFF_CAP_S")
    backoff_jitter_ratio: float = Field(default=0.1, ge=0, le=1, alias="NOTIFY_BACKOFF_JITTER")
    dedup_window_seconds: int = Field(default=300, ge=0, alias="NOTIFY_DEDUP_WINDOW_S")
    provider_timeout_seconds: float = Field(default=10.0, gt=0, alias="NOTIFY_PROVIDER_TIMEOUT_S")
    worker_batch_size: int = Field(default=25, ge=1, alias="NOTIFY_BATCH_SIZE")
    worker_poll_interval_seconds: float = Field(default=5.0, gt=0, alias="NOTIFY_POLL_INTERVAL_S")
    worker_count: int = Field(default=1, ge=1, alias="NOTIFY_WORKERS")

    # Cases
    sla_targets_minutes: dict[str, int] = Field(
        default_factory=lambda: {"low": 4320, "medium": 1440, "high": 240, "urgent": 60},
        alias="CASE_SLA_TARGETS_MIN",
    )
    escalation_sweep_interval_seconds: float = Field(default=60.0, gt=0, alias="CASE_SWEEP_INTERVAL_S")
    sweep_lease_seconds: int = Field(default=300, ge=1, alias="CASE_SWEEP_LEASE_S")
    escalation_tiers: list[dict[str, str]] = Field(default_factory=list, alias="CASE_ESCALATION_TIERS")

    # Audit
    audit_entity_kinds: list[str] = Field(
        default_factory=lambda: ["notification", "case"],
        alias="AUDIT_ENTITY_KINDS",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
