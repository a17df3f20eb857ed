from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="AUTHORITAH_", env_file=".env", extra="ignore")

    # Locks
    lock_prefix: str = "/authoritah/locks/"
    lock_ttl: float = Field(default=15, gt=0)
    heartbeat_interval: float = Field(default=2.0, gt=0)

    # Redis
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    redis_configure_keyspace_events: bool = True

    # Watch subscription
    watch_poll_timeout: float = 1.0
    watch_reconnect_delay_initial: float = 0.5
    watch_reconnect_delay_max: float = 30.0
    watch_reconnect_delay_multiplier: float = 2.0
    watch_max_reconnect_attempts: int = 10

    # Observability
    enable_metrics: bool = True
    log_level: str = "INFO"
    log_json: bool = False


settings = Settings()
