from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="VM_LIFECYCLE_", env_file=".env", extra="ignore"
    )

    control_plane_url: str = Field(default="http://localhost:8100")
    control_plane_user: str = Field(default="admin")
    control_plane_password: str = Field(default="admin")
    request_timeout_sec: float = Field(default=30.0, gt=0)
    retry_attempts: int = Field(default=3, ge=1)
    retry_sleep_sec: int = Field(default=5, ge=0)

    region_id: str = Field(default="na1")
    default_vlan_id: str | None = Field(default=None)

    poll_interval_sec: float = Field(default=30.0, gt=0)
    boot_poll_interval_sec: float = Field(default=15.0, gt=0)
    boot_timeout_sec: int = Field(default=15 * 60, ge=1)
    resize_timeout_sec: int = Field(default=90 * 60, ge=1)
    storage_timeout_sec: int = Field(default=20 * 60, ge=1)
    stop_timeout_sec: int = Field(default=20 * 60, ge=1)
    stopped_wait_timeout_sec: int = Field(default=10 * 60, ge=1)
    destroy_timeout_sec: int = Field(default=10 * 60, ge=1)
    destroy_backoff_sec: float = Field(default=30.0, ge=0)

    page_size: int = Field(default=250, ge=1)
    product_cache_ttl_sec: int = Field(default=24 * 60 * 60, ge=0)

    database_url: str = Field(default="sqlite://")

    log_level: str = Field(default="INFO")
    disable_background_tasks: bool = Field(default=False)
    shutdown_grace_sec: float = Field(default=5.0, ge=0)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
