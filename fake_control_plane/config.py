from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FakeControlPlaneSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FAKE_CONTROL_PLANE_", extra="ignore")

    user: str = Field(default="admin")
    password: str = Field(default="admin")

    location: str = Field(default="na1")
    display_name: str = Field(default="US - East")
    max_cpu: int = Field(default=8, ge=1)
    max_ram_mb: int = Field(default=65536, ge=1024)
    max_disks: int = Field(default=14, ge=1)
    os_storage_gb: int = Field(default=10, ge=1)

    # Reads a server stays in a PENDING_* state after a structural command.
    settle_reads: int = Field(default=0, ge=0)


@lru_cache(maxsize=1)
def get_settings() -> FakeControlPlaneSettings:
    return FakeControlPlaneSettings()
