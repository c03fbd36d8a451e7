from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PVE_", env_file=".env", extra="ignore")

    endpoint: str = Field(default="https://localhost:8006")
    api_token: str | None = Field(default=None)
    auth_ticket: str | None = Field(default=None)
    csrf_token: str | None = Field(default=None)
    verify_tls: bool = Field(default=True)

    request_timeout_sec: float = Field(default=30.0, gt=0)
    retry_attempts: int = Field(default=1, ge=1)
    retry_sleep_sec: int = Field(default=2, ge=0)

    poll_interval_sec: float = Field(default=2.0, ge=0)
    wait_stopped_timeout_sec: float = Field(default=300.0, ge=0)
    wait_boot_timeout_sec: float = Field(default=300.0, ge=0)
    read_ip_timeout_sec: float = Field(default=1.0, ge=0)
    task_timeout_sec: float = Field(default=600.0, ge=0)
    command_read_timeout_sec: float = Field(default=30.0, gt=0)

    snippet_storage: str = Field(default="local")
    snippet_dir: str = Field(default="/var/lib/vz/snippets")
    disk_format: str = Field(default="qcow2")
    primary_interface: str = Field(default="eth0")

    log_level: str = Field(default="INFO")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
