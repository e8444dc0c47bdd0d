import tempfile
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PVE_", env_file=".env", extra="ignore")

    host: str | None = Field(default=None)
    port: int = Field(default=8006, ge=1, le=65535)
    user: str = Field(default="root@pam")
    password: str | None = Field(default=None)
    token_id: str | None = Field(default=None)
    token_secret: str | None = Field(default=None)
    node: str = Field(default="pve")

    ca_cert: str | None = Field(default=None)
    insecure: bool = Field(default=False)
    debug: bool = Field(default=False)

    retry_attempts: int = Field(default=3, ge=1)
    backoff_initial_sec: float = Field(default=2, ge=0)
    backoff_max_sec: float = Field(default=30, ge=0)
    request_timeout_sec: float = Field(default=30, gt=0)

    disk_storage: str = Field(default="local-lvm")
    iso_storage: str = Field(default="media")
    image_dir: str = Field(default="/mnt/pve/media/template/qcow/")
    bridge_base: str = Field(default="vmbr")
    mngt_bridge: str = Field(default="vmbr0")

    task_timeout_sec: float = Field(default=300, gt=0)
    task_interval_sec: float = Field(default=5, gt=0)
    disk_timeout_sec: float = Field(default=120, gt=0)
    disk_interval_sec: float = Field(default=5, gt=0)
    power_timeout_sec: float = Field(default=300, gt=0)
    power_interval_sec: float = Field(default=2, gt=0)

    work_dir: str = Field(default_factory=tempfile.gettempdir)

    ssh_user: str = Field(default="root")
    ssh_key_path: str | None = Field(default=None)
    ssh_port: int = Field(default=22, ge=1, le=65535)

    @property
    def api_url(self) -> str:
        return f"https://{self.host}:{self.port}/api2/json"

    @property
    def uses_api_token(self) -> bool:
        return bool(self.token_id and self.token_secret)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
