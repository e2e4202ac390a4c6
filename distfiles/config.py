"""Process configuration, read from DISTFILES_* environment variables.

Built once by the CLI at startup and handed to the app, the pipeline and the
store explicitly; nothing in the package reads the environment on its own.

Examples
--------
::

    export DISTFILES_AUTH_TOKEN=s3cret
    export DISTFILES_LISTEN_ADDR=127.0.0.1:8080
    export DISTFILES_STORAGE_DIR=/srv/distfiles
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from distfiles.errors import ConfigError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="DISTFILES_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    auth_realm: str = Field("distfiles", min_length=1)
    auth_token: str = Field(..., min_length=1)
    listen_addr: str = Field(":8000", min_length=1)
    storage_dir: Path = Path("data")

    max_upload_bytes: int = Field(1024 * 1024 * 1024, gt=0)
    log_level: str = "INFO"

    @field_validator("listen_addr")
    @classmethod
    def _has_port(cls, value: str) -> str:
        _, sep, port = value.rpartition(":")
        if not sep or not port.isdigit():
            raise ValueError(f"expected [host]:port, got {value!r}")
        return value

    @property
    def host(self) -> str:
        host, _, _ = self.listen_addr.rpartition(":")
        return host.strip("[]") or "0.0.0.0"

    @property
    def port(self) -> int:
        return int(self.listen_addr.rpartition(":")[2])

    def ensure_storage_dir(self) -> Path:
        """Create the storage root if missing; refuse a non-directory."""
        if self.storage_dir.exists() and not self.storage_dir.is_dir():
            raise ConfigError("DISTFILES_STORAGE_DIR is not a directory")
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        return self.storage_dir


def load_settings(**overrides) -> Settings:
    """Read settings from the environment and bootstrap the storage root."""
    settings = Settings(**overrides)
    settings.ensure_storage_dir()
    return settings
