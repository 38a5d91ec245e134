"""Installer settings.

Settings are policy: apps construct an ``InstallerSettings`` (optionally
from ``MODSAFE_*`` environment variables or a ``.env`` file) and inject it
into the services. Nothing here is persisted by the library.
"""

import os
import sys
from datetime import timedelta
from pathlib import Path

from pydantic import Field
from pydantic import model_validator
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict


def _default_data_dir() -> Path:
    if env := os.environ.get("MODSAFE_DATA_DIR"):
        return Path(env)
    if sys.platform == "win32":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    return base / "modsafe"


class InstallerSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MODSAFE_",
        extra="ignore",
    )

    data_dir: Path = Path("")
    backup_dir: Path = Path("")
    # None means the system temp directory
    staging_dir: Path | None = None
    state_dir: str = ".modsafe"
    loader_id: str = "BepInEx"
    # Package ids that stand for the loader in dependency lists (exact match)
    loader_package_ids: list[str] = Field(default_factory=lambda: ["BepInEx-BepInExPack"])

    checksum_algorithm: str = "sha256"
    verify_checksums: bool = True
    verify_signatures: bool = True
    force_reinstall: bool = False
    backup_before_install: bool = True

    max_backups: int | None = Field(default=10, ge=1)
    max_backup_age_days: int | None = Field(default=30, ge=1)

    link_strategy: str = "copy"

    @model_validator(mode="after")
    def _resolve_data_paths(self) -> "InstallerSettings":
        if self.data_dir == Path(""):
            self.data_dir = _default_data_dir()
        if self.backup_dir == Path(""):
            self.backup_dir = self.data_dir / "backups"
        return self

    @property
    def max_backup_age(self) -> timedelta | None:
        if self.max_backup_age_days is None:
            return None
        return timedelta(days=self.max_backup_age_days)
