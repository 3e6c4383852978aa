"""
Settings loader for chrootenv.

Loads settings from YAML, validated into pydantic models. Lookup order:

1. CHROOTENV_CONFIG environment variable
2. /etc/chrootenv/chrootenv.yaml
3. chrootenv/config/chrootenv.yaml, shipped inside the package

A missing file means built-in defaults. Environment flags are applied on
top of whatever was loaded:

    CHROOTENV_CHROOTS_DIR   override chroots_dir
    CHROOTENV_NO_UNMOUNT    non-empty: leave mounts in place on exit
    CHROOTENV_WEAK_RANDOM   non-empty: bind /dev/urandom over /dev/random
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from chrootenv.core.errors import PreconditionError
from chrootenv.core.mounts import MountSpec

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "chrootenv.yaml"
SYSTEM_CONFIG_PATH = Path("/etc/chrootenv/chrootenv.yaml")


def default_mounts() -> list[MountSpec]:
    """Default plan, in dependency order."""
    return [
        MountSpec(source="/dev", target="/dev"),
        MountSpec(source="/dev/pts", target="/dev/pts"),
        MountSpec(source="/dev/shm", target="/dev/shm"),
        MountSpec(source="/tmp", target="/tmp", remount_options=["exec"]),
        MountSpec(source="/proc", target="/proc"),
        MountSpec(source="/sys", target="/sys"),
        MountSpec(kind="tmpfs", target="/var/run",
                  options=["noexec", "nosuid", "mode=0755", "size=10%"]),
        MountSpec(kind="tmpfs", target="/var/run/lock",
                  options=["noexec", "nosuid", "nodev", "size=5120k"]),
        MountSpec(source="/var/run/dbus", target="/var/host/dbus", optional=True),
        MountSpec(source="/lib/modules/{kernel_release}", target="/lib/modules/{kernel_release}",
                  remount_options=["ro"], optional=True),
        MountSpec(source="/media", target="/var/host/media",
                  options=["recursive", "rshared"], optional=True),
    ]


class GroupMappingConfig(BaseModel):
    """One host group whose GID the guest group must share."""

    host: str = Field(description="Group name on the host")
    guest: str = Field(default="", description="Group name in the chroot (defaults to host)")

    @model_validator(mode="after")
    def default_guest(self) -> "GroupMappingConfig":
        if not self.guest:
            self.guest = self.host
        return self


def default_group_mappings() -> list[GroupMappingConfig]:
    return [
        GroupMappingConfig(host="audio", guest="audio"),
        GroupMappingConfig(host="video", guest="video"),
        GroupMappingConfig(host="input", guest="input"),
        GroupMappingConfig(host="cras", guest="cras"),
    ]


class ChrootEnvSettings(BaseModel):
    """Complete chrootenv configuration."""

    chroots_dir: str = Field(default="/usr/local/chroots", description="Directory holding chroots")
    setup_script: str = Field(default="/prepare.sh", description="Guest path of the setup script")
    setup_max_passes: Optional[int] = Field(
        default=None,
        description="Upper bound on setup-script passes (None = until it removes itself)",
    )
    mounts: list[MountSpec] = Field(default_factory=default_mounts)
    group_mappings: list[GroupMappingConfig] = Field(default_factory=default_group_mappings)
    start_dbus: bool = Field(default=True, description="Start the guest system D-Bus")
    run_rc_local: bool = Field(default=True, description="Run the guest /etc/rc.local")
    unmount_retries: int = Field(default=3, ge=1)
    no_unmount: bool = Field(default=False, description="Leave mounts in place on exit")
    weak_random: bool = Field(default=False, description="Bind /dev/urandom over /dev/random")

    @field_validator("setup_max_passes")
    @classmethod
    def validate_max_passes(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 1:
            raise ValueError("setup_max_passes must be at least 1")
        return value


def _config_path(explicit: Optional[Path]) -> Optional[Path]:
    if explicit is not None:
        return explicit
    env_path = os.environ.get("CHROOTENV_CONFIG")
    if env_path:
        return Path(env_path)
    for candidate in (SYSTEM_CONFIG_PATH, DEFAULT_CONFIG_PATH):
        if candidate.exists():
            return candidate
    return None


def load_settings(config_path: Optional[Path] = None) -> ChrootEnvSettings:
    """
    Load settings from YAML and apply environment overrides.

    Args:
        config_path: Explicit config file; otherwise the lookup order applies.

    Raises:
        PreconditionError: If a config file exists but cannot be parsed.
    """
    path = _config_path(config_path)
    raw: dict = {}
    if path is not None:
        if not path.exists():
            raise PreconditionError(f"Config file not found: {path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise PreconditionError(f"Failed to parse {path}: {e}") from e
        if not isinstance(raw, dict):
            raise PreconditionError(f"{path} must contain a mapping of settings")
        logger.debug(f"Loaded settings from {path}")

    if os.environ.get("CHROOTENV_CHROOTS_DIR"):
        raw["chroots_dir"] = os.environ["CHROOTENV_CHROOTS_DIR"]
    if os.environ.get("CHROOTENV_NO_UNMOUNT"):
        raw["no_unmount"] = True
    if os.environ.get("CHROOTENV_WEAK_RANDOM"):
        raw["weak_random"] = True

    try:
        return ChrootEnvSettings(**raw)
    except (ValidationError, TypeError) as e:
        raise PreconditionError(f"Invalid configuration{f' in {path}' if path else ''}: {e}") from e
