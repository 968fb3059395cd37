# Author: PB & Claude
# Maintainer: PB
# Original date: 2025.05.13
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/repovault/config/manager.py

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional, Final

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from repovault.system.exceptions import ConfigError


# ---- Constants ----

CONFIG_FILE: Final = "repovault.yml"

DEFAULT_MAINTENANCE_PATTERNS: Final[tuple[str, ...]] = (
    r"^git( -.*)? nw-repack( |$)",
    r"^git( -.*)? gc( |$)",
)


def _get_config_search_paths() -> tuple[Path, ...]:
    """Get config file search paths (ordered by priority: lowest to highest).

    Evaluated at call time so environment overrides apply in tests.
    """
    return (
        Path("/etc/repovault") / CONFIG_FILE,  # System defaults
        Path.home() / ".config" / "repovault" / CONFIG_FILE,  # User config
        Path(os.getenv("XDG_CONFIG_HOME", "")) / "repovault" / CONFIG_FILE,  # XDG override
        Path(os.getenv("REPOVAULT_CONFIG_HOME", "")) / CONFIG_FILE,  # Explicit override (highest priority)
    )


def _load_merged_config_data(candidates: tuple[Path, ...]) -> dict:
    """Load and merge config data from candidate paths.

    Raises:
        ConfigError: If no config file is found or one cannot be parsed
    """
    merged_data = {}
    found_configs = []

    for candidate in candidates:
        # Unset env vars collapse to a relative "repovault/repovault.yml"; skip those
        if not candidate.is_absolute() or not candidate.exists():
            continue
        try:
            with candidate.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config from {candidate}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {candidate} must contain a mapping")

        merged_data.update(data)  # Later configs override earlier ones
        found_configs.append(str(candidate))
        logger.debug(f"Loaded config from {candidate}")

    if not found_configs:
        raise ConfigError(
            f"No {CONFIG_FILE} found in /etc/repovault/, ~/.config/repovault/, "
            "XDG_CONFIG_HOME or REPOVAULT_CONFIG_HOME"
        )

    logger.debug(f"Merged config from: {', '.join(found_configs)}")
    return merged_data


class BackupConfig(BaseModel):
    """Everything a backup run needs, passed explicitly to each component."""

    # Primary appliance, as "host", "host:port" or "user@host:port"
    hostname: str
    # Local backup root holding one directory per snapshot plus "current"
    data_dir: Path
    remote_data_dir: str = "/data/user"

    # Quiescence
    cooldown_seconds: int = Field(default=60, gt=0)
    poll_interval: float = Field(default=1.0, ge=0)
    maintenance_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_MAINTENANCE_PATTERNS))

    # Topology and negotiation
    storage_role: str = "git-server"
    nodes_command: str = "ghe-cluster-nodes --role {role}"
    negotiate_command: str = "ghe-negotiate-version repovault {version}"
    legacy_metadata_path: str = "/data/enterprise/chef_metadata.json"

    # Transport
    ssh_options: list[str] = Field(default_factory=list)
    identity_file: Optional[Path] = None
    verbose_ssh: bool = False
    connect_timeout: float = Field(default=5.0, gt=0)
    connection_attempts: int = Field(default=1, ge=1)

    # Transfer
    nice: bool = True
    max_parallel: Optional[int] = Field(default=None, ge=1)
    rsync_path: str = "rsync"
    remote_user: str = "git"

    # Snapshot retention and logging
    num_snapshots: int = Field(default=10, ge=1)
    log_dir: Optional[Path] = None

    @field_validator("hostname")
    @classmethod
    def hostname_well_formed(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("hostname must not be empty")
        user, sep, host = value.partition("@")
        if not sep:
            host = value
        elif not user:
            raise ValueError(f"empty user in hostname {value!r}")
        if ":" in host:
            host, port = host.rsplit(":", 1)
            if not port.isdigit():
                raise ValueError(f"invalid port in hostname {value!r}")
        if not host:
            raise ValueError(f"empty host in hostname {value!r}")
        return value

    @field_validator("maintenance_patterns")
    @classmethod
    def patterns_compile(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one maintenance pattern is required")
        for pattern in value:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"invalid maintenance pattern {pattern!r}: {e}")
        return value

    @field_validator("ssh_options")
    @classmethod
    def options_are_key_value(cls, value: list[str]) -> list[str]:
        for option in value:
            if "=" not in option:
                raise ValueError(f"ssh option {option!r} must look like Key=Value")
        return value

    @property
    def remote_repositories_dir(self) -> str:
        return f"{self.remote_data_dir.rstrip('/')}/repositories"

    @classmethod
    def from_dict(cls, data: dict) -> "BackupConfig":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}")

    @classmethod
    def load(cls, config_path: Path | None = None, **overrides) -> "BackupConfig":
        """Load config from an explicit path or the standard search paths.

        Keyword overrides (e.g. from CLI flags) win over file values; None
        values are ignored.
        """
        if config_path is not None:
            config_path = Path(config_path)
            if not config_path.exists():
                raise ConfigError(f"Config file not found: {config_path}")
            data = _load_merged_config_data((config_path.resolve(),))
        else:
            data = _load_merged_config_data(_get_config_search_paths())

        data.update({key: value for key, value in overrides.items() if value is not None})
        return cls.from_dict(data)
