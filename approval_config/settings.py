"""
Engine settings (``approval_config.settings``).

Responsibility
--------------
Parse the engine's YAML settings file into a frozen ``EngineSettings``.
Callers go through ``approval_config.get_settings()``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Out-of-range values  -> ``ValueError`` with the offending key.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_DATABASE_URL = "sqlite:///approval_engine.db"


@dataclass(frozen=True)
class SweeperSettings:
    interval_seconds: float = 120.0
    batch_size: int = 100
    max_workers: int = 4


@dataclass(frozen=True)
class DirectorySettings:
    max_attempts: int = 3
    backoff_seconds: float = 0.2
    timeout_seconds: float = 5.0


@dataclass(frozen=True)
class ResolutionSettings:
    max_hierarchy_depth: int = 10


@dataclass(frozen=True)
class AuthorizationSettings:
    override_roles: tuple[str, ...] = ("HR_ADMIN", "SUPER_ADMIN")


@dataclass(frozen=True)
class EngineSettings:
    """Everything the engine reads from configuration."""

    database_url: str = DEFAULT_DATABASE_URL
    system_actor_id: str = "system"
    log_level: str = "INFO"
    sweeper: SweeperSettings = field(default_factory=SweeperSettings)
    directory: DirectorySettings = field(default_factory=DirectorySettings)
    resolution: ResolutionSettings = field(default_factory=ResolutionSettings)
    authorization: AuthorizationSettings = field(default_factory=AuthorizationSettings)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _positive(section: str, key: str, value: Any, cast: type) -> Any:
    converted = cast(value)
    if converted <= 0:
        raise ValueError(f"{section}.{key} must be positive, got {value!r}")
    return converted


def parse_settings(data: dict[str, Any]) -> EngineSettings:
    """Build ``EngineSettings`` from a parsed YAML mapping."""
    sweeper = data.get("sweeper") or {}
    directory = data.get("directory") or {}
    resolution = data.get("resolution") or {}
    authorization = data.get("authorization") or {}

    defaults = EngineSettings()
    return EngineSettings(
        database_url=str(data.get("database_url", defaults.database_url)),
        system_actor_id=str(data.get("system_actor_id", defaults.system_actor_id)),
        log_level=str(data.get("log_level", defaults.log_level)).upper(),
        sweeper=SweeperSettings(
            interval_seconds=_positive(
                "sweeper", "interval_seconds",
                sweeper.get("interval_seconds", defaults.sweeper.interval_seconds), float,
            ),
            batch_size=_positive(
                "sweeper", "batch_size",
                sweeper.get("batch_size", defaults.sweeper.batch_size), int,
            ),
            max_workers=_positive(
                "sweeper", "max_workers",
                sweeper.get("max_workers", defaults.sweeper.max_workers), int,
            ),
        ),
        directory=DirectorySettings(
            max_attempts=_positive(
                "directory", "max_attempts",
                directory.get("max_attempts", defaults.directory.max_attempts), int,
            ),
            backoff_seconds=float(
                directory.get("backoff_seconds", defaults.directory.backoff_seconds)
            ),
            timeout_seconds=_positive(
                "directory", "timeout_seconds",
                directory.get("timeout_seconds", defaults.directory.timeout_seconds), float,
            ),
        ),
        resolution=ResolutionSettings(
            max_hierarchy_depth=_positive(
                "resolution", "max_hierarchy_depth",
                resolution.get("max_hierarchy_depth", defaults.resolution.max_hierarchy_depth),
                int,
            ),
        ),
        authorization=AuthorizationSettings(
            override_roles=tuple(
                authorization.get("override_roles", defaults.authorization.override_roles)
            ),
        ),
    )
