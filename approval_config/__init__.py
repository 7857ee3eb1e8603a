"""
approval_config -- single public entrypoint for engine configuration.

Responsibility:
    ``get_settings()`` is the only way runtime code obtains settings.  No
    other component reads configuration files or environment variables.

Resolution order for the settings file:
    1. the ``path`` argument,
    2. the ``APPROVAL_ENGINE_CONFIG`` environment variable,
    3. built-in defaults (no file).

``DATABASE_URL``, when set, overrides ``database_url`` from any source.

Failure modes:
    - ``FileNotFoundError`` -- an explicitly named settings file is missing.
    - ``ValueError`` -- out-of-range values.
"""

from __future__ import annotations

import logging
import os
from dataclasses import replace
from pathlib import Path

from approval_config.rules_loader import load_rule_file, parse_rule_set
from approval_config.settings import EngineSettings, load_yaml_file, parse_settings

_logger = logging.getLogger("approval_kernel.config")

CONFIG_ENV_VAR = "APPROVAL_ENGINE_CONFIG"
DATABASE_URL_ENV_VAR = "DATABASE_URL"


def get_settings(path: Path | str | None = None) -> EngineSettings:
    """The ONLY public settings entrypoint."""
    source = path or os.environ.get(CONFIG_ENV_VAR)
    if source:
        settings = parse_settings(load_yaml_file(Path(source)))
    else:
        settings = EngineSettings()

    database_url = os.environ.get(DATABASE_URL_ENV_VAR)
    if database_url:
        settings = replace(settings, database_url=database_url)

    _logger.info(
        "settings_loaded",
        extra={
            "source": str(source) if source else "defaults",
            "sweeper_interval_seconds": settings.sweeper.interval_seconds,
            "sweeper_max_workers": settings.sweeper.max_workers,
            "directory_max_attempts": settings.directory.max_attempts,
            "max_hierarchy_depth": settings.resolution.max_hierarchy_depth,
        },
    )
    return settings


__all__ = [
    "CONFIG_ENV_VAR",
    "DATABASE_URL_ENV_VAR",
    "EngineSettings",
    "get_settings",
    "load_rule_file",
    "parse_rule_set",
]
