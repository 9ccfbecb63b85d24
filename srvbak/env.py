# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers.

Builds an EngineConfig from a small set of well-known environment variables
on top of create_config().
"""

from __future__ import annotations

import os
from typing import Dict, List

from srvbak.builder import create_config
from srvbak.config import EngineConfig, RetentionClass
from srvbak.errors import explain_invalid_int_env, explain_missing_server_dir_env
from srvbak.exceptions import ConfigurationError


def _parse_list(value: str | None) -> List[str] | None:
    if value is None:
        return None
    return [p.strip() for p in value.split(",") if p.strip()]


def _parse_non_negative_int(name: str, value: str | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_int_env(name, value)) from exc
    if number < 0:
        raise ConfigurationError(explain_invalid_int_env(name, value))
    return number


def _parse_retention_overrides() -> Dict[RetentionClass, int | None]:
    overrides: Dict[RetentionClass, int | None] = {}
    for retention_class in (RetentionClass.DAILY, RetentionClass.WEEKLY, RetentionClass.MONTHLY):
        name = f"SRVBAK_RETENTION_{retention_class.value.upper()}_DAYS"
        days = _parse_non_negative_int(name, os.getenv(name))
        if days is not None:
            overrides[retention_class] = days
    return overrides


def create_config_from_env() -> EngineConfig:
    """
    Create an EngineConfig from environment variables.

    Required:
        - SRVBAK_SERVER_DIR: Directory holding the live data set

    Optional environment variables:
        - SRVBAK_VAULT_PATH: Job database and archive directory (default: ./srvbak_vault)
        - SRVBAK_STAGING_DIR: Restore staging location (default: the server directory)
        - SRVBAK_WORLD_DIRS: Comma-separated world directory names
        - SRVBAK_PLUGINS_DIRS: Comma-separated plugin directory names
        - SRVBAK_CONFIG_FILES: Comma-separated config file names
        - SRVBAK_SERVICE_NAME: Service name recorded in bundles (default: minecraft)
        - SRVBAK_SERVICE_VERSION: Service version (falls back to MINECRAFT_VERSION)
        - SRVBAK_ZSTD_LEVEL: Archive compression level (1-22)
        - SRVBAK_RETENTION_DAILY_DAYS / _WEEKLY_DAYS / _MONTHLY_DAYS: Max ages
    """

    server_dir = os.getenv("SRVBAK_SERVER_DIR")
    if not server_dir:
        raise ConfigurationError(explain_missing_server_dir_env())

    kwargs = {}
    zstd_level = _parse_non_negative_int("SRVBAK_ZSTD_LEVEL", os.getenv("SRVBAK_ZSTD_LEVEL"))
    if zstd_level is not None:
        kwargs["zstd_level"] = zstd_level

    return create_config(
        server_dir,
        vault_path=os.getenv("SRVBAK_VAULT_PATH"),
        staging_dir=os.getenv("SRVBAK_STAGING_DIR"),
        world_dirs=_parse_list(os.getenv("SRVBAK_WORLD_DIRS")),
        plugin_dirs=_parse_list(os.getenv("SRVBAK_PLUGINS_DIRS")),
        config_files=_parse_list(os.getenv("SRVBAK_CONFIG_FILES")),
        service_name=os.getenv("SRVBAK_SERVICE_NAME", "minecraft"),
        service_version=(
            os.getenv("SRVBAK_SERVICE_VERSION") or os.getenv("MINECRAFT_VERSION") or "unknown"
        ),
        retention_days=_parse_retention_overrides(),
        **kwargs,
    )
