# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
srvbak Builder - Simple constructors for EngineConfig.

create_config() is the recommended user-facing way to build a configuration;
the coercion helpers turn caller-supplied strings into the closed enums the
orchestrators work with.
"""

from pathlib import Path
from typing import Any, Dict, Iterable

from srvbak.config import BackupKind, EngineConfig, RetentionClass
from srvbak.errors import explain_invalid_kind, explain_invalid_retention_class
from srvbak.exceptions import ConfigurationError, InvalidRequest


def coerce_kind(value: str | BackupKind) -> BackupKind:
    """
    Turn a caller-supplied kind into a BackupKind.

    Raises:
        InvalidRequest: If the value is not a known kind
    """
    try:
        return BackupKind(value)
    except ValueError as exc:
        raise InvalidRequest(explain_invalid_kind(value)) from exc


def coerce_retention_class(value: str | RetentionClass) -> RetentionClass:
    """
    Turn a caller-supplied retention class into a RetentionClass.

    Raises:
        InvalidRequest: If the value is not a known class
    """
    try:
        return RetentionClass(value)
    except ValueError as exc:
        raise InvalidRequest(explain_invalid_retention_class(value)) from exc


def create_config(
    server_dir: str | Path,
    *,
    vault_path: str | Path | None = None,
    world_dirs: Iterable[str] | None = None,
    plugin_dirs: Iterable[str] | None = None,
    config_files: Iterable[str] | None = None,
    staging_dir: str | Path | None = None,
    service_name: str = "minecraft",
    service_version: str = "unknown",
    retention_days: Dict[str | RetentionClass, int | None] | None = None,
    **kwargs: Any,
) -> EngineConfig:
    """
    Create engine configuration from simple parameters.

    Args:
        server_dir: Directory holding the live data set (required)
        vault_path: Where the job database and archives live (default: "./srvbak_vault")
        world_dirs: World directory names relative to server_dir
        plugin_dirs: Plugin directory names relative to server_dir
        config_files: Config file names relative to server_dir
        staging_dir: Restore staging location (default: server_dir)
        service_name: Name recorded in manifests and migration bundles
        service_version: Version recorded in manifests and migration bundles
        retention_days: Overrides for the per-class max age table
        **kwargs: Additional EngineConfig options

    Returns:
        Validated, immutable EngineConfig instance

    Example:
        config = create_config(
            "/srv/minecraft",
            vault_path="/var/lib/srvbak",
            retention_days={"daily": 3},
        )
    """
    if not server_dir:
        raise ConfigurationError("server_dir is required")

    options: Dict[str, Any] = {
        "server_dir": Path(server_dir),
        "service_name": service_name,
        "service_version": service_version,
        **kwargs,
    }
    if vault_path is not None:
        options["vault_path"] = Path(vault_path)
    if staging_dir is not None:
        options["staging_dir"] = Path(staging_dir)
    if world_dirs is not None:
        options["primary_data_paths"] = tuple(world_dirs)
    if plugin_dirs is not None:
        options["extension_paths"] = tuple(plugin_dirs)
    if config_files is not None:
        options["config_paths"] = tuple(config_files)
    if retention_days:
        from srvbak.config import DEFAULT_RETENTION_DAYS

        table = dict(DEFAULT_RETENTION_DAYS)
        for key, days in retention_days.items():
            try:
                table[RetentionClass(key)] = days
            except ValueError as exc:
                raise ConfigurationError(explain_invalid_retention_class(key)) from exc
        options["retention_days"] = table

    return EngineConfig(**options)
