# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Server Backup Manager - Backup, restore and migration engine for game servers.

Captures world, plugin and config data into verified archives, restores them
with a staged directory swap that always keeps one complete copy on disk,
expires old backups by retention class and moves whole data sets between
hosts as migration bundles. Package name: srvbak.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from srvbak.builder import create_config
from srvbak.env import create_config_from_env

# Engine lifecycle and reads
from srvbak.core import (
    EngineState,
    get_engine_status,
    get_job,
    initialize_engine,
    list_jobs,
    shutdown_engine,
    wait_for_job,
)

# Orchestrators
from srvbak.backup import (
    RetentionResult,
    create_backup,
    delete_backup,
    enforce_retention,
    export_bundle,
    import_bundle,
    preview_backup,
    restore_backup,
)

# Collaborator interfaces
from srvbak.controller import (
    EventSink,
    LoggingEventSink,
    NullProcessController,
    ProcessController,
)

__all__ = [
    # Version
    "__version__",
    # Configuration
    "create_config",
    "create_config_from_env",
    # Engine
    "EngineState",
    "initialize_engine",
    "shutdown_engine",
    "get_job",
    "list_jobs",
    "wait_for_job",
    "get_engine_status",
    # Orchestrators
    "create_backup",
    "preview_backup",
    "delete_backup",
    "restore_backup",
    "export_bundle",
    "import_bundle",
    "enforce_retention",
    "RetentionResult",
    # Collaborators
    "ProcessController",
    "EventSink",
    "NullProcessController",
    "LoggingEventSink",
]
