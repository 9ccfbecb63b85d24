# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Orchestrators - Backup, restore, migration, retention and recovery.
"""

from srvbak.backup.manager import create_backup, delete_backup, preview_backup
from srvbak.backup.migration import export_bundle, import_bundle
from srvbak.backup.recovery import INTERRUPTED_MESSAGE, reconcile_interrupted_jobs
from srvbak.backup.restore import restore_backup
from srvbak.backup.retention import RetentionResult, enforce_retention

__all__ = [
    # Backups
    "create_backup",
    "preview_backup",
    "delete_backup",
    # Restores
    "restore_backup",
    # Migration
    "export_bundle",
    "import_bundle",
    # Retention
    "enforce_retention",
    "RetentionResult",
    # Recovery
    "reconcile_interrupted_jobs",
    "INTERRUPTED_MESSAGE",
]
