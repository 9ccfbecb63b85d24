# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Job Store - Durable backup, restore and migration job records.
"""

from srvbak.store.sqlite_store import (
    BACKUP,
    MIGRATION,
    RESTORE,
    BackupJobRecord,
    MigrationJobRecord,
    RestoreJobRecord,
    backup_in_use,
    delete_backup_job,
    get_backup_job,
    get_job,
    get_migration_job,
    get_store_stats,
    init_job_db,
    insert_backup_job,
    insert_migration_job,
    insert_restore_job,
    job_family,
    list_backup_jobs,
    list_jobs,
    list_unfinished_jobs,
    mark_failed,
    mark_running,
    mark_success,
    new_job_id,
    open_job_db,
    update_backup_job,
    update_job,
)

__all__ = [
    # Schema and connections
    "init_job_db",
    "open_job_db",
    "new_job_id",
    "job_family",
    # Families
    "BACKUP",
    "RESTORE",
    "MIGRATION",
    # Backup jobs
    "insert_backup_job",
    "get_backup_job",
    "update_backup_job",
    "list_backup_jobs",
    "delete_backup_job",
    # Restore jobs
    "insert_restore_job",
    "backup_in_use",
    # Migration jobs
    "insert_migration_job",
    "get_migration_job",
    # Lifecycle
    "get_job",
    "list_jobs",
    "mark_running",
    "mark_success",
    "mark_failed",
    "list_unfinished_jobs",
    "get_store_stats",
    "update_job",
    # Types
    "BackupJobRecord",
    "RestoreJobRecord",
    "MigrationJobRecord",
]
