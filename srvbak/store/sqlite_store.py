# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
srvbak Job Store - Durable records for backup, restore and migration jobs.

One table per job family. Every write commits immediately and the database
runs with WAL journaling and synchronous=FULL, so a record that a caller has
seen is on disk before the orchestrator performs its next side effect.

Job ids carry their family as a prefix (``backup-``, ``restore-``,
``migration-``) followed by a ULID, which lets get_job() dispatch without
probing every table.
"""

import json
from contextlib import asynccontextmanager
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Tuple, TypedDict

import aiosqlite
import structlog
from ulid import ULID

from srvbak.config import JobStatus
from srvbak.exceptions import JobNotFoundError, JobStoreError

logger = structlog.get_logger()

BACKUP = "backup"
RESTORE = "restore"
MIGRATION = "migration"


class BackupJobRecord(TypedDict):
    """Record of a backup job."""

    id: str
    name: str | None
    kind: str
    status: str
    created_at: str  # ISO 8601
    started_at: str | None
    completed_at: str | None
    actor: str
    archive_path: str | None
    archive_size_bytes: int | None
    retention_class: str
    metadata: dict
    error_message: str | None


class RestoreJobRecord(TypedDict):
    """Record of a restore job."""

    id: str
    backup_id: str
    status: str
    created_at: str
    started_at: str | None
    completed_at: str | None
    actor: str
    restore_scope: str
    pre_restore_backup_id: str | None
    metadata: dict
    error_message: str | None


class MigrationJobRecord(TypedDict):
    """Record of a migration export or import."""

    id: str
    direction: str
    status: str
    created_at: str
    started_at: str | None
    completed_at: str | None
    actor: str
    bundle_path: str | None
    source_bundle_path: str | None
    metadata: dict
    error_message: str | None


_TABLES: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    BACKUP: (
        "backup_jobs",
        (
            "id", "name", "kind", "status", "created_at", "started_at",
            "completed_at", "actor", "archive_path", "archive_size_bytes",
            "retention_class", "metadata", "error_message",
        ),
    ),
    RESTORE: (
        "restore_jobs",
        (
            "id", "backup_id", "status", "created_at", "started_at",
            "completed_at", "actor", "restore_scope", "pre_restore_backup_id",
            "metadata", "error_message",
        ),
    ),
    MIGRATION: (
        "migration_jobs",
        (
            "id", "direction", "status", "created_at", "started_at",
            "completed_at", "actor", "bundle_path", "source_bundle_path",
            "metadata", "error_message",
        ),
    ),
}

# Family-specific columns list_jobs accepts as filters
_LIST_FILTERS: Dict[str, Tuple[str, ...]] = {
    BACKUP: ("kind", "retention_class"),
    RESTORE: ("backup_id",),
    MIGRATION: ("direction",),
}


def _now() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


def new_job_id(family: str) -> str:
    """Generate a job id for the given family."""
    return f"{family}-{ULID()}"


def job_family(job_id: str) -> str:
    """
    Return the family encoded in a job id.

    Raises:
        JobNotFoundError: If the id does not carry a known family prefix
    """
    family = job_id.split("-", 1)[0]
    if family not in _TABLES:
        raise JobNotFoundError(f"Job not found: {job_id}", details={"job_id": job_id})
    return family


async def init_job_db(db_path: Path) -> None:
    """
    Initialize the job database schema.

    Creates tables if they don't exist. This is idempotent.

    Args:
        db_path: Path to the SQLite database file
    """
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")

            await db.execute("""
                CREATE TABLE IF NOT EXISTS backup_jobs (
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    kind TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    actor TEXT NOT NULL,
                    archive_path TEXT,
                    archive_size_bytes INTEGER,
                    retention_class TEXT NOT NULL DEFAULT 'daily',
                    metadata TEXT NOT NULL DEFAULT '{}',
                    error_message TEXT
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS restore_jobs (
                    id TEXT PRIMARY KEY,
                    backup_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    actor TEXT NOT NULL,
                    restore_scope TEXT NOT NULL,
                    pre_restore_backup_id TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    error_message TEXT
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS migration_jobs (
                    id TEXT PRIMARY KEY,
                    direction TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    actor TEXT NOT NULL,
                    bundle_path TEXT,
                    source_bundle_path TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    error_message TEXT
                )
            """)

            for table in ("backup_jobs", "restore_jobs", "migration_jobs"):
                await db.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_created
                    ON {table}(created_at DESC)
                """)
                await db.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_status
                    ON {table}(status)
                """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_restore_jobs_backup_id
                ON restore_jobs(backup_id)
            """)

            await db.commit()

        logger.info("job_db_initialized", db_path=str(db_path))

    except Exception as e:
        raise JobStoreError(
            f"Failed to initialize job database: {e}",
            details={"db_path": str(db_path)},
        )


@asynccontextmanager
async def open_job_db(db_path: Path) -> AsyncIterator[aiosqlite.Connection]:
    """Open a connection with durable write settings and dict-like rows."""
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA synchronous=FULL")
        yield db


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    if isinstance(value, Path):
        return str(value)
    return value


def _decode(row: aiosqlite.Row) -> dict:
    record = dict(row)
    record["metadata"] = json.loads(record.get("metadata") or "{}")
    return record


async def _insert(db: aiosqlite.Connection, family: str, fields: Dict[str, Any]) -> str:
    table, columns = _TABLES[family]
    unknown = set(fields) - set(columns)
    if unknown:
        raise JobStoreError(f"Unknown columns for {table}: {sorted(unknown)}")

    fields.setdefault("metadata", {})
    names = list(fields)
    placeholders = ", ".join("?" for _ in names)
    await db.execute(
        f"INSERT INTO {table} ({', '.join(names)}) VALUES ({placeholders})",
        [_encode(fields[name]) for name in names],
    )
    await db.commit()
    return fields["id"]


async def _update(db: aiosqlite.Connection, family: str, job_id: str, fields: Dict[str, Any]) -> None:
    table, columns = _TABLES[family]
    unknown = set(fields) - set(columns) | ({"id"} & set(fields))
    if unknown:
        raise JobStoreError(f"Cannot update columns of {table}: {sorted(unknown)}")
    if not fields:
        return

    assignments = ", ".join(f"{name} = ?" for name in fields)
    cursor = await db.execute(
        f"UPDATE {table} SET {assignments} WHERE id = ?",
        [_encode(value) for value in fields.values()] + [job_id],
    )
    await db.commit()

    if cursor.rowcount == 0:
        raise JobNotFoundError(f"Job not found: {job_id}", details={"job_id": job_id})


async def _get(db: aiosqlite.Connection, family: str, job_id: str) -> dict:
    table, _ = _TABLES[family]
    async with db.execute(f"SELECT * FROM {table} WHERE id = ?", (job_id,)) as cursor:
        row = await cursor.fetchone()

    if row is None:
        raise JobNotFoundError(f"Job not found: {job_id}", details={"job_id": job_id})
    return _decode(row)


async def _list(
    db: aiosqlite.Connection,
    family: str,
    filters: Dict[str, Any],
    limit: int,
    offset: int,
) -> List[dict]:
    table, _ = _TABLES[family]
    query = f"SELECT * FROM {table}"
    params: List = []

    clauses = []
    for column, value in filters.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set, frozenset)):
            values = [_encode(v) for v in value]
            clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        else:
            clauses.append(f"{column} = ?")
            params.append(_encode(value))
    if clauses:
        query += " WHERE " + " AND ".join(clauses)

    query += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    records: List[dict] = []
    async with db.execute(query, params) as cursor:
        async for row in cursor:
            records.append(_decode(row))
    return records


# ============================================================================
# Backup jobs
# ============================================================================

async def insert_backup_job(
    db: aiosqlite.Connection,
    *,
    kind: str,
    retention_class: str,
    actor: str,
    name: str | None = None,
    metadata: dict | None = None,
    job_id: str | None = None,
) -> str:
    """
    Record a new backup job in pending state.

    Returns:
        The job id
    """
    job_id = await _insert(db, BACKUP, {
        "id": job_id or new_job_id(BACKUP),
        "name": name,
        "kind": kind,
        "status": JobStatus.PENDING,
        "created_at": _now(),
        "actor": actor,
        "retention_class": retention_class,
        "metadata": metadata or {},
    })
    logger.debug("backup_job_recorded", job_id=job_id, kind=_encode(kind))
    return job_id


async def get_backup_job(db: aiosqlite.Connection, job_id: str) -> BackupJobRecord:
    """
    Get a backup job.

    Raises:
        JobNotFoundError: If no such job exists
    """
    return await _get(db, BACKUP, job_id)  # type: ignore[return-value]


async def update_backup_job(db: aiosqlite.Connection, job_id: str, **fields: Any) -> None:
    """Update columns of a backup job."""
    await _update(db, BACKUP, job_id, fields)


async def list_backup_jobs(
    db: aiosqlite.Connection,
    *,
    status: str | List[str] | None = None,
    kind: str | List[str] | None = None,
    retention_class: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> List[BackupJobRecord]:
    """
    List backup jobs, newest first.

    Args:
        db: SQLite database connection
        status: Optional status (or list of statuses) filter
        kind: Optional kind (or list of kinds) filter
        retention_class: Optional retention class filter
        limit: Maximum number of records to return
        offset: Number of records to skip
    """
    return await _list(  # type: ignore[return-value]
        db,
        BACKUP,
        {"status": status, "kind": kind, "retention_class": retention_class},
        limit,
        offset,
    )


async def delete_backup_job(db: aiosqlite.Connection, job_id: str) -> bool:
    """
    Delete a backup job record.

    Returns:
        True if a record was deleted
    """
    cursor = await db.execute("DELETE FROM backup_jobs WHERE id = ?", (job_id,))
    await db.commit()
    return cursor.rowcount > 0


# ============================================================================
# Restore jobs
# ============================================================================

async def insert_restore_job(
    db: aiosqlite.Connection,
    *,
    backup_id: str,
    restore_scope: str,
    actor: str,
    metadata: dict | None = None,
    job_id: str | None = None,
) -> str:
    """Record a new restore job in pending state."""
    return await _insert(db, RESTORE, {
        "id": job_id or new_job_id(RESTORE),
        "backup_id": backup_id,
        "status": JobStatus.PENDING,
        "created_at": _now(),
        "actor": actor,
        "restore_scope": restore_scope,
        "metadata": metadata or {},
    })


async def backup_in_use(db: aiosqlite.Connection, backup_id: str) -> bool:
    """Return True if a pending or running restore reads from this backup."""
    async with db.execute(
        """
        SELECT 1 FROM restore_jobs
        WHERE backup_id = ? AND status IN (?, ?)
        LIMIT 1
        """,
        (backup_id, JobStatus.PENDING.value, JobStatus.RUNNING.value),
    ) as cursor:
        return await cursor.fetchone() is not None


# ============================================================================
# Migration jobs
# ============================================================================

async def insert_migration_job(
    db: aiosqlite.Connection,
    *,
    direction: str,
    actor: str,
    bundle_path: str | None = None,
    source_bundle_path: str | None = None,
    metadata: dict | None = None,
    job_id: str | None = None,
) -> str:
    """Record a new migration job in pending state."""
    return await _insert(db, MIGRATION, {
        "id": job_id or new_job_id(MIGRATION),
        "direction": direction,
        "status": JobStatus.PENDING,
        "created_at": _now(),
        "actor": actor,
        "bundle_path": bundle_path,
        "source_bundle_path": source_bundle_path,
        "metadata": metadata or {},
    })


async def get_migration_job(db: aiosqlite.Connection, job_id: str) -> MigrationJobRecord:
    """Get a migration job or raise JobNotFoundError."""
    return await _get(db, MIGRATION, job_id)  # type: ignore[return-value]


# ============================================================================
# Family-agnostic access and lifecycle transitions
# ============================================================================

async def get_job(db: aiosqlite.Connection, job_id: str) -> dict:
    """
    Get any job by id, dispatching on its family prefix.

    Raises:
        JobNotFoundError: If no such job exists
    """
    return await _get(db, job_family(job_id), job_id)


async def list_jobs(
    db: aiosqlite.Connection,
    family: str,
    *,
    status: str | List[str] | None = None,
    limit: int = 50,
    offset: int = 0,
    **filters: Any,
) -> List[dict]:
    """
    List jobs of one family, newest first.

    Extra keyword filters are family-specific columns: ``kind`` and
    ``retention_class`` for backups, ``backup_id`` for restores and
    ``direction`` for migrations.

    Raises:
        JobStoreError: If the family or a filter column is unknown
    """
    if family not in _TABLES:
        raise JobStoreError(f"Unknown job family: {family}")

    unknown = set(filters) - set(_LIST_FILTERS[family])
    if unknown:
        raise JobStoreError(
            f"Cannot filter {family} jobs by: {', '.join(sorted(unknown))}",
            details={"family": family, "filters": sorted(unknown)},
        )

    return await _list(db, family, {"status": status, **filters}, limit, offset)


async def mark_running(db: aiosqlite.Connection, job_id: str) -> None:
    """Transition a job to running."""
    await _update(db, job_family(job_id), job_id, {
        "status": JobStatus.RUNNING,
        "started_at": _now(),
    })


async def mark_success(db: aiosqlite.Connection, job_id: str, **fields: Any) -> None:
    """Transition a job to success; error_message is cleared."""
    await _update(db, job_family(job_id), job_id, {
        **fields,
        "status": JobStatus.SUCCESS,
        "completed_at": _now(),
        "error_message": None,
    })


async def mark_failed(db: aiosqlite.Connection, job_id: str, error_message: str, **fields: Any) -> None:
    """
    Transition a job to failed.

    A failed backup never references an archive, so archive_path and
    archive_size_bytes are cleared for backup jobs.
    """
    family = job_family(job_id)
    update = {
        **fields,
        "status": JobStatus.FAILED,
        "completed_at": _now(),
        "error_message": error_message or "unknown error",
    }
    if family == BACKUP:
        update["archive_path"] = None
        update["archive_size_bytes"] = None
    await _update(db, family, job_id, update)


async def list_unfinished_jobs(db: aiosqlite.Connection) -> List[dict]:
    """Return every job still pending or running, across all families."""
    unfinished: List[dict] = []
    for family in (BACKUP, RESTORE, MIGRATION):
        unfinished.extend(
            await _list(
                db,
                family,
                {"status": [JobStatus.PENDING, JobStatus.RUNNING]},
                limit=-1,
                offset=0,
            )
        )
    return unfinished


async def get_store_stats(db: aiosqlite.Connection) -> dict:
    """
    Get job store statistics.

    Returns:
        Dict with job counts per family and status, plus archive totals
    """
    stats: dict = {"jobs": {}}

    for family, (table, _) in _TABLES.items():
        async with db.execute(
            f"SELECT status, COUNT(*) FROM {table} GROUP BY status"
        ) as cursor:
            stats["jobs"][family] = {row[0]: row[1] async for row in cursor}

    async with db.execute(
        "SELECT COUNT(*), SUM(archive_size_bytes) FROM backup_jobs WHERE status = ?",
        (JobStatus.SUCCESS.value,),
    ) as cursor:
        row = await cursor.fetchone()
        stats["archive_count"] = row[0] if row else 0
        stats["archive_bytes"] = (row[1] or 0) if row else 0

    return stats


async def update_job(db: aiosqlite.Connection, job_id: str, **fields: Any) -> None:
    """Update columns of a job of any family."""
    await _update(db, job_family(job_id), job_id, fields)
