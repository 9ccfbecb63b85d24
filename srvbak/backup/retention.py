# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
srvbak Retention - Expire old successful backups per retention class.

Deletion order is archive file first, then record. A crash in between leaves
at worst a record pointing at a missing file, which the next sweep removes.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from typing import List

import aiofiles.os
import structlog

from srvbak.builder import coerce_retention_class
from srvbak.config import BackupKind, EngineConfig, JobStatus, RetentionClass
from srvbak.controller import emit_event
from srvbak.core import EngineState
from srvbak.store import BACKUP, backup_in_use, delete_backup_job, list_backup_jobs, open_job_db

logger = structlog.get_logger()


@dataclass
class RetentionResult:
    """Result of one retention sweep."""

    retention_class: str
    max_age_days: int | None
    examined: int = 0
    deleted: List[str] = field(default_factory=list)
    orphaned_records: List[str] = field(default_factory=list)  # Archive was already gone
    skipped_in_use: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def _completed_at(record: dict) -> datetime:
    value = datetime.fromisoformat(record["completed_at"] or record["created_at"])
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


async def enforce_retention(
    config: EngineConfig,
    state: EngineState,
    retention_class: str | RetentionClass,
    now: datetime | None = None,
) -> RetentionResult:
    """
    Delete successful backups of a class that are older than its max age.

    Age is measured from completion. A backup is deleted once its age is
    strictly greater than the max age. Permanent backups and migration
    bundles are never deleted, and a backup that a pending or running
    restore reads from is skipped.

    Args:
        config: Engine configuration (holds the max age table)
        state: Runtime state
        retention_class: Class to sweep
        now: Reference time (default: current UTC time)

    Returns:
        RetentionResult describing what was deleted or skipped

    Raises:
        InvalidRequest: If retention_class is unknown
    """
    retention_class = coerce_retention_class(retention_class)
    max_age_days = config.max_age_days(retention_class)
    result = RetentionResult(retention_class=retention_class.value, max_age_days=max_age_days)

    if max_age_days is None:
        logger.debug("retention_class_never_expires", retention_class=retention_class.value)
        return result

    now = now or datetime.now(UTC)
    max_age = timedelta(days=max_age_days)

    async with open_job_db(state["db_path"]) as db:
        records = await list_backup_jobs(
            db,
            status=JobStatus.SUCCESS,
            retention_class=retention_class,
            limit=-1,
        )

        for record in records:
            result.examined += 1

            if record["kind"] == BackupKind.MIGRATION.value:
                continue
            if now - _completed_at(record) <= max_age:
                continue
            if await backup_in_use(db, record["id"]):
                result.skipped_in_use.append(record["id"])
                logger.info("retention_skipped_in_use", backup_id=record["id"])
                continue

            try:
                archive_path = record["archive_path"]
                if archive_path and await aiofiles.os.path.exists(archive_path):
                    await aiofiles.os.remove(archive_path)
                else:
                    result.orphaned_records.append(record["id"])

                await delete_backup_job(db, record["id"])
                result.deleted.append(record["id"])

            except Exception as e:
                result.errors.append(f"{record['id']}: {e}")
                logger.error("retention_delete_failed", backup_id=record["id"], error=str(e))
                continue

            emit_event(
                state["event_sink"],
                job_id=record["id"],
                family=BACKUP,
                status="expired",
                actor="retention",
                retention_class=retention_class.value,
            )

    logger.info(
        "retention_enforced",
        retention_class=retention_class.value,
        max_age_days=max_age_days,
        examined=result.examined,
        deleted=len(result.deleted),
        orphaned=len(result.orphaned_records),
        skipped=len(result.skipped_in_use),
    )
    return result
