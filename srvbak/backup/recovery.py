# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
srvbak Recovery - Reconcile jobs interrupted by a previous process.

Runs once at engine start-up, before any new job can take the writer lock.
Every job still pending or running is marked failed. Restores and imports
that were interrupted while swapping directories are rolled back to the
previous content; ones that had already applied everything keep the new
content and only lose their ``.old`` leftovers.
"""

import os
from typing import List

import aiofiles.os
import structlog

from srvbak.archive import ARCHIVE_SUFFIX
from srvbak.backup.restore import failed_path, old_path, remove_path
from srvbak.config import STAGING_PREFIX, EngineConfig, JobStatus
from srvbak.controller import emit_event
from srvbak.core import EngineState
from srvbak.store import (
    BACKUP,
    MIGRATION,
    RESTORE,
    job_family,
    list_unfinished_jobs,
    mark_failed,
    open_job_db,
)

logger = structlog.get_logger()

INTERRUPTED_MESSAGE = "interrupted: engine restarted while job was in flight"


def _applies_archive(job: dict) -> bool:
    family = job_family(job["id"])
    return family == RESTORE or (family == MIGRATION and job.get("direction") == "import")


async def _roll_back_roots(config: EngineConfig, job: dict) -> List[str]:
    """
    Put `.old` siblings back in place; returns the rolled back root names.

    Roots that did not exist before the swap get any new content moved
    aside to `.failed-<job_id>`.
    """
    rolled_back: List[str] = []
    absent = set(job["metadata"].get("absent_roots") or [])
    for name in job["metadata"].get("roots") or []:
        path = config.server_dir / name
        sibling = old_path(path)
        if name in absent:
            if os.path.lexists(path):
                await aiofiles.os.rename(path, failed_path(path, job["id"]))
                rolled_back.append(name)
            continue
        if not os.path.lexists(sibling):
            continue
        if os.path.lexists(path):
            await aiofiles.os.rename(path, failed_path(path, job["id"]))
        await aiofiles.os.rename(sibling, path)
        rolled_back.append(name)
        logger.warning("interrupted_restore_rolled_back", job_id=job["id"], root=name)

    return rolled_back


async def _discard_old_siblings(config: EngineConfig, job: dict) -> None:
    names = job["metadata"].get("roots") or []
    for name in names:
        sibling = old_path(config.server_dir / name)
        if os.path.lexists(sibling):
            await remove_path(sibling)


async def _remove_leftovers(config: EngineConfig, interrupted_backups: List[str]) -> List[str]:
    removed: List[str] = []

    staging_parent = config.effective_staging_dir
    if staging_parent.is_dir():
        for entry in staging_parent.iterdir():
            if entry.name.startswith(STAGING_PREFIX):
                await remove_path(entry)
                removed.append(str(entry))

    if config.archives_dir.is_dir():
        for entry in config.archives_dir.glob("*.tmp"):
            await aiofiles.os.remove(entry)
            removed.append(str(entry))

    for backup_id in interrupted_backups:
        archive = config.archives_dir / f"{backup_id}{ARCHIVE_SUFFIX}"
        if archive.exists():
            await aiofiles.os.remove(archive)
            removed.append(str(archive))

    for path in removed:
        logger.info("leftover_removed", path=path)
    return removed


async def reconcile_interrupted_jobs(config: EngineConfig, state: EngineState) -> List[str]:
    """
    Fail jobs left unfinished by a previous process and repair the data set.

    Returns:
        Ids of the jobs that were marked failed
    """
    async with open_job_db(state["db_path"]) as db:
        unfinished = await list_unfinished_jobs(db)

    reconciled: List[str] = []
    interrupted_backups: List[str] = []

    for job in unfinished:
        metadata = dict(job["metadata"])
        message = INTERRUPTED_MESSAGE

        if _applies_archive(job):
            phase = metadata.get("phase")
            if phase == "applied":
                await _discard_old_siblings(config, job)
                message += " (new content had been fully applied)"
            elif phase == "applying":
                metadata["rolled_back_roots"] = await _roll_back_roots(config, job)
                message += " (previous content was put back)"
        elif job_family(job["id"]) == BACKUP:
            interrupted_backups.append(job["id"])

        async with open_job_db(state["db_path"]) as db:
            await mark_failed(db, job["id"], message, metadata=metadata)

        emit_event(
            state["event_sink"],
            job_id=job["id"],
            family=job_family(job["id"]),
            status=JobStatus.FAILED,
            actor=job["actor"],
            error=message,
        )
        reconciled.append(job["id"])

    await _remove_leftovers(config, interrupted_backups)

    if reconciled:
        logger.warning("interrupted_jobs_reconciled", jobs=reconciled)
    return reconciled

