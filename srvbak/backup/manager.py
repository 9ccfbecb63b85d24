# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
srvbak Backup Manager - Capture the live data set into an archive.

create_backup() validates, takes the writer lock, records a pending job and
returns its id; the capture itself runs as a background task. The live
process is resumed after every capture attempt, whatever its outcome.
"""

from pathlib import Path
from typing import Any, Dict

import aiofiles.os
import structlog

from srvbak.archive import ARCHIVE_SUFFIX, pack_archive, read_manifest, summarize_manifest
from srvbak.builder import coerce_kind, coerce_retention_class
from srvbak.config import (
    CATEGORY_ORDER,
    BackupKind,
    EngineConfig,
    JobStatus,
    RetentionClass,
    SourceCategory,
    categories_for,
)
from srvbak.controller import emit_event
from srvbak.core import EngineState
from srvbak.errors import describe_error
from srvbak.exceptions import CorruptArchiveError, InvalidRequest
from srvbak.runner import spawn_job
from srvbak.store import (
    BACKUP,
    backup_in_use,
    delete_backup_job,
    get_backup_job,
    insert_backup_job,
    mark_failed,
    mark_running,
    mark_success,
    new_job_id,
    open_job_db,
)

logger = structlog.get_logger()


def archive_path_for(state: EngineState, job_id: str) -> Path:
    """Final archive location for a backup job."""
    return state["archives_dir"] / f"{job_id}{ARCHIVE_SUFFIX}"


def _ordered_categories(kind: BackupKind) -> list[str]:
    categories = categories_for(kind)
    return [c.value for c in CATEGORY_ORDER if c in categories]


async def create_backup(
    config: EngineConfig,
    state: EngineState,
    kind: str | BackupKind = BackupKind.FULL,
    retention_class: str | RetentionClass = RetentionClass.DAILY,
    name: str | None = None,
    actor: str = "system",
) -> str:
    """
    Start a backup job.

    Args:
        config: Engine configuration
        state: Runtime state
        kind: What to capture
        retention_class: How long the archive is kept
        name: Optional human label
        actor: Who requested the backup

    Returns:
        The backup job id. The job finishes in the background; poll
        get_job() or wait_for_job() for the outcome.

    Raises:
        InvalidRequest: If kind or retention_class is unknown
        Busy: If another mutating job is running (no record is created)
    """
    kind = coerce_kind(kind)
    retention_class = coerce_retention_class(retention_class)

    job_id = new_job_id(BACKUP)
    state["lock"].try_acquire(job_id)
    try:
        await record_backup_job(
            state, job_id, kind, retention_class, actor, name=name
        )
    except Exception:
        state["lock"].release()
        raise

    spawn_job(
        state["tasks"],
        job_id,
        _run_backup_job(config, state, job_id, kind, retention_class, actor),
    )
    return job_id


async def record_backup_job(
    state: EngineState,
    job_id: str,
    kind: BackupKind,
    retention_class: RetentionClass,
    actor: str,
    name: str | None = None,
    metadata: Dict[str, Any] | None = None,
) -> None:
    """Insert a pending backup record and announce it."""
    async with open_job_db(state["db_path"]) as db:
        await insert_backup_job(
            db,
            job_id=job_id,
            kind=kind,
            retention_class=retention_class,
            actor=actor,
            name=name,
            metadata=metadata,
        )

    emit_event(
        state["event_sink"],
        job_id=job_id,
        family=BACKUP,
        status=JobStatus.PENDING,
        actor=actor,
        backup_kind=kind.value,
        retention_class=retention_class.value,
        name=name,
    )


async def _run_backup_job(
    config: EngineConfig,
    state: EngineState,
    job_id: str,
    kind: BackupKind,
    retention_class: RetentionClass,
    actor: str,
) -> None:
    try:
        error = await perform_backup(config, state, job_id, kind, actor)
    finally:
        state["lock"].release()

    if error is None and config.max_age_days(retention_class) is not None:
        from srvbak.backup.retention import enforce_retention

        try:
            await enforce_retention(config, state, retention_class)
        except Exception as e:
            logger.error(
                "retention_after_backup_failed",
                job_id=job_id,
                retention_class=retention_class.value,
                error=str(e),
            )


async def perform_backup(
    config: EngineConfig,
    state: EngineState,
    job_id: str,
    kind: BackupKind,
    actor: str,
) -> str | None:
    """
    Run the capture for an already recorded backup job.

    The caller must hold the writer lock. The job record ends in success or
    failed; this never raises for capture problems.

    Returns:
        None on success, otherwise the error message recorded on the job
    """
    controller = state["controller"]
    categories = categories_for(kind)
    destination = archive_path_for(state, job_id)
    result = None
    error: str | None = None
    run_metadata: Dict[str, Any] = {}

    try:
        needs_quiesce = SourceCategory.PRIMARY_DATA in categories or any(
            controller.actively_writes(category) for category in categories
        )

        async with open_job_db(state["db_path"]) as db:
            await mark_running(db, job_id)

        logger.info("backup_job_started", job_id=job_id, kind=kind.value, quiesce=needs_quiesce)

        try:
            if needs_quiesce:
                try:
                    await controller.quiesce()
                    run_metadata["quiesced"] = True
                except Exception as e:
                    # Capture proceeds; the archive may hold in-flight writes
                    logger.warning("backup_quiesce_failed", job_id=job_id, error=str(e))
                    run_metadata["quiesce_error"] = describe_error(e)

            result = await pack_archive(
                config.roots_for(categories),
                destination,
                header={
                    "job_id": job_id,
                    "kind": kind.value,
                    "categories": _ordered_categories(kind),
                    "actor": actor,
                    "service_name": config.service_name,
                    "service_version": config.service_version,
                },
                zstd_level=config.zstd_level,
            )
        finally:
            try:
                await controller.resume()
            except Exception as e:
                logger.error("backup_resume_failed", job_id=job_id, error=str(e))
                run_metadata["resume_error"] = describe_error(e)

    except Exception as e:
        error = describe_error(e)
        logger.error(
            "backup_job_failed",
            job_id=job_id,
            error=error,
            error_type=type(e).__name__,
        )

    return await _finish_backup(state, job_id, actor, result, error, run_metadata)


async def _finish_backup(
    state: EngineState,
    job_id: str,
    actor: str,
    result,
    error: str | None,
    run_metadata: Dict[str, Any],
) -> str | None:
    try:
        async with open_job_db(state["db_path"]) as db:
            record = await get_backup_job(db, job_id)
            metadata = {**record["metadata"], **run_metadata}

            if error is None:
                summary = summarize_manifest(result.manifest)
                metadata.update({
                    "roots": summary["roots"],
                    "missing_roots": result.manifest["missing_roots"],
                    "categories": result.manifest["categories"],
                    "total_files": summary["total_files"],
                    "total_bytes": summary["total_bytes"],
                })
                await mark_success(
                    db,
                    job_id,
                    archive_path=str(result.archive_path),
                    archive_size_bytes=result.size_bytes,
                    metadata=metadata,
                )
            else:
                await mark_failed(db, job_id, error, metadata=metadata)

    except Exception as e:
        # Never leave an archive behind that no successful record points at
        if result is not None and await aiofiles.os.path.exists(result.archive_path):
            await aiofiles.os.remove(result.archive_path)
        logger.error("backup_job_finalize_failed", job_id=job_id, error=str(e))
        error = error or describe_error(e)
        async with open_job_db(state["db_path"]) as db:
            await mark_failed(db, job_id, error)

    status = JobStatus.SUCCESS if error is None else JobStatus.FAILED
    if error is None:
        logger.info(
            "backup_job_completed",
            job_id=job_id,
            archive_path=str(result.archive_path),
            size=result.size_bytes,
        )

    emit_event(
        state["event_sink"],
        job_id=job_id,
        family=BACKUP,
        status=status,
        actor=actor,
        error=error,
    )
    return error


async def preview_backup(config: EngineConfig, state: EngineState, backup_id: str) -> dict:
    """
    List what a successful backup contains without extracting it.

    Returns:
        Dict with the backup id, kind, captured categories and roots, the
        manifest entries and a per-category summary

    Raises:
        InvalidRequest: If the backup does not exist, did not succeed or its
            archive is missing or unreadable
    """
    async with open_job_db(state["db_path"]) as db:
        record = await get_backup_job(db, backup_id)

    archive_path = require_archive(record)
    try:
        manifest = await read_manifest(archive_path)
    except CorruptArchiveError as e:
        raise InvalidRequest(
            f"Archive for {backup_id} cannot be read: {e.message}",
            details={"backup_id": backup_id, "archive_path": str(archive_path)},
        ) from e

    return {
        "backup_id": backup_id,
        "kind": record["kind"],
        "name": record["name"],
        "created_at": manifest.get("created_at"),
        "categories": manifest["categories"],
        "roots": manifest["roots"],
        "entries": [
            {
                "path": entry["path"],
                "type": entry["type"],
                "category": entry.get("category"),
                "size": entry["size"],
                "mtime": entry["mtime"],
            }
            for entry in manifest["entries"]
        ],
        "summary": summarize_manifest(manifest),
    }


def require_archive(record: dict) -> Path:
    if record["status"] != JobStatus.SUCCESS.value:
        raise InvalidRequest(
            f"Backup {record['id']} is not usable (status: {record['status']})",
            details={"backup_id": record["id"]},
        )
    archive_path = Path(record["archive_path"])
    if not archive_path.is_file():
        raise InvalidRequest(
            f"Archive for backup {record['id']} is missing: {archive_path}",
            details={"backup_id": record["id"]},
        )
    return archive_path


async def delete_backup(
    config: EngineConfig,
    state: EngineState,
    backup_id: str,
    actor: str = "system",
) -> None:
    """
    Delete a finished backup: archive file first, then its record.

    Raises:
        JobNotFoundError: If the backup does not exist
        InvalidRequest: If the backup is still running or a pending/running
            restore reads from it
    """
    async with open_job_db(state["db_path"]) as db:
        record = await get_backup_job(db, backup_id)

        if record["status"] not in (JobStatus.SUCCESS.value, JobStatus.FAILED.value):
            raise InvalidRequest(
                f"Backup {backup_id} is still {record['status']}",
                details={"backup_id": backup_id},
            )
        if await backup_in_use(db, backup_id):
            raise InvalidRequest(
                f"Backup {backup_id} is being restored",
                details={"backup_id": backup_id},
            )

        if record["archive_path"] and await aiofiles.os.path.exists(record["archive_path"]):
            await aiofiles.os.remove(record["archive_path"])
        await delete_backup_job(db, backup_id)

    logger.info("backup_deleted", backup_id=backup_id, actor=actor)
    emit_event(
        state["event_sink"],
        job_id=backup_id,
        family=BACKUP,
        status="deleted",
        actor=actor,
    )
