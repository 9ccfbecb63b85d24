# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
srvbak Restore - Apply an archive to the live data set.

Restores are staged: the archive is extracted next to the data set, then
each live root is renamed to ``<root>.old`` and the staged copy is renamed
into its place. Nothing is deleted until every swap has succeeded, so at
any moment either the previous or the new content of each root exists in
full. A failed swap reverses the completed ones and keeps the partially
applied content as ``<root>.failed-<job_id>``.

The same apply algorithm serves migration bundle imports.
"""

import asyncio
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

import aiofiles.os
import structlog

from srvbak.archive import read_manifest, unpack_archive
from srvbak.backup.manager import perform_backup, record_backup_job, require_archive
from srvbak.builder import coerce_kind
from srvbak.config import (
    CATEGORY_ORDER,
    FAILED_SUFFIX,
    OLD_SUFFIX,
    STAGING_PREFIX,
    BackupKind,
    EngineConfig,
    JobStatus,
    RetentionClass,
    SourceCategory,
    SourceRoot,
    categories_for,
)
from srvbak.controller import emit_event
from srvbak.core import EngineState
from srvbak.errors import describe_error, explain_scope_not_captured, explain_stale_siblings
from srvbak.exceptions import CaptureError, CorruptArchiveError, InvalidRequest, PartialApplyError
from srvbak.runner import spawn_job
from srvbak.store import (
    BACKUP,
    RESTORE,
    get_backup_job,
    get_job,
    insert_restore_job,
    job_family,
    mark_failed,
    mark_running,
    mark_success,
    new_job_id,
    open_job_db,
    update_job,
)

logger = structlog.get_logger()


def old_path(path: Path) -> Path:
    return path.with_name(path.name + OLD_SUFFIX)


def failed_path(path: Path, job_id: str) -> Path:
    return path.with_name(f"{path.name}{FAILED_SUFFIX}{job_id}")


def staging_path(config: EngineConfig, job_id: str) -> Path:
    return config.effective_staging_dir / f"{STAGING_PREFIX}{job_id}"


async def _move(src: Path, dst: Path) -> None:
    await aiofiles.os.rename(src, dst)


async def remove_path(path: Path) -> None:
    """Delete a file or a whole directory tree."""
    if path.is_dir() and not path.is_symlink():
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, shutil.rmtree, path)
    elif os.path.lexists(path):
        await aiofiles.os.remove(path)


def find_stale_siblings(roots: List[SourceRoot]) -> List[str]:
    """Return ``.old`` siblings left behind by an earlier restore."""
    return [str(old_path(root.path)) for root in roots if os.path.lexists(old_path(root.path))]


def roots_in_scope(
    config: EngineConfig,
    categories,
    manifest: dict | None = None,
) -> List[SourceRoot]:
    """
    Live roots a restore of ``categories`` replaces.

    That is every configured root of those categories plus any root the
    archive carries for them under a name not configured here.
    """
    roots = config.roots_for(categories)
    if manifest is not None:
        known = {root.name for root in roots}
        for captured in manifest["roots"]:
            category = SourceCategory(captured["category"])
            if category in categories and captured["name"] not in known:
                roots.append(
                    SourceRoot(category, captured["name"], config.server_dir / captured["name"])
                )
        roots.sort(key=lambda root: CATEGORY_ORDER.index(root.category))
    return roots


def _check_coverage(manifest: dict, categories, archive_path: Path) -> None:
    captured = {SourceCategory(c) for c in manifest["categories"]}
    if not set(categories) <= captured:
        raise CorruptArchiveError(
            "Archive does not cover the requested scope",
            details={
                "archive_path": str(archive_path),
                "captured": sorted(c.value for c in captured),
                "requested": sorted(c.value for c in categories),
            },
        )


async def restore_backup(
    config: EngineConfig,
    state: EngineState,
    backup_id: str,
    scope: str | BackupKind = BackupKind.FULL,
    actor: str = "system",
    take_safety_snapshot: bool = True,
) -> str:
    """
    Start a restore of a successful backup.

    Args:
        config: Engine configuration
        state: Runtime state
        backup_id: Backup to restore from
        scope: Which categories to replace (a backup kind)
        actor: Who requested the restore
        take_safety_snapshot: Capture a full "pre-restore" backup first

    Returns:
        The restore job id; the restore finishes in the background

    Raises:
        InvalidRequest: If the backup is missing, not successful, lacks an
            archive, did not capture ``scope``, or leftovers of an earlier
            restore are still in place
        Busy: If another mutating job is running (no record is created)
    """
    scope = coerce_kind(scope)
    categories = categories_for(scope)

    async with open_job_db(state["db_path"]) as db:
        backup = await get_backup_job(db, backup_id)

    archive_path = require_archive(backup)
    captured = categories_for(BackupKind(backup["kind"]))
    if not categories <= captured:
        raise InvalidRequest(
            explain_scope_not_captured(
                scope.value, [c.value for c in CATEGORY_ORDER if c in captured]
            ),
            details={"backup_id": backup_id},
        )

    stale = find_stale_siblings(config.roots_for(categories))
    if stale:
        raise InvalidRequest(explain_stale_siblings(stale), details={"paths": stale})

    job_id = new_job_id(RESTORE)
    state["lock"].try_acquire(job_id)
    try:
        async with open_job_db(state["db_path"]) as db:
            await insert_restore_job(
                db,
                job_id=job_id,
                backup_id=backup_id,
                restore_scope=scope,
                actor=actor,
                metadata={"take_safety_snapshot": take_safety_snapshot},
            )
    except Exception:
        state["lock"].release()
        raise

    emit_event(
        state["event_sink"],
        job_id=job_id,
        family=RESTORE,
        status=JobStatus.PENDING,
        actor=actor,
        backup_id=backup_id,
        scope=scope.value,
    )

    spawn_job(
        state["tasks"],
        job_id,
        run_apply_job(config, state, job_id, archive_path, scope, actor, take_safety_snapshot),
    )
    return job_id


async def run_apply_job(
    config: EngineConfig,
    state: EngineState,
    job_id: str,
    archive_path: Path,
    scope: BackupKind,
    actor: str,
    take_safety_snapshot: bool,
) -> None:
    """
    Job body shared by restores and bundle imports.

    The caller holds the writer lock; it is released here when the job ends.
    """
    try:
        await _apply_archive(config, state, job_id, archive_path, scope, actor, take_safety_snapshot)
    finally:
        state["lock"].release()


async def _take_safety_snapshot(
    config: EngineConfig,
    state: EngineState,
    job_id: str,
    actor: str,
) -> str:
    # Runs under the caller's writer lock; never re-acquires it
    snapshot_id = new_job_id(BACKUP)
    await record_backup_job(
        state,
        snapshot_id,
        BackupKind.FULL,
        RetentionClass.DAILY,
        actor,
        name="pre-restore",
        metadata={"pre_restore_for": job_id},
    )

    error = await perform_backup(config, state, snapshot_id, BackupKind.FULL, actor)
    if error is not None:
        raise CaptureError(
            f"Safety snapshot {snapshot_id} failed: {error}",
            details={"snapshot_id": snapshot_id},
        )

    logger.info("safety_snapshot_taken", job_id=job_id, snapshot_id=snapshot_id)
    return snapshot_id


async def _apply_archive(
    config: EngineConfig,
    state: EngineState,
    job_id: str,
    archive_path: Path,
    scope: BackupKind,
    actor: str,
    take_safety_snapshot: bool,
) -> None:
    controller = state["controller"]
    family = job_family(job_id)
    categories = categories_for(scope)
    staging = staging_path(config, job_id)
    snapshot_id: str | None = None
    was_running = False
    error: str | None = None
    metadata: Dict[str, Any] = {}

    async def _save_progress(**fields: Any) -> None:
        async with open_job_db(state["db_path"]) as db:
            await update_job(db, job_id, metadata=metadata, **fields)

    try:
        async with open_job_db(state["db_path"]) as db:
            record = await get_job(db, job_id)
            metadata.update(record["metadata"])
            await mark_running(db, job_id)

        logger.info(
            "restore_job_started",
            job_id=job_id,
            archive_path=str(archive_path),
            scope=scope.value,
        )

        if take_safety_snapshot:
            snapshot_id = await _take_safety_snapshot(config, state, job_id, actor)
            if family == RESTORE:
                await _save_progress(pre_restore_backup_id=snapshot_id)
            else:
                metadata["pre_restore_backup_id"] = snapshot_id
                await _save_progress()

        manifest = await read_manifest(archive_path)
        _check_coverage(manifest, categories, archive_path)
        roots = roots_in_scope(config, categories, manifest)

        stale = find_stale_siblings(roots)
        if stale:
            raise InvalidRequest(explain_stale_siblings(stale), details={"paths": stale})

        was_running = bool(await controller.stop())
        metadata["was_running"] = was_running

        unpacked = await unpack_archive(archive_path, staging)
        _check_coverage(unpacked, categories, archive_path)

        metadata["phase"] = "applying"
        metadata["roots"] = [root.name for root in roots]
        metadata["absent_roots"] = [root.name for root in roots if not os.path.lexists(root.path)]
        await _save_progress()

        await _swap_roots(roots, staging, unpacked, job_id, snapshot_id)

        metadata["phase"] = "applied"
        await _save_progress()

        cleanup_errors = await _discard_old_siblings(roots)
        if cleanup_errors:
            metadata["cleanup_errors"] = cleanup_errors

    except Exception as e:
        error = describe_error(e)
        logger.error(
            "restore_job_failed",
            job_id=job_id,
            error=error,
            error_type=type(e).__name__,
        )

    finally:
        if os.path.lexists(staging):
            try:
                await remove_path(staging)
            except OSError as e:
                logger.warning("staging_cleanup_failed", job_id=job_id, staging=str(staging), error=str(e))

        if was_running:
            try:
                await controller.start()
            except Exception as e:
                logger.error("restart_after_restore_failed", job_id=job_id, error=str(e))
                metadata["restart_error"] = describe_error(e)

    async with open_job_db(state["db_path"]) as db:
        if error is None:
            await mark_success(db, job_id, metadata=metadata)
        else:
            await mark_failed(db, job_id, error, metadata=metadata)

    if error is None:
        logger.info("restore_job_completed", job_id=job_id, pre_restore_backup_id=snapshot_id)

    emit_event(
        state["event_sink"],
        job_id=job_id,
        family=family,
        status=JobStatus.SUCCESS if error is None else JobStatus.FAILED,
        actor=actor,
        pre_restore_backup_id=snapshot_id,
        error=error,
    )


@dataclass
class _Swap:
    root: SourceRoot
    retired: bool = False  # Live content moved to <root>.old
    placed: bool = False  # Staged content moved to <root>


async def _swap_roots(
    roots: List[SourceRoot],
    staging: Path,
    manifest: dict,
    job_id: str,
    snapshot_id: str | None,
) -> None:
    """
    Replace each live root with its staged copy.

    Roots the archive does not carry are still retired to ``.old`` so the
    live set ends up matching the archive.

    Raises:
        PartialApplyError: If any rename fails; completed swaps are reversed
    """
    archived = {root["name"] for root in manifest["roots"]}
    completed: List[_Swap] = []
    current: SourceRoot | None = None

    try:
        for root in roots:
            current = root
            swap = _Swap(root)
            if os.path.lexists(root.path):
                await _move(root.path, old_path(root.path))
                swap.retired = True
            completed.append(swap)

            if root.name in archived:
                await _move(staging / root.name, root.path)
                swap.placed = True

            logger.debug("restore_root_swapped", job_id=job_id, root=root.name)

    except Exception as e:
        rollback_errors = await _roll_back(completed, job_id)
        recovery = (
            f"Pre-restore snapshot {snapshot_id} holds the previous state."
            if snapshot_id
            else "No pre-restore snapshot was taken."
        )
        raise PartialApplyError(
            f"Restore failed while swapping {current.name if current else 'roots'}: {e}. "
            f"{'Rollback incomplete. ' if rollback_errors else 'Previous content was put back. '}"
            f"{recovery}",
            details={
                "job_id": job_id,
                "pre_restore_backup_id": snapshot_id,
                "rollback_errors": rollback_errors,
            },
        ) from e


async def _roll_back(completed: List[_Swap], job_id: str) -> List[str]:
    errors: List[str] = []

    for swap in reversed(completed):
        path = swap.root.path
        try:
            if swap.placed:
                await _move(path, failed_path(path, job_id))
            if swap.retired:
                await _move(old_path(path), path)
            logger.info("restore_root_rolled_back", job_id=job_id, root=swap.root.name)
        except Exception as e:
            errors.append(f"{swap.root.name}: {e}")
            logger.error("restore_rollback_failed", job_id=job_id, root=swap.root.name, error=str(e))

    return errors


async def _discard_old_siblings(roots: List[SourceRoot]) -> List[str]:
    errors: List[str] = []
    for root in roots:
        sibling = old_path(root.path)
        if not os.path.lexists(sibling):
            continue
        try:
            await remove_path(sibling)
        except OSError as e:
            errors.append(f"{sibling}: {e}")
            logger.warning("old_sibling_cleanup_failed", path=str(sibling), error=str(e))
    return errors
