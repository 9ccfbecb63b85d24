# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
srvbak Migration - Move the whole data set between hosts as a bundle.

An export is a full capture stored as a migration-kind backup: permanent,
exempt from retention and tagged with the service name and version. An
import validates a bundle produced elsewhere and applies it with the
restore algorithm, scope full.
"""

from pathlib import Path
from typing import List

import structlog

from srvbak.archive import read_manifest
from srvbak.backup.manager import perform_backup, record_backup_job
from srvbak.backup.restore import find_stale_siblings, roots_in_scope, run_apply_job
from srvbak.config import (
    ALL_CATEGORIES,
    BackupKind,
    EngineConfig,
    JobStatus,
    MigrationDirection,
    RetentionClass,
    SourceCategory,
)
from srvbak.controller import emit_event
from srvbak.core import EngineState
from srvbak.errors import explain_stale_siblings
from srvbak.exceptions import CorruptArchiveError, InvalidRequest
from srvbak.runner import spawn_job
from srvbak.store import (
    BACKUP,
    MIGRATION,
    get_backup_job,
    get_migration_job,
    insert_migration_job,
    mark_failed,
    mark_running,
    mark_success,
    new_job_id,
    open_job_db,
)

logger = structlog.get_logger()


async def export_bundle(
    config: EngineConfig,
    state: EngineState,
    actor: str = "system",
    name: str | None = None,
) -> str:
    """
    Start a migration export.

    Two records are created: the MigrationJob whose id is returned, and the
    migration-kind BackupJob that owns the bundle archive (its id is in the
    migration's ``metadata["backup_id"]``).

    Raises:
        Busy: If another mutating job is running (no record is created)
    """
    migration_id = new_job_id(MIGRATION)
    backup_id = new_job_id(BACKUP)
    service = {
        "service_name": config.service_name,
        "service_version": config.service_version,
    }

    state["lock"].try_acquire(migration_id)
    try:
        async with open_job_db(state["db_path"]) as db:
            await insert_migration_job(
                db,
                job_id=migration_id,
                direction=MigrationDirection.EXPORT,
                actor=actor,
                metadata={**service, "backup_id": backup_id},
            )
        await record_backup_job(
            state,
            backup_id,
            BackupKind.MIGRATION,
            RetentionClass.PERMANENT,
            actor,
            name=name or "migration-export",
            metadata={**service, "migration_id": migration_id},
        )
    except Exception:
        state["lock"].release()
        raise

    emit_event(
        state["event_sink"],
        job_id=migration_id,
        family=MIGRATION,
        status=JobStatus.PENDING,
        actor=actor,
        direction=MigrationDirection.EXPORT.value,
        backup_id=backup_id,
    )

    spawn_job(
        state["tasks"],
        migration_id,
        _run_export(config, state, migration_id, backup_id, actor),
        aliases=(backup_id,),
    )
    return migration_id


async def _run_export(
    config: EngineConfig,
    state: EngineState,
    migration_id: str,
    backup_id: str,
    actor: str,
) -> None:
    try:
        async with open_job_db(state["db_path"]) as db:
            await mark_running(db, migration_id)

        error = await perform_backup(config, state, backup_id, BackupKind.MIGRATION, actor)

        async with open_job_db(state["db_path"]) as db:
            migration = await get_migration_job(db, migration_id)
            if error is None:
                backup = await get_backup_job(db, backup_id)
                await mark_success(
                    db,
                    migration_id,
                    bundle_path=backup["archive_path"],
                    metadata={
                        **migration["metadata"],
                        "bundle_size_bytes": backup["archive_size_bytes"],
                    },
                )
            else:
                await mark_failed(db, migration_id, error)
    finally:
        state["lock"].release()

    logger.info("migration_export_finished", migration_id=migration_id, error=error)
    emit_event(
        state["event_sink"],
        job_id=migration_id,
        family=MIGRATION,
        status=JobStatus.SUCCESS if error is None else JobStatus.FAILED,
        actor=actor,
        direction=MigrationDirection.EXPORT.value,
        error=error,
    )


def compatibility_warnings(config: EngineConfig, manifest: dict) -> List[str]:
    """
    Compare a bundle's service tags with this deployment.

    Mismatches are reported, never enforced.
    """
    warnings: List[str] = []

    bundle_name = manifest.get("service_name")
    if bundle_name and bundle_name != config.service_name:
        warnings.append(
            f"Bundle was exported from service {bundle_name!r}, "
            f"this engine manages {config.service_name!r}"
        )

    bundle_version = manifest.get("service_version")
    if bundle_version and bundle_version != config.service_version:
        warnings.append(
            f"Bundle service version {bundle_version} differs from "
            f"current version {config.service_version}"
        )

    if manifest.get("kind") != BackupKind.MIGRATION.value:
        warnings.append(
            f"Archive is a {manifest.get('kind')!r} backup, not a migration bundle"
        )

    return warnings


async def import_bundle(
    config: EngineConfig,
    state: EngineState,
    bundle_path: str | Path,
    actor: str = "system",
    take_safety_snapshot: bool = True,
) -> str:
    """
    Start a migration import of a bundle file.

    Args:
        config: Engine configuration
        state: Runtime state
        bundle_path: Path to a bundle (any archive covering every category)
        actor: Who requested the import
        take_safety_snapshot: Capture a full "pre-restore" backup first

    Returns:
        The migration job id; compatibility warnings are in its metadata

    Raises:
        InvalidRequest: If the bundle is missing, unreadable or incomplete
        Busy: If another mutating job is running (no record is created)
    """
    bundle = Path(bundle_path)
    if not bundle.is_file():
        raise InvalidRequest(f"Bundle not found: {bundle}", details={"bundle_path": str(bundle)})

    try:
        manifest = await read_manifest(bundle)
    except CorruptArchiveError as e:
        raise InvalidRequest(
            f"Bundle cannot be read: {e.message}",
            details={"bundle_path": str(bundle)},
        ) from e

    captured = {SourceCategory(c) for c in manifest["categories"]}
    if not ALL_CATEGORIES <= captured:
        raise InvalidRequest(
            "Bundle does not cover the full data set",
            details={"bundle_path": str(bundle), "captured": sorted(c.value for c in captured)},
        )

    stale = find_stale_siblings(roots_in_scope(config, ALL_CATEGORIES, manifest))
    if stale:
        raise InvalidRequest(explain_stale_siblings(stale), details={"paths": stale})

    warnings = compatibility_warnings(config, manifest)
    for warning in warnings:
        logger.warning("migration_import_compatibility", bundle_path=str(bundle), warning=warning)

    migration_id = new_job_id(MIGRATION)
    state["lock"].try_acquire(migration_id)
    try:
        async with open_job_db(state["db_path"]) as db:
            await insert_migration_job(
                db,
                job_id=migration_id,
                direction=MigrationDirection.IMPORT,
                actor=actor,
                source_bundle_path=str(bundle),
                metadata={
                    "service_name": manifest.get("service_name"),
                    "service_version": manifest.get("service_version"),
                    "bundle_job_id": manifest.get("job_id"),
                    "warnings": warnings,
                    "take_safety_snapshot": take_safety_snapshot,
                },
            )
    except Exception:
        state["lock"].release()
        raise

    emit_event(
        state["event_sink"],
        job_id=migration_id,
        family=MIGRATION,
        status=JobStatus.PENDING,
        actor=actor,
        direction=MigrationDirection.IMPORT.value,
        warnings=warnings,
    )

    spawn_job(
        state["tasks"],
        migration_id,
        run_apply_job(config, state, migration_id, bundle, BackupKind.FULL, actor, take_safety_snapshot),
    )
    return migration_id
