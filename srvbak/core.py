# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
srvbak Core - Engine state, start-up, shutdown and read-only job queries.

The orchestrators (srvbak.backup) mutate; this module wires the engine
together and answers questions about jobs without taking the writer lock.
"""

import asyncio
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, List, TypedDict

import structlog

from srvbak.config import EngineConfig, RetentionClass
from srvbak.controller import EventSink, LoggingEventSink, NullProcessController, ProcessController
from srvbak.runner import WriterLock

logger = structlog.get_logger()


class EngineState(TypedDict):
    """Runtime state shared by every entry point."""

    config: EngineConfig
    db_path: Path
    archives_dir: Path
    lock: WriterLock
    controller: ProcessController
    event_sink: EventSink
    tasks: Dict[str, asyncio.Task]  # job id -> running job body
    started_at: datetime
    reconciled_job_ids: List[str]


async def initialize_engine(
    config: EngineConfig,
    controller: ProcessController | None = None,
    event_sink: EventSink | None = None,
) -> EngineState:
    """
    Initialize runtime state for the backup engine.

    Creates the vault layout, initializes the job database, reconciles jobs
    interrupted by a previous process and (optionally) runs a retention
    sweep for every class.

    Args:
        config: Engine configuration
        controller: Live-service controller (default: NullProcessController)
        event_sink: Lifecycle event sink (default: LoggingEventSink)

    Returns:
        Initialized EngineState dictionary
    """
    from srvbak.backup.recovery import reconcile_interrupted_jobs
    from srvbak.backup.retention import enforce_retention
    from srvbak.store import init_job_db

    config.vault_path.mkdir(parents=True, exist_ok=True)
    config.archives_dir.mkdir(parents=True, exist_ok=True)
    await init_job_db(config.db_path)

    state = EngineState(
        config=config,
        db_path=config.db_path,
        archives_dir=config.archives_dir,
        lock=WriterLock(),
        controller=controller or NullProcessController(),
        event_sink=event_sink or LoggingEventSink(),
        tasks={},
        started_at=datetime.now(UTC),
        reconciled_job_ids=[],
    )

    state["reconciled_job_ids"] = await reconcile_interrupted_jobs(config, state)

    if config.enforce_retention_on_startup:
        for retention_class in RetentionClass:
            if config.max_age_days(retention_class) is None:
                continue
            await enforce_retention(config, state, retention_class)

    logger.info(
        "engine_initialized",
        server_dir=str(config.server_dir),
        vault_path=str(config.vault_path),
        reconciled=len(state["reconciled_job_ids"]),
    )
    return state


async def shutdown_engine(state: EngineState) -> None:
    """
    Wait for running jobs to finish.

    Jobs are never cancelled mid-flight; shutdown simply waits for them.
    """
    pending = list(set(state["tasks"].values()))
    if pending:
        logger.info("engine_waiting_for_jobs", jobs=sorted(state["tasks"]))
        await asyncio.gather(*pending, return_exceptions=True)

    logger.info("engine_shutdown")


async def get_job(state: EngineState, job_id: str) -> dict:
    """
    Get a job of any family by id.

    Raises:
        JobNotFoundError: If no such job exists
    """
    from srvbak.store import get_job as store_get_job, open_job_db

    async with open_job_db(state["db_path"]) as db:
        return await store_get_job(db, job_id)


async def list_jobs(
    state: EngineState,
    family: str,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
    *,
    kind: str | None = None,
    backup_id: str | None = None,
    direction: str | None = None,
) -> List[dict]:
    """
    List jobs of one family ("backup", "restore" or "migration"), newest first.

    Args:
        state: Runtime state
        family: Job family
        status: Optional status filter
        limit: Maximum number of jobs to return
        offset: Number of jobs to skip
        kind: Backup kind filter (backups only)
        backup_id: Source backup filter (restores only)
        direction: "export" or "import" (migrations only)

    Raises:
        InvalidRequest: If the family, a filter or the paging values are invalid
    """
    from srvbak.builder import coerce_kind
    from srvbak.config import JobStatus, MigrationDirection
    from srvbak.exceptions import InvalidRequest
    from srvbak.store import BACKUP, MIGRATION, RESTORE, list_jobs as store_list_jobs, open_job_db

    if family not in (BACKUP, RESTORE, MIGRATION):
        raise InvalidRequest(
            f"Unknown job family: {family!r}. Expected one of: backup, restore, migration."
        )
    if status is not None:
        try:
            status = JobStatus(status)
        except ValueError as exc:
            raise InvalidRequest(f"Unknown job status: {status!r}") from exc
    if limit < 1 or offset < 0:
        raise InvalidRequest("limit must be >= 1 and offset must be >= 0")

    filters: Dict[str, Any] = {}
    if kind is not None:
        if family != BACKUP:
            raise InvalidRequest("kind can only filter backup jobs")
        filters["kind"] = coerce_kind(kind)
    if backup_id is not None:
        if family != RESTORE:
            raise InvalidRequest("backup_id can only filter restore jobs")
        filters["backup_id"] = backup_id
    if direction is not None:
        if family != MIGRATION:
            raise InvalidRequest("direction can only filter migration jobs")
        try:
            filters["direction"] = MigrationDirection(direction)
        except ValueError as exc:
            raise InvalidRequest(f"Unknown migration direction: {direction!r}") from exc

    async with open_job_db(state["db_path"]) as db:
        return await store_list_jobs(
            db, family, status=status, limit=limit, offset=offset, **filters
        )


async def wait_for_job(
    state: EngineState,
    job_id: str,
    timeout: float | None = None,
) -> dict:
    """
    Wait until a job's background work has finished and return its record.

    If the timeout expires first, the current (non-terminal) record is
    returned; the job itself keeps running.

    Raises:
        JobNotFoundError: If no such job exists
    """
    task = state["tasks"].get(job_id)
    if task is not None:
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            logger.debug("wait_for_job_timed_out", job_id=job_id, timeout=timeout)
        except Exception as e:
            logger.debug("wait_for_job_task_failed", job_id=job_id, error=str(e))

    return await get_job(state, job_id)


async def get_engine_status(state: EngineState) -> Dict[str, Any]:
    """
    Get engine status: lock holder, running jobs and job store statistics.
    """
    from srvbak.store import get_store_stats, open_job_db

    async with open_job_db(state["db_path"]) as db:
        stats = await get_store_stats(db)

    config = state["config"]
    return {
        "lock_held": state["lock"].held,
        "lock_holder": state["lock"].holder,
        "active_jobs": sorted(state["tasks"]),
        "started_at": state["started_at"].isoformat(),
        "server_dir": str(config.server_dir),
        "vault_path": str(config.vault_path),
        "service_name": config.service_name,
        "service_version": config.service_version,
        "retention_days": {k.value: v for k, v in config.retention_days.items()},
        **stats,
    }
