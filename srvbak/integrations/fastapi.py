# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
srvbak FastAPI Integration - Admin endpoints for FastAPI applications.

This module provides:
- Lifespan management (engine start-up and shutdown)
- Protected admin endpoints for backups, restores, migrations and retention
- Mapping of engine errors to HTTP status codes
"""

import os
from contextlib import asynccontextmanager
from dataclasses import asdict

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from srvbak.backup import (
    create_backup,
    delete_backup,
    enforce_retention,
    export_bundle,
    import_bundle,
    preview_backup,
    restore_backup,
)
from srvbak.config import EngineConfig
from srvbak.controller import EventSink, ProcessController
from srvbak.core import (
    EngineState,
    get_engine_status,
    get_job,
    initialize_engine,
    list_jobs,
    shutdown_engine,
)
from srvbak.exceptions import Busy, InvalidRequest, JobNotFoundError

logger = structlog.get_logger()

# Security
security = HTTPBearer(auto_error=False)


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """
    Verify API key from Authorization header.

    The API key is read from the SRVBAK_ADMIN_API_KEY environment variable.
    Requests must include: Authorization: Bearer <api_key>

    Raises:
        HTTPException: If API key is missing or invalid
    """
    api_key = os.getenv("SRVBAK_ADMIN_API_KEY")

    if not api_key:
        raise HTTPException(
            status_code=500,
            detail="SRVBAK_ADMIN_API_KEY environment variable not set",
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
        )

    if credentials.credentials != api_key:
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


async def get_actor(x_srvbak_actor: str | None = Header(default=None)) -> str:
    """Actor recorded on jobs; callers identify themselves with X-Srvbak-Actor."""
    return x_srvbak_actor or "admin-api"


class BackupRequest(BaseModel):
    kind: str = "full"
    retention_class: str = "daily"
    name: str | None = None


class RestoreRequest(BaseModel):
    scope: str = "full"
    take_safety_snapshot: bool = True


class ExportRequest(BaseModel):
    name: str | None = None


class ImportRequest(BaseModel):
    bundle_path: str
    take_safety_snapshot: bool = True


def _error_body(exc: Exception) -> dict:
    return {"detail": getattr(exc, "message", str(exc)), **getattr(exc, "details", {})}


def register_error_handlers(app: FastAPI) -> None:
    """Map engine rejections to HTTP responses (404, 400, 409)."""

    @app.exception_handler(JobNotFoundError)
    async def _not_found(request: Request, exc: JobNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content=_error_body(exc))

    @app.exception_handler(InvalidRequest)
    async def _invalid(request: Request, exc: InvalidRequest) -> JSONResponse:
        return JSONResponse(status_code=400, content=_error_body(exc))

    @app.exception_handler(Busy)
    async def _busy(request: Request, exc: Busy) -> JSONResponse:
        return JSONResponse(status_code=409, content=_error_body(exc))


def register_srvbak_routes(
    app: FastAPI,
    config: EngineConfig,
    state: EngineState,
    prefix: str = "/admin/srvbak",
) -> None:
    """
    Register srvbak admin endpoints on a FastAPI app.

    All endpoints require Bearer token authentication. Mutating endpoints
    answer 202 with the job id; poll the job endpoint for the outcome.

    Args:
        app: FastAPI application
        config: Engine configuration
        state: Runtime state
        prefix: URL prefix for endpoints (default: /admin/srvbak)
    """
    register_error_handlers(app)
    auth = [Depends(verify_api_key)]

    @app.post(f"{prefix}/backups", status_code=202, dependencies=auth)
    async def start_backup(body: BackupRequest, actor: str = Depends(get_actor)) -> dict:
        """Start a backup job."""
        job_id = await create_backup(
            config, state, body.kind, body.retention_class, body.name, actor
        )
        return {"job_id": job_id}

    @app.get(f"{prefix}/backups", dependencies=auth)
    async def list_backups(
        status: str | None = None,
        kind: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list:
        """
        List backup jobs with pagination.

        Args:
            status: Filter by status (pending, running, success, failed)
            kind: Filter by backup kind
            limit: Maximum number of jobs to return
            offset: Number of jobs to skip
        """
        return await list_jobs(state, "backup", status, limit, offset, kind=kind)

    @app.get(f"{prefix}/backups/{{backup_id}}/preview", dependencies=auth)
    async def preview(backup_id: str) -> dict:
        """List a backup's contents without extracting it."""
        return await preview_backup(config, state, backup_id)

    @app.delete(f"{prefix}/backups/{{backup_id}}", dependencies=auth)
    async def remove_backup(backup_id: str, actor: str = Depends(get_actor)) -> dict:
        await delete_backup(config, state, backup_id, actor)
        return {"deleted": backup_id}

    @app.post(f"{prefix}/backups/{{backup_id}}/restore", status_code=202, dependencies=auth)
    async def start_restore(
        backup_id: str,
        body: RestoreRequest,
        actor: str = Depends(get_actor),
    ) -> dict:
        """
        Restore a backup over the live data set.

        The live service is stopped for the duration of the swap and
        restarted afterwards if it was running.
        """
        job_id = await restore_backup(
            config, state, backup_id, body.scope, actor, body.take_safety_snapshot
        )
        return {"job_id": job_id}

    @app.get(f"{prefix}/restores", dependencies=auth)
    async def list_restores(
        status: str | None = None,
        backup_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list:
        return await list_jobs(state, "restore", status, limit, offset, backup_id=backup_id)

    @app.post(f"{prefix}/migrations/export", status_code=202, dependencies=auth)
    async def start_export(body: ExportRequest, actor: str = Depends(get_actor)) -> dict:
        """Export the whole data set as a migration bundle."""
        job_id = await export_bundle(config, state, actor, body.name)
        return {"job_id": job_id}

    @app.post(f"{prefix}/migrations/import", status_code=202, dependencies=auth)
    async def start_import(body: ImportRequest, actor: str = Depends(get_actor)) -> dict:
        """Import a migration bundle; compatibility warnings land in the job metadata."""
        job_id = await import_bundle(
            config, state, body.bundle_path, actor, body.take_safety_snapshot
        )
        return {"job_id": job_id}

    @app.get(f"{prefix}/migrations", dependencies=auth)
    async def list_migrations(
        status: str | None = None,
        direction: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list:
        return await list_jobs(state, "migration", status, limit, offset, direction=direction)

    @app.get(f"{prefix}/jobs/{{job_id}}", dependencies=auth)
    async def job_detail(job_id: str) -> dict:
        """Get any job (backup, restore or migration) by id."""
        return await get_job(state, job_id)

    @app.post(f"{prefix}/retention/{{retention_class}}", dependencies=auth)
    async def run_retention(retention_class: str) -> dict:
        """Run a retention sweep for one class now."""
        result = await enforce_retention(config, state, retention_class)
        return asdict(result)

    @app.get(f"{prefix}/status", dependencies=auth)
    async def status() -> dict:
        """Engine status: writer lock, active jobs and job counts."""
        return await get_engine_status(state)


@asynccontextmanager
async def srvbak_lifespan(
    app: FastAPI,
    config: EngineConfig,
    controller: ProcessController | None = None,
    event_sink: EventSink | None = None,
    prefix: str = "/admin/srvbak",
):
    """
    Lifespan context manager for FastAPI.

    Usage:

        app = FastAPI(lifespan=lambda app: srvbak_lifespan(app, config))

    Args:
        app: FastAPI application
        config: Engine configuration
        controller: Live-service controller
        event_sink: Lifecycle event sink
        prefix: URL prefix for admin endpoints
    """
    logger.info("srvbak_lifespan_starting", server_dir=str(config.server_dir))

    state = await initialize_engine(config, controller, event_sink)
    app.state.srvbak_state = state
    app.state.srvbak_config = config
    register_srvbak_routes(app, config, state, prefix)

    logger.info("srvbak_lifespan_started")

    try:
        yield
    finally:
        logger.info("srvbak_lifespan_stopping")
        await shutdown_engine(state)
        logger.info("srvbak_lifespan_stopped")
