# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example FastAPI Application with srvbak Integration.

This example runs the backup engine next to a Minecraft server managed by
systemd. World saving is paused over RCON while a capture runs, and the
service is stopped for the duration of a restore.

Run with:
    uvicorn examples.basic_app:app

Environment variables:
    SRVBAK_SERVER_DIR: Server directory (required)
    SRVBAK_VAULT_PATH: Job database and archive directory
    SRVBAK_ADMIN_API_KEY: API key for admin endpoints
    MINECRAFT_UNIT: systemd unit of the server (default: minecraft.service)
    MCRCON_PASSWORD: RCON password used by the mcrcon CLI
"""

import asyncio
import os

import structlog
from fastapi import FastAPI

from srvbak.config import SourceCategory
from srvbak.env import create_config_from_env
from srvbak.integrations.fastapi import srvbak_lifespan

logger = structlog.get_logger()


class SystemdMinecraftController:
    """Drives the live server through systemctl and mcrcon."""

    def __init__(self, unit: str):
        self.unit = unit

    async def _run(self, *argv: str) -> int:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            logger.warning("controller_command_failed", argv=argv, stderr=stderr.decode(errors="replace"))
        return proc.returncode

    async def _rcon(self, command: str) -> None:
        code = await self._run("mcrcon", "-p", os.getenv("MCRCON_PASSWORD", ""), command)
        if code != 0:
            raise RuntimeError(f"rcon {command!r} exited with {code}")

    async def quiesce(self) -> None:
        await self._rcon("save-off")
        await self._rcon("save-all flush")

    async def resume(self) -> None:
        await self._rcon("save-on")

    async def stop(self) -> bool:
        was_running = await self._run("systemctl", "is-active", "--quiet", self.unit) == 0
        if was_running and await self._run("systemctl", "stop", self.unit) != 0:
            raise RuntimeError(f"{self.unit} did not stop")
        return was_running

    async def start(self) -> None:
        if await self._run("systemctl", "start", self.unit) != 0:
            raise RuntimeError(f"{self.unit} did not start")

    def actively_writes(self, category: SourceCategory) -> bool:
        # ops.json and whitelist.json change while players are online
        return category is SourceCategory.CONFIG


config = create_config_from_env()
controller = SystemdMinecraftController(os.getenv("MINECRAFT_UNIT", "minecraft.service"))

app = FastAPI(
    title="Minecraft Backups",
    description="Backup, restore and migration service for a Minecraft server",
    version="1.0.0",
    lifespan=lambda app: srvbak_lifespan(app, config, controller),
)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Minecraft backup service",
        "docs": "/docs",
        "srvbak_admin": "/admin/srvbak/status",
    }


# ============================================================================
# srvbak Admin Endpoints (registered during start-up)
# ============================================================================
#
# POST   /admin/srvbak/backups                      - Start a backup
# GET    /admin/srvbak/backups                      - List backups
# GET    /admin/srvbak/backups/{id}/preview         - List archive contents
# DELETE /admin/srvbak/backups/{id}                 - Delete a backup
# POST   /admin/srvbak/backups/{id}/restore         - Restore a backup
# GET    /admin/srvbak/restores                     - List restores
# POST   /admin/srvbak/migrations/export            - Export a migration bundle
# POST   /admin/srvbak/migrations/import            - Import a migration bundle
# GET    /admin/srvbak/migrations                   - List migrations
# GET    /admin/srvbak/jobs/{id}                    - Any job by id
# POST   /admin/srvbak/retention/{class}            - Run a retention sweep
# GET    /admin/srvbak/status                       - Engine status
#
# All admin endpoints require: Authorization: Bearer <SRVBAK_ADMIN_API_KEY>


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
