# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
srvbak Job Runner - Single-writer lock and background job tasks.

Every mutating job (backup, restore, migration export/import) must hold the
WriterLock for its whole lifetime. The lock is fail-fast: a caller that finds
it held gets Busy immediately instead of queueing behind the running job.
"""

import asyncio
import threading
from typing import Coroutine, Dict, Iterable

import structlog

from srvbak.errors import explain_busy
from srvbak.exceptions import Busy

logger = structlog.get_logger()


class WriterLock:
    """
    Named, non-re-entrant, try-acquire-only lock.

    Not re-entrant: work that must run under an already-held lock
    (such as the safety snapshot taken inside a restore) calls the internal
    job body directly instead of acquiring again.
    """

    def __init__(self, name: str = "srvbak-writer"):
        self.name = name
        self._lock = threading.Lock()
        self._holder: str | None = None

    @property
    def held(self) -> bool:
        return self._lock.locked()

    @property
    def holder(self) -> str | None:
        """Job id currently holding the lock, if any."""
        return self._holder

    def try_acquire(self, holder: str) -> None:
        """
        Acquire the lock for ``holder`` without waiting.

        Raises:
            Busy: If the lock is already held
        """
        if not self._lock.acquire(blocking=False):
            raise Busy(
                explain_busy(self._holder),
                details={"lock": self.name, "holder": self._holder},
            )
        self._holder = holder
        logger.debug("writer_lock_acquired", lock=self.name, holder=holder)

    def release(self) -> None:
        holder = self._holder
        self._holder = None
        self._lock.release()
        logger.debug("writer_lock_released", lock=self.name, holder=holder)


def spawn_job(
    tasks: Dict[str, asyncio.Task],
    job_id: str,
    coro: Coroutine,
    aliases: Iterable[str] = (),
) -> asyncio.Task:
    """
    Run a job body as a tracked asyncio task.

    The task is registered under its job id (and any alias ids of records the
    same body drives) until it finishes. Job bodies
    record their own failures; anything that still escapes is logged here.
    """
    task = asyncio.create_task(coro, name=job_id)
    job_ids = (job_id, *aliases)
    for tracked_id in job_ids:
        tasks[tracked_id] = task

    def _on_done(finished: asyncio.Task) -> None:
        for tracked_id in job_ids:
            tasks.pop(tracked_id, None)
        if finished.cancelled():
            logger.warning("job_task_cancelled", job_id=job_id)
            return
        error = finished.exception()
        if error is not None:
            logger.error(
                "job_task_crashed",
                job_id=job_id,
                error=str(error),
                error_type=type(error).__name__,
            )

    task.add_done_callback(_on_done)
    return task
