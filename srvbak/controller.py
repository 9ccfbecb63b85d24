# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
srvbak Collaborators - Interfaces to the live service and the event sink.

The engine never talks to the managed process or an audit system directly.
It is handed a ProcessController and an EventSink at start-up; the Null and
Logging implementations below serve unmanaged deployments and tests.
"""

import asyncio
import inspect
from datetime import datetime, UTC
from typing import Any, Dict, Protocol, Set, runtime_checkable

import structlog

from srvbak.config import SourceCategory

logger = structlog.get_logger()

# Strong references to in-flight async sink deliveries
_pending_deliveries: Set[asyncio.Future] = set()


@runtime_checkable
class ProcessController(Protocol):
    """Capability to pause, stop and start the managed service."""

    async def quiesce(self) -> None:
        """Flush in-memory state to disk and suspend further writes."""
        ...

    async def resume(self) -> None:
        """Undo quiesce()."""
        ...

    async def stop(self) -> bool:
        """Stop the service. Returns True if it was running."""
        ...

    async def start(self) -> None:
        ...

    def actively_writes(self, category: SourceCategory) -> bool:
        """Whether the running service writes to this category on its own."""
        ...


@runtime_checkable
class EventSink(Protocol):
    """Receives job lifecycle events (creation and terminal transitions)."""

    def emit(self, event: Dict[str, Any]) -> Any:
        ...


class NullProcessController:
    """Controller for deployments where srvbak does not manage the process."""

    async def quiesce(self) -> None:
        return None

    async def resume(self) -> None:
        return None

    async def stop(self) -> bool:
        return False

    async def start(self) -> None:
        return None

    def actively_writes(self, category: SourceCategory) -> bool:
        return False


class LoggingEventSink:
    """Default sink: writes every event through structlog."""

    def emit(self, event: Dict[str, Any]) -> None:
        logger.info("job_event", **event)


def emit_event(
    sink: EventSink,
    *,
    job_id: str,
    family: str,
    status: str,
    actor: str,
    **detail: Any,
) -> None:
    """
    Deliver a lifecycle event to the sink.

    Delivery is fire-and-forget: sink errors are logged and never reach the
    job. Sinks may be sync or async; awaitables are scheduled as tasks.
    """
    event = {
        "job_id": job_id,
        "kind": family,
        "status": getattr(status, "value", status),
        "actor": actor,
        "timestamp": datetime.now(UTC).isoformat(),
        "detail": detail,
    }

    try:
        result = sink.emit(event)
    except Exception as e:
        logger.warning("event_sink_failed", job_id=job_id, error=str(e))
        return

    if inspect.isawaitable(result):
        task = asyncio.ensure_future(result)
        _pending_deliveries.add(task)
        task.add_done_callback(lambda t: _log_sink_failure(t, job_id))


def _log_sink_failure(task: asyncio.Future, job_id: str) -> None:
    _pending_deliveries.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.warning("event_sink_failed", job_id=job_id, error=str(task.exception()))
