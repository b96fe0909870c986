"""Background workers owned by :class:`~cqrs_ddd_dispatch.runtime.DispatchRuntime`."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger("cqrs_ddd.dispatch.workers")


@runtime_checkable
class BackgroundWorker(Protocol):
    """A task the runtime runs beside its consumers.

    ``start`` and ``stop`` are idempotent.  ``running`` is true from a
    successful ``start`` until ``stop``; the runtime reports it per worker
    so a worker that never started shows up in
    :meth:`DispatchRuntime.worker_status`.
    """

    @property
    def running(self) -> bool: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


class PeriodicWorker(ABC):
    """Runs :meth:`run_once` every ``interval`` seconds, or on :meth:`trigger`.

    A failing cycle is logged and the loop carries on with the next one.
    """

    name = "PeriodicWorker"

    def __init__(self, interval: float) -> None:
        self._interval = interval
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._trigger = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def interval(self) -> float:
        return self._interval

    def trigger(self) -> None:
        """Run the next cycle now instead of at the end of the interval."""
        self._trigger.set()

    @abstractmethod
    async def run_once(self) -> Any:
        """One cycle; also called directly by admin endpoints and tests."""

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._trigger.clear()
        self._task = asyncio.create_task(self._run_loop(), name=self.name)
        logger.info("%s started (interval=%.1fs)", self.name, self._interval)

    async def stop(self) -> None:
        if not self._running and self._task is None:
            return
        self._running = False
        self._trigger.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError, asyncio.TimeoutError):
                await asyncio.wait_for(self._task, timeout=5.0)
            self._task = None
        logger.info("%s stopped", self.name)

    async def _run_loop(self) -> None:
        while self._running:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._trigger.wait(), timeout=self._interval)
            self._trigger.clear()
            if not self._running:
                break
            try:
                await self.run_once()
            except Exception:
                logger.exception("%s cycle failed", self.name)


__all__ = ["BackgroundWorker", "PeriodicWorker"]
