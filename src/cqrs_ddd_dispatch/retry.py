"""Retry path: backoff policy, retry controller and the non-blocking delay queue."""

from __future__ import annotations

import asyncio
import contextlib
import heapq
import itertools
import logging
import random
import time
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from .commands.envelope import EventStatus
from .correlation import get_correlation_id
from .exceptions import MessagingError
from .instrumentation import get_hook_registry

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine

    from .commands.envelope import CommandEnvelope
    from .config import DispatchConfig, RetrySettings
    from .dead_letter import DeadLetterRouter
    from .ports.messaging import IMessagePublisher
    from .tracking.service import EventTrackingService

    _Entry = tuple[float, int, CommandEnvelope, asyncio.Future[Any] | None]

logger = logging.getLogger("cqrs_ddd.dispatch.retry")


class RetryPolicy:
    """Exponential backoff with a retry ceiling.

    ``retry_count`` is the number of retries already scheduled.  After a
    failure the counter is incremented and the next attempt waits
    ``min(2 ** retry_count * base_delay, max_delay)`` seconds, giving
    2s, 4s, 8s with the defaults.
    """

    def __init__(
        self,
        *,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: bool = False,
    ) -> None:
        """Configure retry behavior.

        Args:
            max_retries: Retries allowed after the first attempt.
            base_delay: Delay unit in seconds.
            max_delay: Cap on delay in seconds.
            jitter: If True, multiply delays by a random factor in [0.5, 1.5].
        """
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if base_delay < 0 or max_delay < 0:
            raise ValueError("base_delay and max_delay must be >= 0")
        if base_delay > max_delay:
            raise ValueError("base_delay must be <= max_delay")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
        )

    def should_retry(self, retry_count: int, max_retries: int | None = None) -> bool:
        """True while fewer than ``max_retries`` retries have been scheduled."""
        ceiling = self.max_retries if max_retries is None else max_retries
        return retry_count < ceiling

    def delay_for_retry(self, retry_count: int) -> float:
        """Seconds to wait before the attempt numbered *retry_count* (1-based)."""
        if retry_count < 1:
            return 0.0
        delay = min((2**retry_count) * self.base_delay, self.max_delay)
        if self.jitter:
            delay = delay * (0.5 + random.random())  # noqa: S311
        return float(max(0.0, delay))


class RetryController:
    """Decides what happens after a retryable failure.

    While the envelope still has retry budget, the ledger record moves
    ``PROCESSING -> RETRY`` with the incremented counter and the envelope is
    published to ``<family>-topic.retry`` carrying its due time.  Once the
    budget is spent the envelope is handed to the :class:`DeadLetterRouter`.

    The ceiling is enforced here, never by handlers.
    """

    def __init__(
        self,
        tracking: EventTrackingService,
        publisher: IMessagePublisher,
        config: DispatchConfig,
        dead_letter: DeadLetterRouter,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._tracking = tracking
        self._publisher = publisher
        self._config = config
        self._dead_letter = dead_letter
        self._policy = policy or RetryPolicy.from_settings(config.retry)

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def handle_failure(
        self, envelope: CommandEnvelope, error: BaseException
    ) -> EventStatus:
        """Schedule a retry or dead-letter *envelope*; return the new status."""
        reason = str(error) or type(error).__name__
        if not self._policy.should_retry(envelope.retry_count, envelope.max_retries):
            logger.error(
                "Event %s reached maximum retry count (%d/%d); sending to DLQ",
                envelope.event_id,
                envelope.retry_count,
                envelope.max_retries,
            )
            await self._dead_letter.route(
                envelope,
                f"retries exhausted ({envelope.retry_count}/"
                f"{envelope.max_retries}): {reason}",
            )
            return EventStatus.FAILED

        async def _schedule() -> EventStatus:
            retry_count = envelope.retry_count + 1
            delay = self._policy.delay_for_retry(retry_count)
            not_before = datetime.now(timezone.utc) + timedelta(seconds=delay)
            message = f"Retry attempt {retry_count}: {reason}"

            await self._tracking.transition(
                envelope.event_id,
                EventStatus.RETRY,
                message,
                expected={EventStatus.PROCESSING},
                retry_count=retry_count,
            )
            retry_envelope = envelope.next_retry(not_before, message)
            await self._publisher.publish(
                self._config.retry_topic_for(envelope.command_family),
                retry_envelope,
                key=retry_envelope.partition_key,
            )
            logger.warning(
                "Event %s will be retried (%d/%d) in %.1fs: %s",
                envelope.event_id,
                retry_count,
                envelope.max_retries,
                delay,
                reason,
            )
            return EventStatus.RETRY

        registry = get_hook_registry()
        status: EventStatus = await registry.execute_all(
            f"dispatch.retry.{envelope.command_family.value}",
            {
                "event.id": envelope.event_id,
                "event.type": envelope.event_type,
                "retry.count": envelope.retry_count + 1,
                "correlation_id": envelope.correlation_id or get_correlation_id(),
            },
            _schedule,
        )
        return status


class DelayQueue:
    """Holds envelopes until their due time, then hands them to ``on_due``.

    Backed by a heap and a single scheduler task; waiting costs no worker.
    Each due envelope is dispatched in its own task, so a slow attempt does
    not hold back envelopes that become due later.

    :meth:`schedule` is fire-and-forget: a failed dispatch is rescheduled
    after ``redelivery_delay``.  :meth:`run_when_due` lets the caller await
    the dispatch, so a retry-channel message is acknowledged only once its
    delayed attempt has run; failures propagate to that caller instead.
    """

    def __init__(
        self,
        on_due: Callable[[CommandEnvelope], Coroutine[Any, Any, Any]],
        *,
        clock: Callable[[], float] = time.monotonic,
        redelivery_delay: float = 1.0,
    ) -> None:
        self._on_due = on_due
        self._redelivery_delay = redelivery_delay
        self._clock = clock
        self._heap: list[_Entry] = []
        self._seq = itertools.count()
        self._wakeup = asyncio.Event()
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return sum(1 for entry in self._heap if not _withdrawn(entry))

    @property
    def running(self) -> bool:
        return self._running

    @staticmethod
    def delay_until(envelope: CommandEnvelope) -> float:
        """Seconds until the envelope's ``not_before`` (0 when due or unset)."""
        if envelope.not_before is None:
            return 0.0
        not_before = envelope.not_before
        if not_before.tzinfo is None:
            not_before = not_before.replace(tzinfo=timezone.utc)
        return max(0.0, (not_before - datetime.now(timezone.utc)).total_seconds())

    def _push(
        self,
        envelope: CommandEnvelope,
        delay: float,
        waiter: asyncio.Future[Any] | None,
    ) -> None:
        due = self._clock() + max(0.0, delay)
        heapq.heappush(self._heap, (due, next(self._seq), envelope, waiter))
        self._wakeup.set()

    def schedule(self, envelope: CommandEnvelope, delay: float) -> None:
        """Release *envelope* after *delay* seconds."""
        self._push(envelope, delay, None)

    def schedule_envelope(self, envelope: CommandEnvelope) -> float:
        """Schedule by the envelope's ``not_before``; return the delay used."""
        delay = self.delay_until(envelope)
        self.schedule(envelope, delay)
        return delay

    async def run_when_due(self, envelope: CommandEnvelope) -> Any:
        """Wait for the envelope's ``not_before``, run ``on_due``, return its result.

        Cancelling the caller withdraws the envelope from the queue.

        Raises:
            MessagingError: the queue is not running.
        """
        if not self._running:
            raise MessagingError("DelayQueue is not running")
        waiter: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._push(envelope, self.delay_until(envelope), waiter)
        return await waiter

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        self._running = False
        self._wakeup.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError, asyncio.TimeoutError):
                await asyncio.wait_for(self._task, timeout=5.0)
            self._task = None
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        for _, _, _, waiter in self._heap:
            if waiter is not None and not waiter.done():
                waiter.cancel()
        self._heap = [entry for entry in self._heap if entry[3] is None]
        heapq.heapify(self._heap)
        if self._heap:
            logger.warning(
                "DelayQueue stopped with %d scheduled retr%s not yet due",
                len(self._heap),
                "y" if len(self._heap) == 1 else "ies",
            )

    async def drain(self) -> None:
        """Wait for every dispatched envelope to finish (testing utility)."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def _next_timeout(self) -> float | None:
        if not self._heap:
            return None
        return max(0.0, self._heap[0][0] - self._clock())

    async def _run_loop(self) -> None:
        while self._running:
            self._wakeup.clear()
            timeout = self._next_timeout()
            if timeout is None or timeout > 0:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            now = self._clock()
            while self._heap and self._heap[0][0] <= now:
                entry = heapq.heappop(self._heap)
                if _withdrawn(entry):
                    continue
                task = asyncio.create_task(self._dispatch(entry[2], entry[3]))
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)

    async def _dispatch(
        self, envelope: CommandEnvelope, waiter: asyncio.Future[Any] | None
    ) -> None:
        try:
            result = await self._on_due(envelope)
        except Exception as exc:
            if waiter is not None:
                if waiter.done():
                    logger.exception("Delayed dispatch of %s failed", envelope.event_id)
                else:
                    waiter.set_exception(exc)
                return
            logger.exception(
                "Delayed dispatch of %s failed; rescheduling in %.1fs",
                envelope.event_id,
                self._redelivery_delay,
            )
            if self._running:
                self.schedule(envelope, self._redelivery_delay)
            return
        if waiter is not None and not waiter.done():
            waiter.set_result(result)


def _withdrawn(entry: _Entry) -> bool:
    return entry[3] is not None and entry[3].done()


__all__ = ["DelayQueue", "RetryController", "RetryPolicy"]
