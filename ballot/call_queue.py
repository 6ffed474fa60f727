"""
Serialized Signer Call Queue

Every call that needs the remote signer's identity runs through one FIFO
queue, one at a time. The signer assigns nonces per identity, so two
in-flight calls can collide; draining the queue from a single loop rules
that out.

Failed calls whose message looks transient (nonce, timeout, network,
connection) go back to the head of the queue, up to two extra attempts.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ballot.errors import QueueFullError, is_transient

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_MAX_QUEUE_SIZE = 100
DEFAULT_CALL_TIMEOUT_SECONDS = 30.0
DEFAULT_RETRY_DELAY_SECONDS = 0.5
DEFAULT_PACING_DELAY_SECONDS = 0.2
DEFAULT_MAX_RETRIES = 2


# ---------------------------------------------------------------------------
# Domain types
# ---------------------------------------------------------------------------

@dataclass
class QueueItem:
    call: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    enqueued_at: float
    retry_count: int = 0


@dataclass
class QueueStatus:
    is_processing: bool
    queue_length: int


def _discard_late_result(task: asyncio.Task) -> None:
    """Swallow the outcome of a call that already timed out at queue level."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Late failure from timed-out signer call discarded: %s", exc)
    else:
        logger.debug("Late result from timed-out signer call discarded")


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class SignerCallQueue:
    """
    Single-flight FIFO executor for signer calls.

    Only one drain loop exists at a time. An enqueue that arrives while the
    loop is running simply appends and waits; it never starts a second loop.
    """

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_QUEUE_SIZE,
        call_timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        pacing_delay: float = DEFAULT_PACING_DELAY_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        self.max_size = max_size
        self.call_timeout = call_timeout
        self.retry_delay = retry_delay
        self.pacing_delay = pacing_delay
        self.max_retries = max_retries
        self._queue: deque[QueueItem] = deque()
        self._processing = False
        self._drain_task: asyncio.Task | None = None
        self._current: QueueItem | None = None

    async def enqueue(self, call: Callable[[], Awaitable[Any]]) -> Any:
        """Queue a zero-argument coroutine function and await its result.

        Raises QueueFullError immediately when the queue is at capacity.
        """
        if len(self._queue) >= self.max_size:
            raise QueueFullError(
                f"Signer call queue is full ({self.max_size} pending calls)"
            )

        future = asyncio.get_running_loop().create_future()
        self._queue.append(QueueItem(call=call, future=future, enqueued_at=time.monotonic()))
        logger.debug("Queued signer call. Queue length: %d", len(self._queue))

        self._ensure_draining()
        return await future

    def status(self) -> QueueStatus:
        return QueueStatus(is_processing=self._processing, queue_length=len(self._queue))

    async def shutdown(self) -> None:
        """Stop draining and fail every call still waiting in the queue."""
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
        pending = list(self._queue)
        self._queue.clear()
        if self._current is not None:
            pending.append(self._current)
            self._current = None
        for item in pending:
            if not item.future.done():
                item.future.set_exception(
                    RuntimeError("Signer call queue shut down before the call completed")
                )
        self._processing = False

    # -- internals ---------------------------------------------------------

    def _ensure_draining(self) -> None:
        if self._processing:
            return
        self._processing = True
        self._drain_task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        logger.debug("Draining signer queue with %d items", len(self._queue))
        try:
            while self._queue:
                item = self._queue.popleft()
                if item.future.done():
                    # Caller gave up (cancelled) while waiting
                    continue
                self._current = item

                waited_ms = int((time.monotonic() - item.enqueued_at) * 1000)
                logger.debug(
                    "Executing signer call (queued %dms, attempt %d)",
                    waited_ms, item.retry_count + 1,
                )

                try:
                    result = await self._run_with_timeout(item.call)
                except Exception as exc:
                    logger.warning(
                        "Signer call failed (attempt %d): %s", item.retry_count + 1, exc
                    )
                    if item.retry_count < self.max_retries and is_transient(exc):
                        item.retry_count += 1
                        logger.info(
                            "Retrying signer call (attempt %d/%d)",
                            item.retry_count + 1, self.max_retries + 1,
                        )
                        self._queue.appendleft(item)
                        await asyncio.sleep(self.retry_delay)
                    elif not item.future.done():
                        item.future.set_exception(exc)
                else:
                    if not item.future.done():
                        item.future.set_result(result)

                self._current = None
                if self._queue:
                    await asyncio.sleep(self.pacing_delay)
        finally:
            self._processing = False
            logger.debug("Signer queue drained")

    async def _run_with_timeout(self, call: Callable[[], Awaitable[Any]]) -> Any:
        task = asyncio.ensure_future(call())
        done, _ = await asyncio.wait({task}, timeout=self.call_timeout)
        if task in done:
            return task.result()
        # Leave the slow call running; its outcome must never reach the caller
        task.add_done_callback(_discard_late_result)
        raise TimeoutError(f"Signer call timeout after {self.call_timeout}s")
