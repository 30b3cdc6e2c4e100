"""Serialised execution of engine operations.

Every state-changing piece of engine work goes through one
:class:`AsyncOperationQueue`, which runs at most one operation at a time.
``enqueue`` is synchronous: the operation is queued the moment it is called
and a future is returned, so calls made from inside a running operation (a
listener triggering another navigation, say) are ordered after it instead of
interleaving with it.
"""

from __future__ import annotations

import asyncio
import heapq
import inspect
import itertools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from guided_flow.logging import EngineLogger

T = TypeVar("T")

Operation = Callable[[], Awaitable[T] | T]

URGENT_BAND = 0
NORMAL_BAND = 1


@dataclass(frozen=True, slots=True)
class QueueStats:
    queued: int
    active: bool
    processed: int
    failed: int
    oldest_pending_age_seconds: float | None


@dataclass(order=True, slots=True)
class _Entry:
    sort_key: tuple[int, int, int]
    operation: Callable[[], Any] = field(compare=False)
    future: asyncio.Future[Any] = field(compare=False)
    enqueued_at: float = field(compare=False)
    label: str = field(compare=False, default="operation")


class AsyncOperationQueue:
    """Run queued operations one at a time.

    Higher ``priority`` runs first and equal priorities run in call order.
    Urgent operations form a band ahead of every priority, first-in first-out
    among themselves. Nothing preempts the operation already running.
    """

    def __init__(self, *, logger: EngineLogger) -> None:
        self._logger = logger
        self._heap: list[_Entry] = []
        self._seq = itertools.count()
        self._active: _Entry | None = None
        self._worker: asyncio.Task[None] | None = None
        self._closed = False
        self._processed = 0
        self._failed = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue(
        self, operation: Operation[T], priority: int = 0, *, label: str = "operation"
    ) -> asyncio.Future[T]:
        return self._push(NORMAL_BAND, priority, operation, label)

    def enqueue_urgent(
        self, operation: Operation[T], *, label: str = "operation"
    ) -> asyncio.Future[T]:
        return self._push(URGENT_BAND, 0, operation, label)

    def _push(
        self, band: int, priority: int, operation: Operation[T], label: str
    ) -> asyncio.Future[T]:
        if self._closed:
            raise RuntimeError("operation queue is closed")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()
        heapq.heappush(
            self._heap,
            _Entry(
                sort_key=(band, -priority, next(self._seq)),
                operation=operation,
                future=future,
                enqueued_at=loop.time(),
                label=label,
            ),
        )
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._run())
        return future

    async def _run(self) -> None:
        while self._heap and not self._closed:
            entry = heapq.heappop(self._heap)
            if entry.future.done():
                continue

            self._active = entry
            failed = False
            try:
                result = entry.operation()
                if inspect.isawaitable(result):
                    result = await result
            except asyncio.CancelledError:
                failed = True
                if not entry.future.done():
                    entry.future.cancel()
                raise
            except Exception as exc:  # noqa: BLE001 - delivered through the future
                failed = True
                self._logger.debug("Queued %s failed: %s", entry.label, exc)
                if not entry.future.done():
                    entry.future.set_exception(exc)
            else:
                if not entry.future.done():
                    entry.future.set_result(result)
            finally:
                self._active = None
                if failed:
                    self._failed += 1
                else:
                    self._processed += 1

    def stats(self) -> QueueStats:
        oldest: float | None = None
        if self._heap:
            now = asyncio.get_running_loop().time()
            oldest = now - min(entry.enqueued_at for entry in self._heap)
        return QueueStats(
            queued=len(self._heap),
            active=self._active is not None,
            processed=self._processed,
            failed=self._failed,
            oldest_pending_age_seconds=oldest,
        )

    @property
    def is_idle(self) -> bool:
        return self._active is None and not self._heap

    async def drain(self) -> None:
        """Wait until every queued operation has finished.

        Must not be awaited from inside a queued operation.
        """

        while self._worker is not None and not self._worker.done():
            await asyncio.wait({self._worker})

    def clear(self) -> int:
        """Cancel every pending operation. The running one is unaffected."""

        pending, self._heap = self._heap, []
        for entry in pending:
            entry.future.cancel()
        return len(pending)

    async def close(self) -> None:
        """Cancel pending and in-flight work and refuse new operations."""

        self._closed = True
        dropped = self.clear()
        worker = self._worker
        if worker is None or worker.done():
            return
        if worker is asyncio.current_task():
            # Called from the running operation; the loop exits after it returns.
            return
        self._logger.debug("Closing operation queue", extra={"dropped": dropped})
        worker.cancel()
        await asyncio.wait({worker})
