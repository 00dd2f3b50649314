"""Async concurrency primitives used by the control plane."""

from __future__ import annotations

import asyncio
import inspect
import threading
from contextlib import suppress
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Iterable

T = TypeVar("T")


class CancellationToken:
    """Broadcast cancellation shared by every job of a run.

    ``cancel`` may be called from any thread; each waiter is woken on its own
    event loop through ``call_soon_threadsafe``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._reason: str | None = None
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Future[None]]] = []

    def cancel(self, reason: str | None = None) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            self._reason = reason
            waiters, self._waiters = self._waiters, []
        for loop, future in waiters:
            # A closed loop has nobody left to wake.
            with suppress(RuntimeError):
                loop.call_soon_threadsafe(_resolve, future)

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._cancelled:
                return
            waiter = (loop, loop.create_future())
            self._waiters.append(waiter)
        try:
            await waiter[1]
        finally:
            with self._lock, suppress(ValueError):
                self._waiters.remove(waiter)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise asyncio.CancelledError(self._reason or "operation cancelled")


def _resolve(future: asyncio.Future[None]) -> None:
    if not future.done():
        future.set_result(None)


class RaceOutcome(StrEnum):
    """Which of completion, deadline, or cancellation fired first."""

    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class RaceResult(Generic[T]):
    outcome: RaceOutcome
    value: T | None = None
    error: BaseException | None = None


@dataclass(slots=True)
class WorkerPool(Generic[T]):
    """Run coroutines with bounded concurrency and yield results as they finish.

    One worker raising does not cancel its siblings; the first exception is
    re-raised after the rest have finished. Workers are expected to turn their
    own failures into result values.
    """

    max_concurrency: int
    _slots: asyncio.Semaphore = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        self._slots = asyncio.Semaphore(self.max_concurrency)

    async def run(self, coroutines: Iterable[Awaitable[T]]) -> AsyncIterator[T]:
        pending = {asyncio.create_task(self._run_one(coroutine)) for coroutine in coroutines}
        first_error: BaseException | None = None
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task.cancelled():
                        continue
                    if task.exception() is not None:
                        first_error = first_error or task.exception()
                        continue
                    yield task.result()
        finally:
            await _cancel_all(pending)
        if first_error is not None:
            raise first_error

    async def _run_one(self, coroutine: Awaitable[T]) -> T:
        async with self._slots:
            return await coroutine


async def race_with_deadline(
    coroutine: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> RaceResult[T]:
    """Race ``coroutine`` against a deadline and a cancellation token.

    Whichever fires first decides the outcome and the loser is cancelled and
    awaited before returning. An exception raised by the coroutine comes back
    as ``COMPLETED`` with ``error`` set.
    """

    token = cancel_token or CancellationToken()
    if timeout_seconds <= 0 or token.is_cancelled:
        if inspect.iscoroutine(coroutine):
            # Never scheduled; close it so it is not reported as unawaited.
            coroutine.close()
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        return RaceResult(RaceOutcome.CANCELLED)

    work: asyncio.Future[T] = asyncio.ensure_future(coroutine)
    cancelled = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {work, cancelled}, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        await _cancel_all({task for task in (work, cancelled) if not task.done()})

    if work not in done:
        return RaceResult(RaceOutcome.CANCELLED if cancelled in done else RaceOutcome.TIMED_OUT)
    if work.cancelled():
        return RaceResult(RaceOutcome.CANCELLED)
    if work.exception() is not None:
        return RaceResult(RaceOutcome.COMPLETED, error=work.exception())
    return RaceResult(RaceOutcome.COMPLETED, value=work.result())


async def _cancel_all(tasks: set[asyncio.Future[Any]]) -> None:
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


__all__ = [
    "CancellationToken",
    "RaceOutcome",
    "RaceResult",
    "WorkerPool",
    "race_with_deadline",
]
