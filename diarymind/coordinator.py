"""Per-user serialization of consolidation runs."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from diarymind.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class BackgroundRun:
    run_id: str
    task: asyncio.Task[Any]


class ConsolidationCoordinator:
    """
    At most one consolidation per user at a time.

    Foreground runs queue on the user's lock. Background runs are skipped while
    the user has any run holding or waiting for the lock. Each background task
    is tracked under the consolidation run id it executes; unexpected failures
    are kept until ``wait_all`` hands them back.
    """

    def __init__(self) -> None:
        self.locks: dict[str, asyncio.Lock] = {}
        self.background: dict[str, BackgroundRun] = {}
        self.failures: dict[str, BaseException] = {}
        self._holders: dict[str, int] = {}

    def _acquire_slot(self, user_id: str) -> asyncio.Lock:
        lock = self.locks.setdefault(user_id, asyncio.Lock())
        self._holders[user_id] = self._holders.get(user_id, 0) + 1
        return lock

    def _release_slot(self, user_id: str) -> None:
        # The lock is dropped only once nobody holds or waits for it.
        remaining = self._holders.get(user_id, 1) - 1
        if remaining > 0:
            self._holders[user_id] = remaining
            return
        self._holders.pop(user_id, None)
        self.locks.pop(user_id, None)

    def is_running(self, user_id: str) -> bool:
        return user_id in self._holders

    def active_run_id(self, user_id: str) -> str | None:
        current = self.background.get(user_id)
        return current.run_id if current else None

    async def run_exclusive(self, user_id: str, work: Callable[[], Awaitable[T]]) -> T:
        """Run *work* once no other consolidation of this user is running."""
        lock = self._acquire_slot(user_id)
        try:
            async with lock:
                return await work()
        finally:
            self._release_slot(user_id)

    def start_background(
        self,
        user_id: str,
        run_id: str,
        work: Callable[[str], Awaitable[Any]],
    ) -> asyncio.Task[Any] | None:
        """Start ``work(run_id)`` in the background unless the user is already consolidating."""
        if self.is_running(user_id):
            return None
        lock = self._acquire_slot(user_id)

        async def _runner() -> Any:
            try:
                async with lock:
                    return await work(run_id)
            finally:
                self.background.pop(user_id, None)
                self._release_slot(user_id)

        task = asyncio.create_task(_runner())
        task.add_done_callback(lambda t: self._collect(user_id, run_id, t))
        self.background[user_id] = BackgroundRun(run_id=run_id, task=task)
        return task

    def _collect(self, user_id: str, run_id: str, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.failures[run_id] = error
            logger.error("Background consolidation crashed", user_id=user_id, run_id=run_id, error=str(error))

    async def cancel_inflight(self, user_id: str) -> None:
        current = self.background.get(user_id)
        if current is None or current.task.done():
            return
        current.task.cancel()
        try:
            await current.task
        except asyncio.CancelledError:
            logger.info("Cancelled in-flight consolidation", user_id=user_id, run_id=current.run_id)

    async def wait_all(self) -> dict[str, BaseException]:
        """Wait for every tracked background run; return failures keyed by run id."""
        pending = [b.task for b in self.background.values()]
        if pending:
            await asyncio.wait(pending)
        failures, self.failures = self.failures, {}
        return failures
