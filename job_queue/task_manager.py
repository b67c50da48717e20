"""
Task Manager — tracks in-flight handler invocations keyed by message ID.

Settled tasks are purged lazily, inside wait_one() / wait_all(), so
count() can overstate the work still running until the next wait.
The manager only observes settlement; outcomes are the producer's concern.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Union

TaskLike = Union[asyncio.Future, Awaitable[Any]]


class NoTrackedTasksError(RuntimeError):
    """wait_one() was called with nothing to wait for."""


class TaskManager:

    def __init__(self):
        self._tasks: dict[str, asyncio.Future] = {}

    def add(self, key: str, task: TaskLike) -> bool:
        """
        Track ``task`` under ``key``. Returns False (and leaves the existing
        entry alone) when the key is already tracked.

        A bare coroutine passed for a key already tracked is closed
        without ever being scheduled.
        """
        if key in self._tasks:
            if asyncio.iscoroutine(task):
                task.close()
            return False
        self._tasks[key] = asyncio.ensure_future(task)
        return True

    def count(self) -> int:
        return len(self._tasks)

    def __contains__(self, key: str) -> bool:
        return key in self._tasks

    async def wait_one(self) -> None:
        """Wait until any tracked task settles, then purge every settled one."""
        if not self._tasks:
            raise NoTrackedTasksError("no tracked tasks to wait for")
        await asyncio.wait(list(self._tasks.values()), return_when=asyncio.FIRST_COMPLETED)
        self._purge()

    async def wait_all(self) -> None:
        """Wait until every tracked task has settled, whatever the outcome."""
        while self._tasks:
            await asyncio.wait(list(self._tasks.values()))
            self._purge()

    def _purge(self) -> None:
        for key, task in list(self._tasks.items()):
            if task.done():
                if not task.cancelled():
                    task.exception()  # mark retrieved; failures are not ours to report
                del self._tasks[key]
