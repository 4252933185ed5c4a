"""Helper tasks that can be stopped from any task.

A task group has to be exited by the task that entered it, inside the same
cancel scope. Sessions may be torn down elsewhere, for instance by an async
generator finalizer, so their helper tasks are tracked here instead and each
one is cancelled through a cancel scope of its own.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import anyio

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """A set of running helper tasks with lifecycle tracking."""

    def __init__(self, name: str) -> None:
        self._name = name
        self._tasks: dict[asyncio.Task[None], anyio.CancelScope] = {}
        self._closed = False

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def closed(self) -> bool:
        return self._closed

    def start_soon(self, func: Callable[..., Awaitable[Any]], *args: Any) -> None:
        """Schedule ``func(*args)`` in a new task."""
        if self._closed:
            raise RuntimeError(f"{self._name}: cannot start tasks after close")
        scope = anyio.CancelScope()
        task = asyncio.create_task(
            self._run(scope, func, *args),
            name=f"{self._name}:{getattr(func, '__name__', 'task')}",
        )
        self._tasks[task] = scope
        task.add_done_callback(self._cleanup_task)

    @staticmethod
    async def _run(scope: anyio.CancelScope, func: Callable[..., Awaitable[Any]], *args: Any) -> None:
        with scope:
            await func(*args)

    def _cleanup_task(self, task: asyncio.Task[None]) -> None:
        self._tasks.pop(task, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(f"[{self._name}] {task.get_name()} failed: {type(exc).__name__}: {exc}")

    async def aclose(self) -> None:
        """Cancel every task and wait for all of them to finish.

        The wait is shielded, so callers inside a timed-out or cancelled scope
        still return only once the tasks are gone. Idempotent.
        """
        self._closed = True
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        if not tasks:
            return
        for task in tasks:
            self._tasks[task].cancel()
        with anyio.CancelScope(shield=True):
            await asyncio.wait(tasks)


__all__ = ["BackgroundTasks"]
