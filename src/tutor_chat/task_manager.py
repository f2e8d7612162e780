"""Lifecycle tracking for the session's background asyncio tasks."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class TaskManager:
    """Track named and anonymous tasks so teardown can stop every timer."""

    def __init__(self) -> None:
        self._named: dict[str, asyncio.Task[Any]] = {}
        self._anonymous: set[asyncio.Task[Any]] = set()

    def add(self, task: asyncio.Task[Any], name: str | None = None) -> None:
        """Register a task, optionally under a unique name.

        A named task replaces any prior task with the same name without
        cancelling it. Anonymous tasks drop out of tracking when done.
        """
        if name is not None:
            self._named[name] = task
        else:
            self._anonymous.add(task)
            task.add_done_callback(self._anonymous.discard)

    def running(self, name: str) -> bool:
        """Return True when the named task exists and has not finished."""
        task = self._named.get(name)
        return task is not None and not task.done()

    async def cancel(self, name: str) -> bool:
        """Cancel a named task and wait for it; False when nothing was running."""
        task = self._named.pop(name, None)
        if task is None or task.done():
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        return True

    async def cancel_all(self) -> int:
        """Cancel every tracked task, wait for them and return how many were live."""
        pending = [
            task
            for task in list(self._named.values()) + list(self._anonymous)
            if not task.done()
        ]
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._named.clear()
        self._anonymous.clear()
        if pending:
            LOGGER.info(
                "tasks.cancelled",
                extra={"event": "tasks.cancelled", "count": len(pending)},
            )
        return len(pending)

