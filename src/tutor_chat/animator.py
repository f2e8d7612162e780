"""Character-by-character reveal of greeting and streamed reply text."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable, Awaitable, Callable, Iterator
import logging
from typing import Any

from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)

StepCallback = Callable[[str], Any]
Sleeper = Callable[[float], Awaitable[Any]]


class StreamAnimator:
    """Reveal text one character at a time on a cooperative schedule.

    Two modes share one primitive: ``reveal`` for a complete string (the
    greeting) and ``reveal_stream`` for chunks arriving from the model.
    ``cancel`` stops further step callbacks; an in-progress reveal returns
    the prefix it got to instead of raising.
    """

    def __init__(
        self,
        *,
        greeting_delay: float = 0.03,
        stream_delay: float = 0.02,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.greeting_delay = max(0.0, greeting_delay)
        self.stream_delay = max(0.0, stream_delay)
        self._sleep = sleep
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop delivering steps to any running reveal."""
        if not self._cancelled:
            LOGGER.debug("animator.cancelled", extra={"event": "animator.cancelled"})
        self._cancelled = True

    def reset(self) -> None:
        """Re-arm the animator for the next episode."""
        self._cancelled = False

    @staticmethod
    def prefixes(text: str, start: str = "") -> Iterator[str]:
        """Yield ``start`` grown by one character of ``text`` at a time."""
        current = start
        for char in text:
            current += char
            yield current

    async def reveal(
        self,
        text: str,
        on_step: StepCallback,
        *,
        start: str = "",
        delay: float | None = None,
    ) -> str:
        """Reveal ``text`` after ``start`` and return the last prefix delivered."""
        step_delay = self.greeting_delay if delay is None else max(0.0, delay)
        revealed = start
        for prefix in self.prefixes(text, start):
            await self._sleep(step_delay)
            if self._cancelled:
                break
            on_step(prefix)
            revealed = prefix
        return revealed

    async def reveal_stream(
        self,
        chunks: AsyncIterable[str],
        on_step: StepCallback,
        *,
        on_first_chunk: Callable[[], Any] | None = None,
        delay: float | None = None,
    ) -> str:
        """Reveal each inbound chunk as it arrives; return the accumulated text."""
        step_delay = self.stream_delay if delay is None else delay
        accumulated = ""
        started = False
        async for chunk in chunks:
            if self._cancelled:
                break
            if not chunk:
                continue
            if not started:
                started = True
                if on_first_chunk is not None:
                    on_first_chunk()
            accumulated = await self.reveal(
                chunk, on_step, start=accumulated, delay=step_delay
            )
            if self._cancelled:
                break
        return accumulated


class LoadingIndicator:
    """Cycle a short marker suffix while a request is in flight."""

    TASK_NAME = "loading_indicator"

    def __init__(
        self,
        task_manager: TaskManager,
        *,
        period: float = 0.5,
        marker: str = ".",
        max_length: int = 3,
        on_change: Callable[[str], Any] | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._tasks = task_manager
        self.period = max(0.0, period)
        self.marker = marker
        self.max_length = max(0, max_length)
        self._on_change = on_change
        self._sleep = sleep
        self._suffix = ""

    @property
    def suffix(self) -> str:
        return self._suffix

    @property
    def running(self) -> bool:
        return self._tasks.running(self.TASK_NAME)

    def _set(self, suffix: str) -> None:
        self._suffix = suffix
        if self._on_change is not None:
            self._on_change(suffix)

    def start(self) -> None:
        """Begin ticking; a second start while running is ignored."""
        if self.running:
            return
        self._set("")
        self._tasks.add(asyncio.create_task(self._tick()), name=self.TASK_NAME)

    async def _tick(self) -> None:
        index = 0
        while True:
            await self._sleep(self.period)
            index = (index + 1) % (self.max_length + 1)
            self._set(self.marker * index)

    async def stop(self) -> None:
        """Clear the suffix at once, then cancel the ticker."""
        self._set("")
        await self._tasks.cancel(self.TASK_NAME)
