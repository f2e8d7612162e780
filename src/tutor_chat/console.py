"""Terminal front end: renders the session snapshot with rich."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
import logging
from typing import Any

from rich.console import Console
from rich.live import Live
from rich.style import Style
from rich.text import Text

from .controller import SessionController
from .models import LinkKind, LinkSegment, Segment, TextSegment, Turn, TurnRole

LOGGER = logging.getLogger(__name__)

LINK_LABELS: dict[LinkKind, str] = {
    LinkKind.RESOURCE: "Resource",
    LinkKind.IMAGE: "Image",
    LinkKind.LESSON_PLAN: "Lesson plan",
}

ROLE_LABELS: dict[TurnRole, tuple[str, str]] = {
    TurnRole.USER: ("You", "bold #7aa2f7"),
    TurnRole.MODEL: ("Tutor", "bold #9ece6a"),
}

HELP_TEXT = "Commands: /attach <path>, /restart, /quit"


def render_segments(segments: Iterable[Segment]) -> Text:
    """Render display segments as rich text with clickable links."""
    rendered = Text()
    for segment in segments:
        if isinstance(segment, TextSegment):
            rendered.append(segment.text)
        elif isinstance(segment, LinkSegment):
            label = LINK_LABELS.get(segment.kind, segment.kind.value)
            rendered.append(
                f"{label}: {segment.url}",
                style=Style(color="cyan", underline=True, link=segment.url or None),
            )
    return rendered


def render_turn(turn: Turn, segments: Iterable[Segment], suffix: str = "") -> Text:
    label, style = ROLE_LABELS[turn.role]
    rendered = Text(f"{label}: ", style=style)
    if turn.attachment is not None:
        rendered.append(f"[{turn.attachment.name or turn.attachment.mime_type}] ", style="dim")
    rendered.append_text(render_segments(segments))
    if suffix:
        rendered.append(suffix, style="dim")
    return rendered


class ConsoleApp:
    """Line-oriented chat loop around one SessionController."""

    def __init__(
        self,
        controller: SessionController,
        *,
        console: Console | None = None,
        read_line: Callable[[str], str] | None = None,
    ) -> None:
        self.controller = controller
        self.console = console or Console()
        self._read_line = read_line or self.console.input
        self._live: Live | None = None
        controller.on_change(self._refresh)
        controller.on_notice(self._show_notice)

    async def _read(self, prompt: str) -> str | None:
        try:
            return await asyncio.to_thread(self._read_line, prompt)
        except (EOFError, KeyboardInterrupt):
            return None

    def _render_last(self) -> Text:
        snapshot = self.controller.snapshot()
        if not snapshot.turns:
            return Text(snapshot.loading_suffix)
        suffix = snapshot.loading_suffix if snapshot.session.loading else ""
        return render_turn(snapshot.turns[-1], snapshot.segments[-1], suffix)

    def _refresh(self) -> None:
        if self._live is not None:
            self._live.update(self._render_last())

    def _show_notice(self, text: str) -> None:
        self.console.print(text, style="yellow")

    @contextmanager
    def _live_view(self) -> Iterator[None]:
        with Live(
            self._render_last(),
            console=self.console,
            refresh_per_second=30,
            transient=True,
        ) as live:
            self._live = live
            try:
                yield
            finally:
                self._live = None

    def print_turns(self, turns: Iterable[Turn], *, include_user: bool = False) -> None:
        for turn in turns:
            if turn.role is TurnRole.USER and not include_user:
                continue
            self.console.print(render_turn(turn, self.controller.segments(turn)))

    async def onboard(self) -> bool:
        """Prompt for role and grade until the controller accepts them."""
        while True:
            role = await self._read("Are you a student or a teacher? ")
            if role is None:
                return False
            grade: str | None = None
            if role.strip().lower() == "student":
                grade = await self._read("Which grade are you in? ")
                if grade is None:
                    return False
            with self._live_view():
                accepted = await self.controller.onboard(role, grade)
            if accepted:
                self.print_turns(self.controller.store.turns[:1])
                self.console.print(HELP_TEXT, style="dim")
                return True

    async def submit(self, line: str) -> None:
        before = len(self.controller.store)
        with self._live_view():
            await self.controller.submit(line)
        self.print_turns(self.controller.store.turns[before:])

    async def handle_command(self, line: str) -> bool:
        """Run a slash command; return False when the loop should stop."""
        command, _, argument = line.strip().partition(" ")
        if command == "/quit":
            return False
        if command == "/restart":
            await self.controller.restart_onboarding()
            return await self.onboard()
        if command == "/attach":
            path = argument.strip()
            if not path:
                self._show_notice("Usage: /attach <path>")
            elif self.controller.select_attachment(path):
                self.console.print(f"Attached {path} to your next message.", style="dim")
            return True
        self._show_notice(HELP_TEXT)
        return True

    async def run(self) -> None:
        """Onboard, then read and submit lines until /quit or end of input."""
        try:
            if not await self.onboard():
                return
            while True:
                line = await self._read("> ")
                if line is None:
                    break
                if line.strip().startswith("/"):
                    if not await self.handle_command(line):
                        break
                    continue
                await self.submit(line)
        finally:
            await self.controller.close()


def run_console(config: dict[str, Any]) -> None:
    """Build a controller from config and run the console loop."""
    controller = SessionController.from_config(config)
    LOGGER.info("console.start", extra={"event": "console.start"})
    asyncio.run(ConsoleApp(controller).run())
