"""Ordered, in-memory transcript of conversation turns."""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable

from .models import Turn, TurnRole


class ConversationStore:
    """Hold the chronological turn sequence for one session.

    Only the session controller mutates the store. ``update_last`` is a
    silent no-op on an empty store or a mismatched last role, since reveal
    steps may still land after a reset.
    """

    def __init__(self) -> None:
        self._turns: list[Turn] = []
        self._greeting = False

    @property
    def turns(self) -> tuple[Turn, ...]:
        """Return copies of all turns in insertion order."""
        return tuple(replace(turn) for turn in self._turns)

    @property
    def last(self) -> Turn | None:
        return replace(self._turns[-1]) if self._turns else None

    @property
    def has_greeting(self) -> bool:
        """True when turn index 0 is the model greeting."""
        return self._greeting and bool(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    def append(self, turns: Iterable[Turn]) -> None:
        """Append turns in order."""
        self._turns.extend(turns)

    def set_greeting(self, content: str) -> None:
        """Install the greeting as turn index 0, replacing any earlier one."""
        greeting = Turn(role=TurnRole.MODEL, content=content)
        if self._greeting and self._turns:
            self._turns[0] = greeting
        else:
            self._turns.insert(0, greeting)
        self._greeting = True

    def update_last(self, role: TurnRole, content: str) -> bool:
        """Replace the content of the last turn when its role matches."""
        if not self._turns or self._turns[-1].role is not role:
            return False
        self._turns[-1].content = content
        return True

    def update_greeting(self, content: str) -> bool:
        """Replace the greeting content in place; no-op without a greeting."""
        if not self.has_greeting:
            return False
        self._turns[0].content = content
        return True

    def reset(self) -> None:
        """Drop every turn, including the greeting."""
        self._turns.clear()
        self._greeting = False

    def history_before_last(self, count: int) -> list[Turn]:
        """Return turns excluding the greeting and the trailing ``count`` turns."""
        start = 1 if self.has_greeting else 0
        end = max(start, len(self._turns) - max(0, count))
        return [replace(turn) for turn in self._turns[start:end]]
