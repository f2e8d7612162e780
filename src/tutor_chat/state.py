"""Session state machine and lock-protected transitions."""

from __future__ import annotations

import asyncio
from enum import Enum


class SessionState(str, Enum):
    """Finite state machine for the session lifecycle."""

    UNONBOARDED = "UNONBOARDED"
    ONBOARDING = "ONBOARDING"
    IDLE = "IDLE"
    SUBMITTING = "SUBMITTING"
    STREAMING = "STREAMING"


class StateManager:
    """Manage state transitions with async lock semantics."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._state = SessionState.UNONBOARDED

    @property
    def current(self) -> SessionState:
        """Return the current state without locking, for display snapshots."""
        return self._state

    async def get_state(self) -> SessionState:
        """Return the current state under lock."""
        async with self._lock:
            return self._state

    async def transition_to(self, new_state: SessionState) -> SessionState:
        """Transition to a new state and return it."""
        async with self._lock:
            self._state = new_state
            return self._state

    async def transition_if(
        self,
        expected_state: SessionState,
        new_state: SessionState,
    ) -> bool:
        """Transition only when current state matches expected state."""
        async with self._lock:
            if self._state != expected_state:
                return False
            self._state = new_state
            return True

