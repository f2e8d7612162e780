"""Turn, segment and session data containers."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Union


class TurnRole(str, Enum):
    """Author of a single conversation turn."""

    USER = "user"
    MODEL = "model"

    @property
    def wire_role(self) -> str:
        """Role name used in upstream request messages."""
        return "user" if self is TurnRole.USER else "assistant"


class UserRole(str, Enum):
    """Who the person at the keyboard said they are during onboarding."""

    STUDENT = "student"
    TEACHER = "teacher"
    UNSET = "unset"


@dataclass(frozen=True)
class AttachmentHandle:
    """Transportable attachment payload, produced once per selected file."""

    base64_data: str
    mime_type: str
    name: str = ""


@dataclass
class Turn:
    """One utterance in the conversation."""

    role: TurnRole
    content: str
    attachment: AttachmentHandle | None = None


class LinkKind(str, Enum):
    """Typed link targets the model may annotate with placeholder markup."""

    RESOURCE = "Resource_URL"
    IMAGE = "Image_URL"
    LESSON_PLAN = "Lesson_Plan_URL"


@dataclass(frozen=True)
class TextSegment:
    text: str


@dataclass(frozen=True)
class LinkSegment:
    kind: LinkKind
    url: str


Segment = Union[TextSegment, LinkSegment]


@dataclass
class Session:
    """Per-process onboarding and submission flags."""

    role: UserRole = UserRole.UNSET
    grade: int | None = None
    loading: bool = False
    pending_attachment: Path | None = None
    notice: str = ""

    @property
    def onboarded(self) -> bool:
        return self.role is not UserRole.UNSET

    def copy(self) -> Session:
        return replace(self)


@dataclass(frozen=True)
class ConversationSnapshot:
    """Read-only view handed to the presentation layer."""

    turns: tuple[Turn, ...]
    session: Session
    state: str
    loading_suffix: str = ""
    segments: tuple[tuple[Segment, ...], ...] = field(default_factory=tuple)
