"""Top-level package for tutor-chat."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .config import ensure_config_dir, load_config
    from .controller import SessionController, SessionSettings
    from .conversation_store import ConversationStore
    from .error_classifier import ErrorCategory, ErrorClassifier
    from .exceptions import (
        AttachmentError,
        ConfigValidationError,
        GenerationError,
        OnboardingValidationError,
        TutorChatError,
    )
    from .segmenter import ContentSegmenter

__all__ = [
    "AttachmentError",
    "ConfigValidationError",
    "ContentSegmenter",
    "ConversationStore",
    "ErrorCategory",
    "ErrorClassifier",
    "GenerationError",
    "OnboardingValidationError",
    "SessionController",
    "SessionSettings",
    "TutorChatError",
    "ensure_config_dir",
    "load_config",
]

_EXCEPTIONS = {
    "AttachmentError",
    "ConfigValidationError",
    "GenerationError",
    "OnboardingValidationError",
    "TutorChatError",
}


def __getattr__(name: str) -> Any:
    """Lazily import symbols so provider SDKs load only when needed."""
    if name in {"SessionController", "SessionSettings"}:
        from . import controller

        return getattr(controller, name)
    if name in {"ensure_config_dir", "load_config"}:
        from . import config

        return getattr(config, name)
    if name in _EXCEPTIONS:
        from . import exceptions

        return getattr(exceptions, name)
    if name in {"ErrorCategory", "ErrorClassifier"}:
        from . import error_classifier

        return getattr(error_classifier, name)
    if name == "ConversationStore":
        from .conversation_store import ConversationStore

        return ConversationStore
    if name == "ContentSegmenter":
        from .segmenter import ContentSegmenter

        return ContentSegmenter
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
