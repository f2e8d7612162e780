"""Domain exception hierarchy for the tutoring chat session."""

from __future__ import annotations


class TutorChatError(RuntimeError):
    """Base class for all domain-level chat errors."""


class OnboardingValidationError(TutorChatError):
    """Raised when the selected role or grade cannot be accepted."""


class AttachmentError(TutorChatError):
    """Raised when a selected file cannot be read or encoded."""


class GenerationError(TutorChatError):
    """Raised when the remote generation service fails.

    The provider's own message text is preserved so it can be classified.
    """


class MissingCredentialError(GenerationError):
    """Raised when no usable API key is configured for the provider."""


class UnrecognizedResponseError(GenerationError):
    """Raised when a completion payload matches none of the known shapes."""


class ConfigValidationError(TutorChatError):
    """Raised when configuration cannot be validated safely."""
