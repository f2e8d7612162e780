"""Map raised failures onto stable, user-facing message categories."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import random
from typing import Any

LOGGER = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    GEO_RESTRICTION = "GeoRestriction"
    STREAM_PARSE_FAILURE = "StreamParseFailure"
    INVALID_CREDENTIAL = "InvalidCredential"
    UNKNOWN = "Unknown"
    ATTACHMENT_FAILURE = "AttachmentFailure"


DEFAULT_VPN_MESSAGES: tuple[str, ...] = (
    "The tutor can't reach you from here. A VPN might be the magic carpet you need.",
    "Looks like your location is off the map for this service. Try hopping on a VPN.",
    "The tutor is shy about your region. A VPN could help it say hello.",
    "Your internet passport got stamped 'denied'. A VPN may get you through.",
    "This service doesn't travel to your area yet. Teleport with a VPN and try again.",
    "Even tutors have border controls. A VPN might be your visa.",
    "The signal got lost at the border. Switch on a VPN and ask again.",
    "Your region is hidden behind a cloud. A VPN can part the clouds.",
)


@dataclass(frozen=True)
class ErrorMessages:
    """Immutable marker phrases and message texts used by the classifier."""

    geo_marker: str = "User location is not supported for the API use"
    stream_parse_marker: str = "failed to parse stream"
    credential_marker: str = "API key not valid"
    country_keyword: str = "burma"
    country_apology: str = (
        "Sorry, the tutor isn't available in Myanmar (Burma) yet. "
        "We hope to reach you soon."
    )
    vpn_messages: tuple[str, ...] = DEFAULT_VPN_MESSAGES
    stream_parse_failure: str = (
        "The reply got scrambled on its way to you. Please ask again."
    )
    invalid_credential: str = (
        "The tutor's API key is missing or invalid. "
        "Please review the generation settings in your configuration."
    )
    unknown: str = "Something went wrong while answering. Please try again."
    attachment_failure: str = "That file couldn't be read. Please choose another one."

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> ErrorMessages:
        """Build messages from the ``[errors]`` config section."""
        section = dict(config.get("errors", {}))
        pool = section.pop("vpn_messages", None)
        known = {name for name in cls.__dataclass_fields__ if name != "vpn_messages"}
        values = {key: str(value) for key, value in section.items() if key in known}
        if pool:
            values["vpn_messages"] = tuple(str(item) for item in pool)  # type: ignore[assignment]
        return cls(**values)  # type: ignore[arg-type]


@dataclass(frozen=True)
class ClassifiedError:
    category: ErrorCategory
    text: str


class ErrorClassifier:
    """Ordered, first-match rules over a failure's message text."""

    def __init__(
        self,
        messages: ErrorMessages | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.messages = messages or ErrorMessages()
        self._rng = rng or random.Random()

    def classify(self, exc: BaseException | str, user_input: str = "") -> ClassifiedError:
        """Classify a generation failure raised while answering ``user_input``."""
        text = str(exc)
        lowered = text.lower()
        messages = self.messages

        if messages.geo_marker.lower() in lowered:
            if messages.country_keyword and (
                messages.country_keyword.lower() in user_input.lower()
            ):
                result = ClassifiedError(
                    ErrorCategory.GEO_RESTRICTION, messages.country_apology
                )
            else:
                result = ClassifiedError(
                    ErrorCategory.GEO_RESTRICTION, self._pick_vpn_message()
                )
        elif messages.stream_parse_marker.lower() in lowered:
            result = ClassifiedError(
                ErrorCategory.STREAM_PARSE_FAILURE, messages.stream_parse_failure
            )
        elif messages.credential_marker.lower() in lowered:
            result = ClassifiedError(
                ErrorCategory.INVALID_CREDENTIAL, messages.invalid_credential
            )
        else:
            result = ClassifiedError(ErrorCategory.UNKNOWN, messages.unknown)

        LOGGER.info(
            "errors.classified",
            extra={
                "event": "errors.classified",
                "category": result.category.value,
                "error_type": type(exc).__name__,
            },
        )
        return result

    def classify_attachment_failure(self, exc: BaseException) -> ClassifiedError:
        """File-read failures bypass the message rules entirely."""
        LOGGER.info(
            "errors.classified",
            extra={
                "event": "errors.classified",
                "category": ErrorCategory.ATTACHMENT_FAILURE.value,
                "error_type": type(exc).__name__,
            },
        )
        return ClassifiedError(
            ErrorCategory.ATTACHMENT_FAILURE, self.messages.attachment_failure
        )

    def _pick_vpn_message(self) -> str:
        pool = self.messages.vpn_messages
        if not pool:
            return self.messages.unknown
        return self._rng.choice(pool)
