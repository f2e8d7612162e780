"""Configuration loading and validation for the tutoring chat session."""

from __future__ import annotations

from copy import deepcopy
import logging
import os
from pathlib import Path
from typing import Any, Literal

from platformdirs import user_config_path
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .error_classifier import DEFAULT_VPN_MESSAGES, ErrorMessages
from .exceptions import ConfigValidationError
from .segmenter import DEFAULT_LOCALE_REPLACEMENTS

import tomllib

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = user_config_path("tutor-chat")
CONFIG_PATH = CONFIG_DIR / "config.toml"

API_KEY_ENV_VARS = ("TUTOR_CHAT_API_KEY", "GEMINI_API_KEY")
VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
DEFAULT_MODELS: dict[str, str] = {"gemini": "gemini-2.0-flash", "ollama": "llama3.2"}
MIN_VPN_MESSAGES = 8

DEFAULT_SYSTEM_INSTRUCTION = (
    "You are a friendly, patient tutor for school students and their teachers. "
    "Explain step by step in simple language. When you recommend a resource, "
    "an image or a lesson plan, annotate it exactly as [Resource_URL: <url>], "
    "[Image_URL: <url>] or [Lesson_Plan_URL: <url>]."
)


def _non_empty(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("Expected a string value.")
    normalized = value.strip()
    if not normalized:
        raise ValueError("String value must not be empty.")
    return normalized


class AppConfig(BaseModel):
    """Application metadata."""

    title: str = "Tutor Chat"

    @field_validator("title", mode="before")
    @classmethod
    def _validate_title(cls, value: Any) -> str:
        return _non_empty(value)


class GenerationConfig(BaseModel):
    """Remote generation provider, credential and model identifier.

    An empty ``model`` selects the provider default from ``DEFAULT_MODELS``.
    """

    provider: Literal["gemini", "ollama", "endpoint"] = "gemini"
    model: str = ""
    api_key: str = ""
    host: str = "http://localhost:11434"
    endpoint: str = ""
    timeout: int = Field(default=120, ge=1, le=3600)

    @field_validator("provider", mode="before")
    @classmethod
    def _normalize_provider(cls, value: Any) -> str:
        return _non_empty(value).lower()

    @field_validator("host", mode="before")
    @classmethod
    def _validate_required_string(cls, value: Any) -> str:
        return _non_empty(value)

    @field_validator("model", "api_key", "endpoint", mode="before")
    @classmethod
    def _normalize_optional_string(cls, value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError("Expected a string value.")
        return value.strip()

    @model_validator(mode="after")
    def _require_endpoint(self) -> GenerationConfig:
        if self.provider == "endpoint" and not self.endpoint:
            raise ValueError("generation.endpoint is required for the endpoint provider.")
        return self


class SessionConfig(BaseModel):
    """Onboarding, greeting and request-assembly settings."""

    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION
    greetings: dict[str, str] = Field(
        default_factory=lambda: {
            "student": (
                "Hi! I'm your AI tutor. Ask me anything about your grade {grade} "
                "lessons and we'll work through it together."
            ),
            "teacher": (
                "Hello, teacher! I can help you plan lessons, find resources "
                "and explain tricky topics. What are you working on today?"
            ),
        }
    )
    follow_up_phrases: list[str] = Field(
        default_factory=lambda: ["tell me more", "i want to continue", "continue", "go on"]
    )
    send_grade_context: bool = True
    grade_context_template: str = "The user is a {role}{grade_clause}."
    min_grade: int = Field(default=1, ge=0)
    max_grade: int = Field(default=11, ge=1)
    pending_marker: str = "..."

    @field_validator("greetings", mode="before")
    @classmethod
    def _validate_greetings(cls, value: Any) -> dict[str, str]:
        if not isinstance(value, dict):
            raise ValueError("greetings must be a table of role -> text.")
        greetings: dict[str, str] = {}
        for role, text in value.items():
            if not isinstance(role, str) or not isinstance(text, str):
                raise ValueError("greetings keys and values must be strings.")
            greetings[role.strip().lower()] = text
        return greetings

    @field_validator("follow_up_phrases", mode="before")
    @classmethod
    def _normalize_phrases(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("follow_up_phrases must be a list.")
        phrases: list[str] = []
        for item in value:
            if not isinstance(item, str):
                raise ValueError("follow_up_phrases entries must be strings.")
            candidate = item.strip().lower()
            if candidate and candidate not in phrases:
                phrases.append(candidate)
        return phrases

    @field_validator("pending_marker", mode="before")
    @classmethod
    def _validate_marker(cls, value: Any) -> str:
        return _non_empty(value)

    @model_validator(mode="after")
    def _validate_grade_bounds(self) -> SessionConfig:
        if self.min_grade > self.max_grade:
            raise ValueError("session.min_grade must not exceed session.max_grade.")
        return self


class AnimationConfig(BaseModel):
    """Typing reveal and loading indicator timing."""

    greeting_char_delay_ms: int = Field(default=30, ge=0, le=5000)
    stream_char_delay_ms: int = Field(default=20, ge=0, le=5000)
    loading_period_ms: int = Field(default=500, ge=10, le=10_000)
    loading_marker: str = "."
    loading_max_length: int = Field(default=3, ge=0, le=10)


class ErrorsConfig(BaseModel):
    """Marker phrases and user-facing texts for failure classification."""

    geo_marker: str = ErrorMessages.geo_marker
    stream_parse_marker: str = ErrorMessages.stream_parse_marker
    credential_marker: str = ErrorMessages.credential_marker
    country_keyword: str = ErrorMessages.country_keyword
    country_apology: str = ErrorMessages.country_apology
    vpn_messages: list[str] = Field(default_factory=lambda: list(DEFAULT_VPN_MESSAGES))
    stream_parse_failure: str = ErrorMessages.stream_parse_failure
    invalid_credential: str = ErrorMessages.invalid_credential
    unknown: str = ErrorMessages.unknown
    attachment_failure: str = ErrorMessages.attachment_failure

    @field_validator("vpn_messages", mode="before")
    @classmethod
    def _validate_pool(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            raise ValueError("vpn_messages must be a list of strings.")
        pool = [item.strip() for item in value if isinstance(item, str) and item.strip()]
        if len(pool) < MIN_VPN_MESSAGES:
            raise ValueError(
                f"vpn_messages must contain at least {MIN_VPN_MESSAGES} messages."
            )
        return pool


class SegmenterConfig(BaseModel):
    """Display segmentation options and per-locale normalization pairs."""

    locale: str = "my"
    replacements: dict[str, dict[str, str]] = Field(
        default_factory=lambda: deepcopy(DEFAULT_LOCALE_REPLACEMENTS)
    )
    image_lead_in: str = ""
    drop_code_lines: bool = False


class AttachmentsConfig(BaseModel):
    max_bytes: int = Field(default=10 * 1024 * 1024, ge=1, le=100 * 1024 * 1024)


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/tutor-chat/app.log"

    @field_validator("level", mode="before")
    @classmethod
    def _validate_level(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Logging level must be a string.")
        normalized = value.strip().upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level {normalized!r}.")
        return normalized

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _validate_log_file_path(cls, value: Any) -> str:
        return _non_empty(value)


class Config(BaseModel):
    """Root configuration model for all sections."""

    model_config = ConfigDict(populate_by_name=True)
    app: AppConfig = AppConfig()
    generation: GenerationConfig = GenerationConfig()
    session: SessionConfig = SessionConfig()
    animation: AnimationConfig = AnimationConfig()
    errors: ErrorsConfig = ErrorsConfig()
    segmenter: SegmenterConfig = SegmenterConfig()
    attachments: AttachmentsConfig = AttachmentsConfig()
    logging: LoggingConfig = LoggingConfig()


DEFAULT_CONFIG: dict[str, dict[str, Any]] = Config().model_dump()


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure that the config directory exists and return its path."""
    directory = config_dir or CONFIG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create config directory %s: %s", directory, exc)
    return directory


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values."""
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_environment(raw: dict[str, Any]) -> dict[str, Any]:
    """Fill the API key from the environment when the file leaves it blank."""
    generation = raw.setdefault("generation", {})
    if str(generation.get("api_key") or "").strip():
        return raw
    for name in API_KEY_ENV_VARS:
        value = os.environ.get(name, "").strip()
        if value:
            generation["api_key"] = value
            break
    return raw


def _safe_default_config() -> dict[str, dict[str, Any]]:
    """Return a deep copy of validated default config data."""
    return _apply_environment(deepcopy(DEFAULT_CONFIG))


def _validate_config(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Validate merged config and fallback to safe defaults when possible."""
    try:
        return Config.model_validate(raw).model_dump()
    except ValidationError as exc:
        LOGGER.warning("Configuration validation failed, using safe defaults: %s", exc)
        return _safe_default_config()
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def load_config(config_path: Path | None = None) -> dict[str, dict[str, Any]]:
    """
    Load configuration from TOML, merge with defaults, and validate.

    The optional ``config_path`` argument is intended for tests and tooling.
    """
    target_path = config_path or CONFIG_PATH

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            LOGGER.warning("Failed to parse config at %s: %s", target_path, exc)
            raw_data = {}

    merged = _apply_environment(_deep_merge(DEFAULT_CONFIG, raw_data))
    return _validate_config(merged)
