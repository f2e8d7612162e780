"""Session controller: onboarding, submission, streaming reveal and recovery."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any

from .animator import LoadingIndicator, StreamAnimator
from .attachments import AttachmentEncoder
from .config import DEFAULT_CONFIG
from .conversation_store import ConversationStore
from .error_classifier import ErrorClassifier, ErrorMessages
from .exceptions import AttachmentError, OnboardingValidationError
from .generation import (
    ChatMessage,
    GenerationClient,
    InlineData,
    MessagePart,
    build_generation_client,
    iterate_chunks,
)
from .models import (
    AttachmentHandle,
    ConversationSnapshot,
    Segment,
    Session,
    Turn,
    TurnRole,
    UserRole,
)
from .segmenter import ContentSegmenter
from .state import SessionState, StateManager
from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)

_FOLLOW_UP_TRAILING = " .!?…"


class _FormatDefaults(dict):
    def __missing__(self, key: str) -> str:
        return ""


@dataclass(frozen=True)
class SessionSettings:
    """Configuration points the controller reads but never mutates."""

    system_instruction: str
    greetings: Mapping[str, str]
    follow_up_phrases: tuple[str, ...]
    send_grade_context: bool
    grade_context_template: str
    min_grade: int
    max_grade: int
    pending_marker: str
    empty_reply: str = "(No response from the tutor.)"

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> SessionSettings:
        """Build settings from the ``[session]`` config section."""
        section = config.get("session", {})
        return cls(
            system_instruction=str(section.get("system_instruction", "")),
            greetings=MappingProxyType(dict(section.get("greetings", {}))),
            follow_up_phrases=tuple(
                str(phrase).strip().lower()
                for phrase in section.get("follow_up_phrases", [])
            ),
            send_grade_context=bool(section.get("send_grade_context", True)),
            grade_context_template=str(section.get("grade_context_template", "")),
            min_grade=int(section.get("min_grade", 1)),
            max_grade=int(section.get("max_grade", 11)),
            pending_marker=str(section.get("pending_marker", "...")),
        )


def validate_onboarding(
    role: UserRole | str,
    grade: int | str | None = None,
    *,
    min_grade: int = 1,
    max_grade: int = 11,
) -> tuple[UserRole, int | None]:
    """Return the accepted ``(role, grade)`` pair.

    Students need a whole-number grade within ``min_grade..max_grade``;
    teachers need none and any grade given is ignored.

    Raises:
        OnboardingValidationError: when the role or grade is not acceptable
    """
    try:
        selected = role if isinstance(role, UserRole) else UserRole(str(role).strip().lower())
    except ValueError:
        raise OnboardingValidationError(f"Unknown role {role!r}.") from None
    if selected is UserRole.UNSET:
        raise OnboardingValidationError("Choose whether you are a student or a teacher.")
    if selected is UserRole.TEACHER:
        return selected, None

    bounds_message = f"Grade must be a whole number from {min_grade} to {max_grade}."
    if grade is None or isinstance(grade, bool):
        raise OnboardingValidationError(bounds_message)
    try:
        value = int(str(grade).strip())
    except ValueError:
        raise OnboardingValidationError(bounds_message) from None
    if not min_grade <= value <= max_grade:
        raise OnboardingValidationError(bounds_message)
    return selected, value


class SessionController:
    """Own the conversation store and drive one tutoring session.

    Nothing raised by the generation client, the attachment reader or the
    animator escapes ``onboard`` or ``submit``: failures end up as the text
    of the in-flight reply turn or as ``session.notice``.
    """

    def __init__(
        self,
        client: GenerationClient,
        *,
        settings: SessionSettings | None = None,
        store: ConversationStore | None = None,
        segmenter: ContentSegmenter | None = None,
        animator: StreamAnimator | None = None,
        classifier: ErrorClassifier | None = None,
        encoder: AttachmentEncoder | None = None,
        task_manager: TaskManager | None = None,
        loading_period: float = 0.5,
        loading_marker: str = ".",
        loading_max_length: int = 3,
    ) -> None:
        self.client = client
        self.settings = settings or SessionSettings.from_config(DEFAULT_CONFIG)
        self.store = store or ConversationStore()
        self.segmenter = segmenter or ContentSegmenter.for_locale("my")
        self.animator = animator or StreamAnimator()
        self.classifier = classifier or ErrorClassifier()
        self.encoder = encoder or AttachmentEncoder()
        self.tasks = task_manager or TaskManager()
        self.loading_indicator = LoadingIndicator(
            self.tasks,
            period=loading_period,
            marker=loading_marker,
            max_length=loading_max_length,
            on_change=lambda _suffix: self._changed(),
        )
        self.state = StateManager()
        self.session = Session()
        self._on_change: Callable[[], Any] | None = None
        self._notify: Callable[[str], Any] | None = None
        self._episode = 0
        self._closed = False

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any],
        client: GenerationClient | None = None,
        **kwargs: Any,
    ) -> SessionController:
        """Wire every collaborator from a validated config dict."""
        animation = config.get("animation", {})
        segmenter_cfg = config.get("segmenter", {})
        attachments = config.get("attachments", {})
        return cls(
            client or build_generation_client(config),
            settings=SessionSettings.from_config(config),
            segmenter=ContentSegmenter.for_locale(
                str(segmenter_cfg.get("locale", "my")),
                segmenter_cfg.get("replacements"),
                image_lead_in=str(segmenter_cfg.get("image_lead_in", "")),
                drop_code_lines=bool(segmenter_cfg.get("drop_code_lines", False)),
            ),
            animator=StreamAnimator(
                greeting_delay=int(animation.get("greeting_char_delay_ms", 30)) / 1000,
                stream_delay=int(animation.get("stream_char_delay_ms", 20)) / 1000,
            ),
            classifier=ErrorClassifier(ErrorMessages.from_config(config)),
            encoder=AttachmentEncoder(
                max_bytes=int(attachments.get("max_bytes", 10 * 1024 * 1024))
            ),
            loading_period=int(animation.get("loading_period_ms", 500)) / 1000,
            loading_marker=str(animation.get("loading_marker", ".")),
            loading_max_length=int(animation.get("loading_max_length", 3)),
            **kwargs,
        )

    def on_change(self, callback: Callable[[], Any]) -> None:
        """Register callback invoked after every visible state change."""
        self._on_change = callback

    def on_notice(self, callback: Callable[[str], Any]) -> None:
        """Register callback for locally recovered failures (toast-style)."""
        self._notify = callback

    # ------------------------------------------------------------------
    # Display boundary

    def snapshot(self) -> ConversationSnapshot:
        """Return a read-only view of turns, session flags and segments."""
        turns = self.store.turns
        return ConversationSnapshot(
            turns=turns,
            session=self.session.copy(),
            state=self.state.current.value,
            loading_suffix=self.loading_indicator.suffix,
            segments=tuple(tuple(self.segments(turn)) for turn in turns),
        )

    def segments(self, turn: Turn) -> list[Segment]:
        return self.segmenter.segment(turn.content)

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    def _report(self, text: str) -> None:
        self.session.notice = text
        if self._notify is not None:
            self._notify(text)
        self._changed()

    async def _transition(self, new_state: SessionState) -> None:
        await self.state.transition_to(new_state)
        LOGGER.info(
            "session.state.transition",
            extra={"event": "session.state.transition", "to_state": new_state.value},
        )

    # ------------------------------------------------------------------
    # Onboarding

    async def start_onboarding(self) -> None:
        """Move from the initial state into onboarding."""
        if await self.state.transition_if(
            SessionState.UNONBOARDED, SessionState.ONBOARDING
        ):
            LOGGER.info(
                "session.state.transition",
                extra={
                    "event": "session.state.transition",
                    "from_state": SessionState.UNONBOARDED.value,
                    "to_state": SessionState.ONBOARDING.value,
                },
            )

    async def onboard(self, role: UserRole | str, grade: int | str | None = None) -> bool:
        """Validate role and grade, then play the greeting as turn index 0.

        Returns False, leaving the session unonboarded with ``notice`` set,
        when validation fails or onboarding already finished.
        """
        if self._closed:
            return False
        await self.start_onboarding()
        if await self.state.get_state() is not SessionState.ONBOARDING:
            return False

        try:
            selected, grade_value = validate_onboarding(
                role,
                grade,
                min_grade=self.settings.min_grade,
                max_grade=self.settings.max_grade,
            )
        except OnboardingValidationError as exc:
            LOGGER.info(
                "session.onboarding.rejected",
                extra={"event": "session.onboarding.rejected", "reason": str(exc)},
            )
            self._report(str(exc))
            return False

        greeting = self.greeting_text(selected, grade_value)
        self.session.role = selected
        self.session.grade = grade_value
        self.session.notice = ""
        LOGGER.info(
            "session.onboarding.accepted",
            extra={
                "event": "session.onboarding.accepted",
                "role": selected.value,
                "grade": grade_value,
            },
        )
        await self._play_greeting(greeting)
        return True

    async def restart_onboarding(self) -> None:
        """Discard the conversation and return to role selection."""
        self._episode += 1
        self.animator.cancel()
        await self.loading_indicator.stop()
        self.store.reset()
        self.session = Session()
        await self._transition(SessionState.ONBOARDING)
        self._changed()

    def greeting_text(self, role: UserRole, grade: int | None = None) -> str:
        """Format the configured greeting for ``role``.

        A template that cannot be formatted is shown as written.
        """
        template = self.settings.greetings.get(role.value, "")
        try:
            return template.format_map(_FormatDefaults(role=role.value, grade=grade or ""))
        except (ValueError, IndexError, AttributeError) as exc:
            LOGGER.warning(
                "session.greeting.template_invalid",
                extra={
                    "event": "session.greeting.template_invalid",
                    "role": role.value,
                    "error": str(exc),
                },
            )
            return template

    async def _play_greeting(self, text: str) -> None:
        episode = self._episode
        self.session.loading = True
        await self._transition(SessionState.STREAMING)
        self.store.set_greeting("")
        self.loading_indicator.start()
        self._changed()
        if not self._closed:
            self.animator.reset()
        try:
            await self.animator.reveal(
                text, lambda prefix: self._update_greeting(episode, prefix)
            )
            if not self.animator.cancelled:
                self._update_greeting(episode, text)
        finally:
            if episode == self._episode:
                self.session.loading = False
                await self.loading_indicator.stop()
                await self._transition(SessionState.IDLE)
                self._changed()

    def _update_greeting(self, episode: int, content: str) -> None:
        if episode == self._episode and self.store.update_greeting(content):
            self._changed()

    # ------------------------------------------------------------------
    # Submission

    def select_attachment(self, path: str | Path) -> bool:
        """Remember one file to send with the next submission."""
        if self.session.loading or self._closed:
            return False
        self.session.pending_attachment = Path(path)
        self._changed()
        return True

    def is_follow_up(self, text: str) -> bool:
        normalized = text.strip().lower().rstrip(_FOLLOW_UP_TRAILING)
        return normalized in self.settings.follow_up_phrases

    def resolve_upstream_text(self, user_input: str) -> str:
        """Swap a follow-up phrase for the nearest earlier user question."""
        if not self.is_follow_up(user_input):
            return user_input
        for turn in reversed(self.store.history_before_last(2)):
            if turn.role is TurnRole.USER:
                LOGGER.info(
                    "session.follow_up.resolved",
                    extra={"event": "session.follow_up.resolved"},
                )
                return turn.content
        return user_input

    def system_instruction(self) -> str:
        base = self.settings.system_instruction.strip()
        if not self.settings.send_grade_context or not self.session.onboarded:
            return base
        grade = self.session.grade
        context = self.settings.grade_context_template.format_map(
            _FormatDefaults(
                role=self.session.role.value,
                grade=grade or "",
                grade_clause=f" in grade {grade}" if grade else "",
            )
        ).strip()
        return f"{base}\n\n{context}" if base and context else base or context

    def build_request(
        self, upstream_text: str, attachment: AttachmentHandle | None = None
    ) -> list[ChatMessage]:
        """History (greeting and current pair excluded) plus the current entry."""
        messages = [
            ChatMessage.text_only(turn.role.wire_role, turn.content)
            for turn in self.store.history_before_last(2)
        ]
        parts = [MessagePart(text=upstream_text)]
        if attachment is not None:
            parts.append(
                MessagePart(
                    inline_data=InlineData(
                        data=attachment.base64_data, mime_type=attachment.mime_type
                    )
                )
            )
        messages.append(ChatMessage(role="user", parts=tuple(parts)))
        return messages

    async def submit(self, text: str) -> bool:
        """Send ``text`` upstream and reveal the reply into a new model turn.

        Returns False without any side effect when the input is blank, a
        request is already in flight or onboarding has not finished.
        """
        user_input = text.strip()
        if (
            not user_input
            or self.session.loading
            or not self.session.onboarded
            or self._closed
        ):
            LOGGER.debug(
                "session.submit.ignored", extra={"event": "session.submit.ignored"}
            )
            return False

        self.session.loading = True
        episode = self._episode
        entered = False
        try:
            entered = await self.state.transition_if(
                SessionState.IDLE, SessionState.SUBMITTING
            )
            if not entered:
                return False
            attachment_path = self.session.pending_attachment
            self.loading_indicator.start()
            self._changed()
            await self._run_submission(episode, user_input, attachment_path)
            return True
        finally:
            if episode == self._episode:
                self.session.loading = False
                if entered:
                    self.session.pending_attachment = None
                    await self.loading_indicator.stop()
                    await self._transition(SessionState.IDLE)
                self._changed()

    async def _run_submission(
        self, episode: int, user_input: str, attachment_path: Path | None
    ) -> None:
        handle: AttachmentHandle | None = None
        if attachment_path is not None:
            try:
                handle = await self.encoder.encode(attachment_path)
            except Exception as exc:  # noqa: BLE001 - any read failure is an attachment failure.
                if not isinstance(exc, AttachmentError):
                    LOGGER.warning(
                        "attachment.unexpected_error",
                        extra={
                            "event": "attachment.unexpected_error",
                            "error_type": type(exc).__name__,
                        },
                    )
                self._report(self.classifier.classify_attachment_failure(exc).text)
                return
        if episode != self._episode:
            return

        self.store.append(
            [
                Turn(role=TurnRole.USER, content=user_input, attachment=handle),
                Turn(role=TurnRole.MODEL, content=self.settings.pending_marker),
            ]
        )
        self._changed()

        try:
            messages = self.build_request(self.resolve_upstream_text(user_input), handle)
            await self._transition(SessionState.STREAMING)
            if not self._closed:
                self.animator.reset()
            result = self.client.generate(self.system_instruction(), messages)
            reply = await self.animator.reveal_stream(
                iterate_chunks(result),
                lambda prefix: self._update_reply(episode, prefix),
                on_first_chunk=lambda: self._update_reply(episode, ""),
            )
            if self.animator.cancelled:
                return
            self._update_reply(episode, reply or self.settings.empty_reply)
            LOGGER.info(
                "session.reply.complete",
                extra={"event": "session.reply.complete", "chars": len(reply)},
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - every failure becomes the reply text.
            classified = self.classifier.classify(exc, user_input)
            LOGGER.warning(
                "session.reply.failed",
                extra={
                    "event": "session.reply.failed",
                    "category": classified.category.value,
                    "error_type": type(exc).__name__,
                },
            )
            self._update_reply(episode, classified.text)

    def _update_reply(self, episode: int, content: str) -> None:
        if episode != self._episode:
            return
        last = self.store.last
        if last is None or last.content == content:
            return
        if self.store.update_last(TurnRole.MODEL, content):
            self._changed()

    # ------------------------------------------------------------------
    # Teardown

    async def close(self) -> None:
        """Stop every timer so nothing mutates the store after teardown."""
        self._closed = True
        self._episode += 1
        self.animator.cancel()
        await self.loading_indicator.stop()
        await self.tasks.cancel_all()
