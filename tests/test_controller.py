"""Tests for the session controller lifecycle."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from dataclasses import replace
from pathlib import Path
import random
import tempfile
import unittest

from tutor_chat.animator import StreamAnimator
from tutor_chat.config import DEFAULT_CONFIG
from tutor_chat.controller import SessionController, SessionSettings, validate_onboarding
from tutor_chat.conversation_store import ConversationStore
from tutor_chat.error_classifier import ErrorClassifier, ErrorMessages
from tutor_chat.exceptions import GenerationError, OnboardingValidationError
from tutor_chat.generation import ChatMessage
from tutor_chat.models import LinkKind, LinkSegment, TurnRole, UserRole
from tutor_chat.state import SessionState


class FakeClient:
    """Generation client double that records every request."""

    def __init__(
        self,
        chunks: Sequence[str] = ("Hello!",),
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.chunks = list(chunks)
        self.error = error
        self.gate = gate
        self.calls: list[tuple[str, list[ChatMessage]]] = []

    def generate(
        self, system_instruction: str, messages: Sequence[ChatMessage]
    ) -> AsyncIterator[str]:
        self.calls.append((system_instruction, list(messages)))
        if self.error is not None:
            raise self.error
        return self._stream()

    async def _stream(self) -> AsyncIterator[str]:
        if self.gate is not None:
            await self.gate.wait()
        for chunk in self.chunks:
            yield chunk


class RecordingStore(ConversationStore):
    def __init__(self) -> None:
        super().__init__()
        self.updates: list[str] = []

    def update_last(self, role: TurnRole, content: str) -> bool:
        changed = super().update_last(role, content)
        if changed:
            self.updates.append(content)
        return changed


def _controller(client: FakeClient, **kwargs: object) -> SessionController:
    return SessionController(
        client,  # type: ignore[arg-type]
        animator=StreamAnimator(greeting_delay=0, stream_delay=0),
        **kwargs,  # type: ignore[arg-type]
    )


async def _wait_for_call(client: FakeClient) -> None:
    for _ in range(100):
        if client.calls:
            return
        await asyncio.sleep(0)
    raise AssertionError("generation client was never called")


class ValidateOnboardingTests(unittest.TestCase):
    """Validate role and grade acceptance rules."""

    def test_student_grades_within_bounds_are_accepted(self) -> None:
        for grade in (1, 6, 11, "7", " 3 "):
            with self.subTest(grade=grade):
                role, value = validate_onboarding("student", grade)
                self.assertIs(role, UserRole.STUDENT)
                self.assertEqual(value, int(str(grade).strip()))

    def test_student_grades_outside_bounds_are_rejected(self) -> None:
        for grade in (0, 12, -1, "abc", "", None, True, "2.5"):
            with self.subTest(grade=grade):
                with self.assertRaises(OnboardingValidationError):
                    validate_onboarding("student", grade)

    def test_teacher_needs_no_grade(self) -> None:
        self.assertEqual(validate_onboarding("Teacher", None), (UserRole.TEACHER, None))
        self.assertEqual(validate_onboarding(UserRole.TEACHER, 99), (UserRole.TEACHER, None))

    def test_unknown_and_unset_roles_are_rejected(self) -> None:
        for role in ("parent", "unset", UserRole.UNSET):
            with self.subTest(role=role):
                with self.assertRaises(OnboardingValidationError):
                    validate_onboarding(role, 5)


class OnboardingTests(unittest.IsolatedAsyncioTestCase):
    """Validate onboarding and the greeting reveal."""

    async def test_student_onboarding_plays_greeting(self) -> None:
        controller = _controller(FakeClient())
        changes: list[bool] = []
        controller.on_change(lambda: changes.append(True))

        self.assertTrue(await controller.onboard("student", "5"))

        turns = controller.store.turns
        self.assertEqual(len(turns), 1)
        self.assertIs(turns[0].role, TurnRole.MODEL)
        self.assertIn("grade 5", turns[0].content)
        self.assertTrue(controller.store.has_greeting)
        self.assertEqual(controller.session.grade, 5)
        self.assertFalse(controller.session.loading)
        self.assertIs(controller.state.current, SessionState.IDLE)
        self.assertTrue(changes)
        await controller.close()

    async def test_invalid_grade_keeps_session_unonboarded(self) -> None:
        controller = _controller(FakeClient())
        notices: list[str] = []
        controller.on_notice(notices.append)

        self.assertFalse(await controller.onboard("student", 12))

        self.assertIs(controller.session.role, UserRole.UNSET)
        self.assertIs(controller.state.current, SessionState.ONBOARDING)
        self.assertEqual(len(controller.store), 0)
        self.assertEqual(notices, [controller.session.notice])
        self.assertIn("1 to 11", controller.session.notice)

        self.assertTrue(await controller.onboard("teacher"))
        self.assertEqual(controller.session.notice, "")
        await controller.close()

    async def test_malformed_greeting_template_is_shown_as_written(self) -> None:
        settings = replace(
            SessionSettings.from_config(DEFAULT_CONFIG),
            greetings={"teacher": "Hello {} teacher"},
        )
        controller = _controller(FakeClient(), settings=settings)

        with self.assertLogs("tutor_chat.controller", level="WARNING") as logs:
            self.assertTrue(await controller.onboard("teacher"))

        self.assertTrue(any("session.greeting.template_invalid" in line for line in logs.output))
        self.assertEqual(controller.store.turns[0].content, "Hello {} teacher")
        self.assertIs(controller.state.current, SessionState.IDLE)
        self.assertTrue(await controller.submit("hi"))
        self.assertEqual(len(controller.store), 3)
        await controller.close()

    async def test_loading_indicator_runs_during_greeting(self) -> None:
        observed: list[bool] = []
        holder: list[SessionController] = []

        async def observing_sleep(_delay: float) -> None:
            observed.append(holder[0].loading_indicator.running)
            await asyncio.sleep(0)

        controller = SessionController(
            FakeClient(),  # type: ignore[arg-type]
            animator=StreamAnimator(sleep=observing_sleep),
        )
        holder.append(controller)
        await controller.onboard("teacher")

        self.assertTrue(observed)
        self.assertTrue(all(observed))
        self.assertFalse(controller.loading_indicator.running)
        self.assertEqual(controller.loading_indicator.suffix, "")
        await controller.close()

    async def test_second_onboarding_is_ignored(self) -> None:
        controller = _controller(FakeClient())
        await controller.onboard("teacher")
        self.assertFalse(await controller.onboard("student", 3))
        self.assertIs(controller.session.role, UserRole.TEACHER)
        await controller.close()

    async def test_restart_clears_conversation(self) -> None:
        controller = _controller(FakeClient())
        await controller.onboard("student", 2)
        await controller.submit("Hi")
        await controller.restart_onboarding()

        self.assertEqual(len(controller.store), 0)
        self.assertIs(controller.session.role, UserRole.UNSET)
        self.assertIs(controller.state.current, SessionState.ONBOARDING)
        self.assertTrue(await controller.onboard("teacher"))
        await controller.close()


class SubmissionTests(unittest.IsolatedAsyncioTestCase):
    """Validate submission, streaming reveal and failure handling."""

    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    async def test_reply_is_revealed_into_placeholder(self) -> None:
        store = RecordingStore()
        client = FakeClient(chunks=["Hel", "lo!"])
        controller = _controller(client, store=store)
        await controller.onboard("student", 5)

        self.assertTrue(await controller.submit("  Hi  "))

        self.assertEqual(
            store.updates, ["", "H", "He", "Hel", "Hell", "Hello", "Hello!"]
        )
        turns = controller.store.turns
        self.assertEqual([t.role for t in turns], [TurnRole.MODEL, TurnRole.USER, TurnRole.MODEL])
        self.assertEqual(turns[1].content, "Hi")
        self.assertEqual(turns[2].content, "Hello!")
        self.assertFalse(controller.session.loading)
        self.assertIs(controller.state.current, SessionState.IDLE)
        self.assertEqual(controller.loading_indicator.suffix, "")

        system_instruction, messages = client.calls[0]
        self.assertEqual([m.to_dict() for m in messages], [{"role": "user", "parts": [{"text": "Hi"}]}])
        self.assertIn("The user is a student in grade 5.", system_instruction)
        await controller.close()

    async def test_history_excludes_greeting_and_maps_roles(self) -> None:
        client = FakeClient(chunks=["A1"])
        controller = _controller(client)
        await controller.onboard("teacher")
        await controller.submit("Q1")
        await controller.submit("Q2")

        _system, messages = client.calls[1]
        self.assertEqual(
            [(m.role, m.text) for m in messages],
            [("user", "Q1"), ("assistant", "A1"), ("user", "Q2")],
        )
        await controller.close()

    async def test_follow_up_phrase_resends_previous_question(self) -> None:
        client = FakeClient(chunks=["Plants make food."])
        controller = _controller(client)
        await controller.onboard("student", 4)
        await controller.submit("What is photosynthesis?")
        await controller.submit("Tell me more!")

        _system, messages = client.calls[1]
        self.assertEqual(messages[-1].text, "What is photosynthesis?")
        self.assertEqual(controller.store.turns[-2].content, "Tell me more!")
        await controller.close()

    async def test_follow_up_without_prior_question_is_sent_verbatim(self) -> None:
        client = FakeClient()
        controller = _controller(client)
        await controller.onboard("student", 4)
        await controller.submit("continue")
        self.assertEqual(client.calls[0][1][-1].text, "continue")
        await controller.close()

    async def test_ignored_submissions_have_no_side_effects(self) -> None:
        client = FakeClient()
        controller = _controller(client)
        self.assertFalse(await controller.submit("Hi"))

        await controller.onboard("student", 5)
        self.assertFalse(await controller.submit("   "))
        self.assertEqual(len(controller.store), 1)
        self.assertEqual(client.calls, [])
        await controller.close()

    async def test_submission_while_loading_is_ignored(self) -> None:
        gate = asyncio.Event()
        client = FakeClient(chunks=["ok"], gate=gate)
        controller = _controller(client)
        await controller.onboard("student", 5)

        first = asyncio.create_task(controller.submit("one"))
        await _wait_for_call(client)
        self.assertTrue(controller.session.loading)
        self.assertFalse(await controller.submit("two"))

        gate.set()
        self.assertTrue(await first)
        self.assertEqual(len(client.calls), 1)
        self.assertEqual(len(controller.store), 3)
        await controller.close()

    async def test_failure_becomes_reply_text(self) -> None:
        client = FakeClient(error=GenerationError("API key not valid. Please pass a valid API key."))
        controller = _controller(client)
        await controller.onboard("teacher")

        with self.assertLogs("tutor_chat.controller", level="WARNING"):
            self.assertTrue(await controller.submit("Hi"))

        self.assertEqual(controller.store.last.content, ErrorMessages().invalid_credential)
        self.assertFalse(controller.session.loading)
        self.assertIs(controller.state.current, SessionState.IDLE)
        await controller.close()

    async def test_geo_failure_mentions_country_when_asked_about_it(self) -> None:
        client = FakeClient(error=GenerationError("User location is not supported for the API use."))
        controller = _controller(client, classifier=ErrorClassifier(rng=random.Random(1)))
        await controller.onboard("teacher")

        with self.assertLogs("tutor_chat.controller", level="WARNING"):
            await controller.submit("Lesson about Burma")
        self.assertEqual(controller.store.last.content, ErrorMessages().country_apology)
        await controller.close()

    async def test_empty_stream_gets_fallback_text(self) -> None:
        controller = _controller(FakeClient(chunks=[]))
        await controller.onboard("teacher")
        await controller.submit("Hi")
        self.assertEqual(controller.store.last.content, controller.settings.empty_reply)
        await controller.close()

    async def test_attachment_is_sent_as_inline_data(self) -> None:
        path = Path(self._tmp.name) / "leaf.png"
        path.write_bytes(b"leaf")
        client = FakeClient()
        controller = _controller(client)
        await controller.onboard("student", 6)

        self.assertTrue(controller.select_attachment(path))
        await controller.submit("What is this?")

        message = client.calls[0][1][-1]
        self.assertEqual(message.text, "What is this?")
        self.assertEqual(message.inline_parts[0].mime_type, "image/png")
        self.assertIsNotNone(controller.store.turns[1].attachment)
        self.assertIsNone(controller.session.pending_attachment)
        await controller.close()

    async def test_unusable_attachment_paths_become_attachment_failures(self) -> None:
        for path in ("bad\x00name.png", "~no_such_user_tutor_chat/x.png"):
            with self.subTest(path=path):
                client = FakeClient()
                controller = _controller(client)
                notices: list[str] = []
                controller.on_notice(notices.append)
                await controller.onboard("teacher")

                controller.select_attachment(path)
                self.assertTrue(await controller.submit("hello"))

                self.assertEqual(notices, [ErrorMessages().attachment_failure])
                self.assertEqual(len(controller.store), 1)
                self.assertEqual(client.calls, [])
                self.assertFalse(controller.session.loading)
                self.assertIs(controller.state.current, SessionState.IDLE)
                await controller.close()

    async def test_attachment_failure_creates_no_turns(self) -> None:
        client = FakeClient()
        controller = _controller(client)
        notices: list[str] = []
        controller.on_notice(notices.append)
        await controller.onboard("student", 6)

        controller.select_attachment(Path(self._tmp.name) / "missing.png")
        await controller.submit("What is this?")

        self.assertEqual(len(controller.store), 1)
        self.assertEqual(client.calls, [])
        self.assertEqual(notices, [ErrorMessages().attachment_failure])
        self.assertFalse(controller.session.loading)
        self.assertIsNone(controller.session.pending_attachment)
        self.assertIs(controller.state.current, SessionState.IDLE)
        await controller.close()

    async def test_restart_during_stream_drops_late_steps(self) -> None:
        gate = asyncio.Event()
        client = FakeClient(chunks=["late"], gate=gate)
        controller = _controller(client)
        await controller.onboard("student", 5)

        pending = asyncio.create_task(controller.submit("Hi"))
        await _wait_for_call(client)
        await controller.restart_onboarding()
        gate.set()
        await pending

        self.assertEqual(len(controller.store), 0)
        self.assertIs(controller.state.current, SessionState.ONBOARDING)
        self.assertFalse(controller.session.loading)
        await controller.close()

    async def test_snapshot_segments_reply_links(self) -> None:
        client = FakeClient(chunks=["**Read** [Resource_URL: https://e.org/x]"])
        controller = _controller(client)
        await controller.onboard("teacher")
        await controller.submit("Resources?")

        snapshot = controller.snapshot()
        self.assertEqual(snapshot.state, "IDLE")
        self.assertIn(
            LinkSegment(LinkKind.RESOURCE, "https://e.org/x"), snapshot.segments[-1]
        )
        self.assertEqual(snapshot.turns[-1].content, "**Read** [Resource_URL: https://e.org/x]")
        await controller.close()

    async def test_close_stops_further_submissions(self) -> None:
        client = FakeClient()
        controller = _controller(client)
        await controller.onboard("teacher")
        await controller.close()

        self.assertFalse(await controller.submit("Hi"))
        self.assertFalse(controller.select_attachment("x.png"))
        self.assertFalse(controller.loading_indicator.running)
        self.assertEqual(client.calls, [])


if __name__ == "__main__":
    unittest.main()
