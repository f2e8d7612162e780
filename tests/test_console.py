"""Tests for the rich console front end."""

from __future__ import annotations

import io
import unittest

from rich.console import Console

from tutor_chat.animator import StreamAnimator
from tutor_chat.console import ConsoleApp, render_segments, render_turn
from tutor_chat.controller import SessionController
from tutor_chat.models import LinkKind, LinkSegment, TextSegment, Turn, TurnRole
from tutor_chat.state import SessionState


class ScriptedClient:
    def __init__(self, reply: str) -> None:
        self.reply = reply
        self.questions: list[str] = []

    async def generate(self, system_instruction: str, messages: list) -> str:
        self.questions.append(messages[-1].text)
        return self.reply


def _scripted_input(lines: list[str]):
    pending = list(lines)

    def read_line(_prompt: str) -> str:
        if not pending:
            raise EOFError
        return pending.pop(0)

    return read_line


def _app(client: ScriptedClient, lines: list[str]) -> tuple[ConsoleApp, io.StringIO]:
    output = io.StringIO()
    controller = SessionController(
        client,  # type: ignore[arg-type]
        animator=StreamAnimator(greeting_delay=0, stream_delay=0),
    )
    app = ConsoleApp(
        controller,
        console=Console(file=output, force_terminal=False, width=200),
        read_line=_scripted_input(lines),
    )
    return app, output


class RenderTests(unittest.TestCase):
    """Validate segment rendering."""

    def test_links_are_labelled_and_styled(self) -> None:
        text = render_segments(
            [
                TextSegment("See "),
                LinkSegment(LinkKind.LESSON_PLAN, "https://lp.example/1"),
            ]
        )
        self.assertEqual(text.plain, "See Lesson plan: https://lp.example/1")
        self.assertTrue(any(span.style.link == "https://lp.example/1" for span in text.spans))

    def test_turn_prefix_and_loading_suffix(self) -> None:
        turn = Turn(TurnRole.MODEL, "")
        rendered = render_turn(turn, [TextSegment("")], suffix="..")
        self.assertEqual(rendered.plain, "Tutor: ..")


class ConsoleAppTests(unittest.IsolatedAsyncioTestCase):
    """Validate the scripted console loop end to end."""

    async def test_session_round_trip(self) -> None:
        client = ScriptedClient("Hello from your tutor!")
        app, output = _app(client, ["student", "42", "student", "3", "Hi", "/quit"])

        await app.run()

        text = output.getvalue()
        self.assertIn("1 to 11", text)
        self.assertIn("grade 3", text)
        self.assertIn("Tutor: Hello from your tutor!", text)
        self.assertEqual(client.questions, ["Hi"])
        self.assertTrue(app.controller._closed)

    async def test_end_of_input_before_onboarding_closes_cleanly(self) -> None:
        app, output = _app(ScriptedClient("unused"), [])
        await app.run()
        self.assertIs(app.controller.state.current, SessionState.UNONBOARDED)
        self.assertEqual(output.getvalue(), "")

    async def test_attach_and_unknown_commands(self) -> None:
        app, output = _app(ScriptedClient("ok"), ["teacher", "/attach", "/attach notes.txt", "/help"])
        await app.run()

        text = output.getvalue()
        self.assertIn("Usage: /attach <path>", text)
        self.assertIn("Attached notes.txt", text)
        self.assertIn("Commands:", text)

    async def test_restart_command_returns_to_onboarding(self) -> None:
        client = ScriptedClient("ok")
        app, _output = _app(client, ["teacher", "/restart", "student", "7", "Hello"])
        await app.run()

        self.assertEqual(app.controller.session.grade, 7)
        self.assertEqual(client.questions, ["Hello"])


if __name__ == "__main__":
    unittest.main()
