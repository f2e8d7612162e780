"""Tests for top-level package lazy exports."""

from __future__ import annotations

import unittest

import tutor_chat


class PackageExportTests(unittest.TestCase):
    """Ensure __getattr__ and exported symbols behave as expected."""

    def test_lazy_exports_resolve_known_symbols(self) -> None:
        for name in tutor_chat.__all__:
            with self.subTest(name=name):
                self.assertIsNotNone(getattr(tutor_chat, name))
        self.assertTrue(callable(tutor_chat.load_config))
        self.assertTrue(issubclass(tutor_chat.GenerationError, tutor_chat.TutorChatError))

    def test_unknown_symbol_raises_attribute_error(self) -> None:
        with self.assertRaises(AttributeError):
            getattr(tutor_chat, "THIS_DOES_NOT_EXIST")


if __name__ == "__main__":
    unittest.main()
