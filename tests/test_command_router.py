import asyncio
import unittest

from axe_desktop.commands.router import CommandRouter


class CommandRouterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.calls: list[tuple[str, str]] = []

        def handler(name: str):
            async def _handle(argument: str = "") -> None:
                self.calls.append((name, argument))
            return _handle

        self.router = CommandRouter(
            on_help=handler("help"),
            on_new=handler("new"),
            on_sessions=handler("sessions"),
            on_resume=handler("resume"),
            on_archive=handler("archive"),
            on_delete=handler("delete"),
            on_provider=handler("provider"),
            on_model=handler("model"),
            on_key=handler("key"),
            on_history=handler("history"),
            on_unknown=lambda cmd: self.calls.append(("unknown", cmd)),
        )

    def _handle(self, text: str) -> bool:
        return asyncio.run(self.router.try_handle(text))

    def test_plain_text_is_not_a_command(self) -> None:
        self.assertFalse(self._handle("hello there"))
        self.assertEqual([], self.calls)

    def test_commands_receive_arguments(self) -> None:
        self.assertTrue(self._handle("/resume  abc-123 "))
        self.assertTrue(self._handle("/model claude-sonnet-4-5"))
        self.assertTrue(self._handle("/provider openai"))
        self.assertTrue(self._handle("/history 5"))
        self.assertTrue(self._handle("/new Trip planning"))
        self.assertEqual(
            [
                ("resume", "abc-123"),
                ("model", "claude-sonnet-4-5"),
                ("provider", "openai"),
                ("history", "5"),
                ("new", "Trip planning"),
            ],
            self.calls,
        )

    def test_commands_without_arguments(self) -> None:
        for text in ("/help", "/sessions", "/archive", "/delete", "/key"):
            self.assertTrue(self._handle(text))
        self.assertEqual(["help", "sessions", "archive", "delete", "key"], [name for name, _ in self.calls])

    def test_prefix_does_not_match_other_commands(self) -> None:
        self.assertTrue(self._handle("/helpme"))
        self.assertEqual([("unknown", "/helpme")], self.calls)


if __name__ == "__main__":
    unittest.main()
