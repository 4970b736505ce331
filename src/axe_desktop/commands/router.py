from __future__ import annotations

from collections.abc import Awaitable, Callable


class CommandRouter:
    def __init__(
        self,
        *,
        on_help: Callable[[], Awaitable[None]],
        on_new: Callable[[str], Awaitable[None]],
        on_sessions: Callable[[], Awaitable[None]],
        on_resume: Callable[[str], Awaitable[None]],
        on_archive: Callable[[str], Awaitable[None]],
        on_delete: Callable[[str], Awaitable[None]],
        on_provider: Callable[[str], Awaitable[None]],
        on_model: Callable[[str], Awaitable[None]],
        on_key: Callable[[str], Awaitable[None]],
        on_history: Callable[[str], Awaitable[None]],
        on_unknown: Callable[[str], None],
    ) -> None:
        self._on_help = on_help
        self._on_new = on_new
        self._on_sessions = on_sessions
        self._on_resume = on_resume
        self._on_archive = on_archive
        self._on_delete = on_delete
        self._on_provider = on_provider
        self._on_model = on_model
        self._on_key = on_key
        self._on_history = on_history
        self._on_unknown = on_unknown

    async def try_handle(self, user_message: str) -> bool:
        trimmed = user_message.strip()
        if not trimmed.startswith("/"):
            return False

        command, _, argument = trimmed.partition(" ")
        argument = argument.strip()

        if command == "/help":
            await self._on_help()
            return True
        if command == "/new":
            await self._on_new(argument)
            return True
        if command == "/sessions":
            await self._on_sessions()
            return True
        if command == "/resume":
            await self._on_resume(argument)
            return True
        if command == "/archive":
            await self._on_archive(argument)
            return True
        if command == "/delete":
            await self._on_delete(argument)
            return True
        if command == "/provider":
            await self._on_provider(argument)
            return True
        if command == "/model":
            await self._on_model(argument)
            return True
        if command == "/key":
            await self._on_key(argument)
            return True
        if command == "/history":
            await self._on_history(argument)
            return True

        self._on_unknown(trimmed)
        return True
