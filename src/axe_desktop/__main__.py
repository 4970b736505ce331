import asyncio
import signal
import sys
import uuid

from loguru import logger

from axe_desktop.bootstrap import AppRuntime, bootstrap_runtime
from axe_desktop.commands.router import CommandRouter
from axe_desktop.errors import AxeError
from axe_desktop.event_pump import CANCELLED_MARKER

_HELP = """Commands:
  /help               show this help
  /new [title]        start a new conversation
  /sessions           list saved conversations
  /resume <id>        continue a saved conversation
  /archive [id]       archive a conversation (default: current)
  /delete [id]        delete a conversation (default: current)
  /provider [id]      list providers or switch the active one
  /model <name>       change the model of the active provider
  /key <api-key>      change the API key of the active provider
  /history [limit]    show messages of the current conversation
  exit | quit         leave"""


class _ReplyPrinter:
    """Prints assistant text incrementally; callbacks deliver the full text so far."""

    def __init__(self) -> None:
        self._printed = 0

    def on_message(self, role: str, content: str) -> None:
        if role == "assistant":
            if len(content) < self._printed:
                self._printed = 0
            print(content[self._printed:], end="", flush=True)
            self._printed = len(content)
            return
        print(f"\n[{role}] {content}", flush=True)

    def on_tool_call(self, name, args, result, error) -> None:
        if args is not None:
            print(f"\n[tool] {name}", flush=True)
        elif error:
            print(f"\n[tool] {name} failed: {error}", flush=True)


class Repl:
    def __init__(self, runtime: AppRuntime):
        self._runtime = runtime
        self._service = runtime.service
        self._store = runtime.store
        self._session_id = str(uuid.uuid4())
        self._router = CommandRouter(
            on_help=self._help,
            on_new=self._new,
            on_sessions=self._sessions,
            on_resume=self._resume,
            on_archive=self._archive,
            on_delete=self._delete,
            on_provider=self._provider,
            on_model=self._model,
            on_key=self._key,
            on_history=self._history,
            on_unknown=lambda cmd: print(f"Unknown command: {cmd} (try /help)"),
        )

    async def run(self) -> None:
        while True:
            try:
                user_input = input("you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()
            if trimmed in ("exit", "quit"):
                break
            if not trimmed:
                continue

            try:
                if await self._router.try_handle(trimmed):
                    continue
                await self._send(trimmed)
            except AxeError as ex:
                print(f"Error: {ex}")
            except Exception as ex:
                logger.error(f"Unhandled error: {ex}")

    async def _send(self, text: str) -> None:
        printer = _ReplyPrinter()
        print()
        task = await self._service.send_message(
            self._session_id,
            text,
            printer.on_message,
            printer.on_tool_call,
        )

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self._service.cancel, self._session_id)
            handler_installed = True
        except (NotImplementedError, RuntimeError):
            handler_installed = False
        try:
            await task
        finally:
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)
        print("\n")

    async def _help(self) -> None:
        print(_HELP)

    async def _new(self, title: str) -> None:
        if title:
            self._session_id = self._service.create_session(title).id
        else:
            self._session_id = str(uuid.uuid4())
        print(f"New conversation: {self._session_id}")

    async def _sessions(self) -> None:
        sessions = self._store.list_sessions()
        if not sessions:
            print("No saved conversations.")
            return
        for s in sessions:
            marker = "*" if s.id == self._session_id else " "
            print(f"{marker} {s.id}  {s.updated_at}  {s.title}")

    async def _resume(self, session_id: str) -> None:
        if not session_id:
            print("Usage: /resume <id>")
            return
        session = self._store.get_session(session_id)
        if session is None:
            print(f"Conversation not found: {session_id}")
            return
        self._session_id = session.id
        print(f"Resumed: {session.title}")

    async def _archive(self, session_id: str) -> None:
        target = session_id or self._session_id
        self._service.archive_session(target)
        print(f"Archived: {target}")
        if target == self._session_id:
            await self._new("")

    async def _delete(self, session_id: str) -> None:
        target = session_id or self._session_id
        self._service.delete_session(target)
        print(f"Deleted: {target}")
        if target == self._session_id:
            await self._new("")

    async def _provider(self, provider_id: str) -> None:
        config = self._runtime.config
        if not provider_id:
            for p in config.providers:
                marker = "*" if p.id == config.active_provider_id else " "
                print(f"{marker} {p.id}  {p.name} ({p.type}, {p.model or '-'})")
            return
        provider = self._service.set_active_provider(provider_id)
        print(f"Active provider: {provider.name}")

    async def _model(self, model: str) -> None:
        if not model:
            active = self._runtime.config.get_active_provider()
            print(f"Model: {active.model if active else '-'}")
            return
        provider = self._service.update_provider(model=model)
        print(f"Model set to {provider.model}")

    async def _key(self, api_key: str) -> None:
        if not api_key:
            print("Usage: /key <api-key>")
            return
        provider = self._service.update_provider(api_key=api_key)
        print(f"API key updated for {provider.name}")

    async def _history(self, argument: str) -> None:
        try:
            limit = int(argument) if argument else 20
        except ValueError:
            print("Usage: /history [limit]")
            return
        messages = self._store.list_messages(self._session_id)
        for m in messages[-limit:] if limit > 0 else messages:
            print(f"[{m.role}/{m.status}] {m.content}")


async def main() -> None:
    runtime = bootstrap_runtime()

    active = runtime.config.get_active_provider()
    print("axe-desktop (type 'exit' to quit, '/help' for commands)")
    if active is not None:
        print(f"Provider: {active.name} ({active.model})")
        if not active.api_key:
            print("No API key configured; set one with /key <api-key>.")
    endpoints = [s.name for s in runtime.config.mcp_servers if s.enabled]
    if endpoints:
        print(f"Tool endpoints: {', '.join(endpoints)}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print(f"Cancel a reply with Ctrl+C ({CANCELLED_MARKER.strip()} is shown).")
    print()

    try:
        await Repl(runtime).run()
    finally:
        await runtime.aclose()


def cli() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    cli()
