from __future__ import annotations

import asyncio
import threading
from collections import defaultdict, deque
from typing import Any

from loguru import logger

from axe_desktop.app_config import AppConfig
from axe_desktop.errors import ConfigurationError, SessionNotFoundError, TurnInProgressError
from axe_desktop.event_pump import (
    NO_RESPONSE_MESSAGE,
    CancellationToken,
    DebugHandler,
    MessageHandler,
    ToolCallHandler,
    TurnBuffer,
    deliver_with_fallback,
    emit_debug,
    run_turn,
)
from axe_desktop.events import FunctionCall, FunctionResponse
from axe_desktop.models import Message, MessageRole, MessageStatus, Provider, Session, ToolCall
from axe_desktop.runner import APP_NAME, RunConfig, Runner, StreamingMode
from axe_desktop.runner_factory import RunnerFactory
from axe_desktop.sessions import InMemorySessionService
from axe_desktop.storage import DEFAULT_USER_ID, RecordStore

_TITLE_CHARS = 50


def _ignore_tool_call(name: str, args: Any, result: Any, error: Any) -> None:
    return


class _ToolCallRecorder:
    """Persists tool calls of one turn, pairing each result with its call by id.

    Calls without an id fall back to the oldest open call of the same tool.
    """

    def __init__(self, store: RecordStore, session_id: str, message_id: str):
        self._store = store
        self._session_id = session_id
        self._message_id = message_id
        self._open: dict[str, deque[ToolCall]] = defaultdict(deque)

    @staticmethod
    def _key(call_id: str, name: str) -> str:
        return f"id:{call_id}" if call_id else f"name:{name}"

    def record(self, part: FunctionCall | FunctionResponse) -> None:
        key = self._key(part.id, part.name)
        if isinstance(part, FunctionCall):
            call = self._store.create_tool_call(
                ToolCall(session_id=self._session_id, message_id=self._message_id, tool_name=part.name, args=part.args)
            )
            self._open[key].append(call)
            return

        pending = self._open.get(key)
        if pending:
            call = pending.popleft()
            call.result = part.response
            call.error = part.error
            self._store.update_tool_call(call)
            return

        self._store.create_tool_call(
            ToolCall(
                session_id=self._session_id,
                message_id=self._message_id,
                tool_name=part.name,
                result=part.response,
                error=part.error,
            )
        )


class ConversationService:
    """Maps chat sessions to live runners and drives their turns in the background.

    Owns the runner cache (through its RunnerFactory) and the table of
    cancellation tokens for in-flight turns. Callbacks handed to
    ``send_message`` are invoked from the turn's task, not from the caller.
    """

    def __init__(
        self,
        config: AppConfig,
        store: RecordStore,
        *,
        runner_factory: RunnerFactory | None = None,
        session_service: InMemorySessionService | None = None,
        user_id: str = DEFAULT_USER_ID,
    ):
        self._config = config
        self._store = store
        self._runners = runner_factory or RunnerFactory(config, session_service or InMemorySessionService())
        self._session_service = self._runners.session_service
        self._user_id = user_id
        self._lock = threading.Lock()
        self._cancel_tokens: dict[str, CancellationToken] = {}
        self._turns: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def store(self) -> RecordStore:
        return self._store

    # -- turns --------------------------------------------------------------

    async def send_message(
        self,
        session_id: str,
        text: str,
        on_message: MessageHandler,
        on_tool_call: ToolCallHandler | None = None,
        on_debug: DebugHandler | None = None,
    ) -> asyncio.Task[MessageStatus]:
        """Queue a user turn and return the task producing the assistant reply.

        Returns once the user message and an empty in-progress assistant
        message are persisted. Configuration and runner construction errors
        raise here; everything after that is reported through ``on_message``
        and the final status of the assistant message.
        """
        if not text.strip():
            raise ValueError("message text must not be empty")
        provider = self._require_provider()
        on_tool_call = on_tool_call or _ignore_tool_call
        trace = self._trace_sink(session_id, on_debug)
        emit_debug(trace, f"provider={provider.name} model={provider.model}")

        token = CancellationToken()
        with self._lock:
            if session_id in self._cancel_tokens:
                raise TurnInProgressError(session_id)
            self._cancel_tokens[session_id] = token

        try:
            runner = await self._runners.get_or_create(session_id, provider)
            self._ensure_record_session(session_id, text, provider)
            remote_session_id = self._ensure_remote_session(runner, session_id)
            self._store.create_message(
                Message(session_id=session_id, role=MessageRole.USER, content=text, status=MessageStatus.COMPLETED)
            )
            assistant = self._store.create_message(
                Message(
                    session_id=session_id,
                    role=MessageRole.ASSISTANT,
                    content="",
                    status=MessageStatus.IN_PROGRESS,
                    metadata={"provider_id": provider.id, "model": provider.model},
                )
            )
        except BaseException:
            self._release_token(session_id, token)
            raise

        task = asyncio.create_task(
            self._run_turn(runner, remote_session_id, text, assistant, token, on_message, on_tool_call, trace),
            name=f"turn:{session_id}",
        )
        with self._lock:
            self._turns[session_id] = task
        self._track(task, session_id)
        return task

    def cancel(self, session_id: str) -> bool:
        """Ask the in-flight turn of a session to stop; False if none is running."""
        with self._lock:
            token = self._cancel_tokens.get(session_id)
        if token is None:
            return False
        token.cancel()
        logger.info(f"Cancellation requested for session {session_id}")
        return True

    def is_busy(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._cancel_tokens

    async def wait_idle(self) -> None:
        """Wait until every turn and background cleanup started so far has finished."""
        while True:
            with self._lock:
                pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.wait(pending)

    # -- runners and settings -----------------------------------------------

    def remove_runner(self, session_id: str) -> None:
        """Drop the cached runner and cancellation token of a session.

        A turn still running for the session is told to stop; its runner is
        closed once that turn has finished. Persisted data is not touched.
        """
        runner = self._runners.evict(session_id)
        with self._lock:
            token = self._cancel_tokens.pop(session_id, None)
            turn = self._turns.get(session_id)
        if token is not None:
            token.cancel()
        if runner is not None:
            logger.info(f"Runner removed for session {session_id}")
            self._close_runner_later(runner, turn)

    def update_provider(self, *, api_key: str | None = None, model: str | None = None) -> Provider:
        """Change the active provider's credential or model and drop every cached runner."""
        provider = self._config.get_active_provider()
        if provider is None:
            raise ConfigurationError("no active provider configured")
        if api_key is not None:
            provider.api_key = api_key.strip()
        if model is not None:
            provider.model = model.strip()
        self._config.save()
        self._evict_all_runners()
        logger.info(f"Provider settings updated: provider={provider.name}, model={provider.model}")
        return provider

    def set_active_provider(self, provider_id: str) -> Provider:
        for provider in self._config.providers:
            if provider.id == provider_id:
                self._config.active_provider_id = provider_id
                self._config.save()
                self._evict_all_runners()
                logger.info(f"Active provider set to {provider.name}")
                return provider
        raise ConfigurationError(f"unknown provider: {provider_id}")

    # -- sessions -----------------------------------------------------------

    def create_session(self, title: str | None = None) -> Session:
        provider = self._config.get_active_provider()
        return self._store.create_session(
            Session(
                id="",
                user_id=self._user_id,
                title=(title or "").strip() or "New chat",
                model=provider.model if provider else "",
                provider_id=provider.id if provider else "",
                system_prompt=self._config.system_prompt,
            )
        )

    def archive_session(self, session_id: str) -> None:
        self.remove_runner(session_id)
        self._store.archive_session(session_id)

    def delete_session(self, session_id: str) -> None:
        self.remove_runner(session_id)
        self._session_service.delete(APP_NAME, self._user_id, session_id)
        self._store.delete_session(session_id)
        logger.info(f"Session deleted: {session_id}")

    async def aclose(self) -> None:
        """Stop all turns, then close every cached runner."""
        with self._lock:
            tokens = list(self._cancel_tokens.values())
            turns = [t for t in self._turns.values() if not t.done()]
        for token in tokens:
            token.cancel()
        for turn in turns:
            turn.cancel()
        if turns:
            await asyncio.gather(*turns, return_exceptions=True)
        for _, runner in self._runners.evict_all():
            await runner.aclose()
        await self.wait_idle()

    # -- internals ----------------------------------------------------------

    async def _run_turn(
        self,
        runner: Runner,
        session_id: str,
        text: str,
        assistant: Message,
        token: CancellationToken,
        on_message: MessageHandler,
        on_tool_call: ToolCallHandler,
        trace: DebugHandler,
    ) -> MessageStatus:
        buffer = TurnBuffer()
        recorder = _ToolCallRecorder(self._store, assistant.session_id, assistant.id)
        got_content = False

        def record_tool_part(part: FunctionCall | FunctionResponse) -> None:
            try:
                recorder.record(part)
            except Exception as ex:
                logger.error(f"Failed to persist tool call '{part.name}' for session {session_id}: {ex}")

        async def attempt(mode: StreamingMode) -> bool:
            emit_debug(trace, f"streaming_mode={mode}")
            events = runner.run(
                user_id=self._user_id,
                session_id=session_id,
                new_message=text,
                run_config=RunConfig(streaming_mode=mode),
            )
            return await run_turn(
                events, buffer, token, on_message, on_tool_call, trace, on_tool_part=record_tool_part
            )

        emit_debug(trace, f"session={session_id} start")
        try:
            got_content = await deliver_with_fallback(attempt, is_cancelled=lambda: token.cancelled)
            if not got_content and not buffer.cancelled:
                emit_debug(trace, "no_response")
                on_message("system", NO_RESPONSE_MESSAGE)
        except asyncio.CancelledError:
            buffer.cancelled = True
            raise
        except Exception as ex:
            logger.exception(f"Turn failed for session {session_id}")
            buffer.error = buffer.error or str(ex) or type(ex).__name__
        finally:
            status = self._finish_turn(assistant, token, buffer, got_content)
        return status

    def _finish_turn(
        self,
        assistant: Message,
        token: CancellationToken,
        buffer: TurnBuffer,
        got_content: bool,
    ) -> MessageStatus:
        if buffer.cancelled:
            status = MessageStatus.CANCELLED
        elif buffer.error is not None or not got_content:
            status = MessageStatus.FAILED
        else:
            status = MessageStatus.COMPLETED

        assistant.content = buffer.text
        assistant.status = status
        if buffer.error is not None:
            assistant.metadata = {**assistant.metadata, "error": buffer.error}
        try:
            self._store.update_message(assistant)
            self._store.touch_session(assistant.session_id)
        except Exception as ex:
            logger.error(f"Failed to persist assistant message {assistant.id}: {ex}")
        finally:
            self._release_token(assistant.session_id, token)

        logger.info(f"Turn finished: session={assistant.session_id}, status={status}, chars={len(buffer.text)}")
        return status

    def _require_provider(self) -> Provider:
        provider = self._config.get_active_provider()
        if provider is None:
            raise ConfigurationError("no active provider configured")
        if not provider.api_key:
            raise ConfigurationError(f"no API key configured for provider {provider.name}")
        if not provider.model:
            raise ConfigurationError(f"no model configured for provider {provider.name}")
        return provider

    def _ensure_record_session(self, session_id: str, text: str, provider: Provider) -> None:
        if self._store.get_session(session_id) is not None:
            return
        title = text.strip()
        if len(title) > _TITLE_CHARS:
            title = title[:_TITLE_CHARS] + "..."
        self._store.create_session(
            Session(
                id=session_id,
                user_id=self._user_id,
                title=title,
                model=provider.model,
                provider_id=provider.id,
                system_prompt=self._config.system_prompt,
            )
        )

    def _ensure_remote_session(self, runner: Runner, session_id: str) -> str:
        try:
            return self._session_service.get(runner.app_name, self._user_id, session_id).id
        except SessionNotFoundError:
            history = self._history_from_store(session_id)
            created = self._session_service.create(runner.app_name, self._user_id, session_id, history=history)
            logger.debug(f"Remote session created: {session_id} ({len(history)} prior messages)")
            return created.id

    def _history_from_store(self, session_id: str) -> list[dict]:
        history: list[dict] = []
        for message in self._store.list_messages(session_id):
            if message.role not in (MessageRole.USER, MessageRole.ASSISTANT):
                continue
            if message.status == MessageStatus.IN_PROGRESS or not message.content:
                continue
            if history and history[-1]["role"] == message.role:
                history[-1]["content"] += "\n\n" + message.content
                continue
            if not history and message.role == MessageRole.ASSISTANT:
                continue
            history.append({"role": str(message.role), "content": message.content})
        return history

    def _release_token(self, session_id: str, token: CancellationToken) -> None:
        with self._lock:
            if self._cancel_tokens.get(session_id) is token:
                del self._cancel_tokens[session_id]

    def _evict_all_runners(self) -> None:
        for session_id, runner in self._runners.evict_all():
            with self._lock:
                turn = self._turns.get(session_id)
            self._close_runner_later(runner, turn)

    def _close_runner_later(self, runner: Runner, turn: asyncio.Task | None) -> None:
        async def _close() -> None:
            if turn is not None and not turn.done():
                await asyncio.wait([turn])
            await runner.aclose()

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; evicted runner left unclosed")
            return
        self._track(loop.create_task(_close(), name="runner-close"))

    def _track(self, task: asyncio.Task, session_id: str | None = None) -> None:
        with self._lock:
            self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            with self._lock:
                self._tasks.discard(t)
                if session_id is not None and self._turns.get(session_id) is t:
                    del self._turns[session_id]

        task.add_done_callback(_done)

    def _trace_sink(self, session_id: str, on_debug: DebugHandler | None) -> DebugHandler:
        def sink(line: str) -> None:
            logger.debug(f"[{session_id}] {line}")
            if on_debug is not None:
                on_debug(line)

        return sink
