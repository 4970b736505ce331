from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass
from enum import StrEnum

from loguru import logger

from axe_desktop.agent_config import AgentConfig
from axe_desktop.events import Event
from axe_desktop.provider import ModelResponse
from axe_desktop.sessions import InMemorySessionService
from axe_desktop.tool import Tool
from axe_desktop.turn_engine import TurnEngine

APP_NAME = "axe-desktop"


def _has_text(message: dict) -> bool:
    content = message.get("content")
    if isinstance(content, str):
        return bool(content.strip())
    return bool(ModelResponse(message=message).text.strip())


class StreamingMode(StrEnum):
    SSE = "sse"
    NONE = "none"


@dataclass(frozen=True)
class RunConfig:
    streaming_mode: StreamingMode = StreamingMode.SSE


class Runner:
    """A live binding of one agent (model + toolsets) to the shared session service."""

    def __init__(self, *, agent: AgentConfig, session_service: InMemorySessionService, app_name: str = APP_NAME):
        self._agent = agent
        self._session_service = session_service
        self._app_name = app_name

    @property
    def agent(self) -> AgentConfig:
        return self._agent

    @property
    def app_name(self) -> str:
        return self._app_name

    async def run(
        self,
        *,
        user_id: str,
        session_id: str,
        new_message: str,
        run_config: RunConfig | None = None,
    ) -> AsyncIterator[Event]:
        """Yield the events of one turn.

        The turn's messages are committed to the session history only when
        the turn completes; an abandoned or failed turn leaves it unchanged.
        """
        config = run_config or RunConfig()
        session = self._session_service.get(self._app_name, user_id, session_id)
        tool_map, converted_tools = await self._load_tools()

        messages = list(session.history)
        start = len(messages)
        messages.append({"role": "user", "content": new_message})

        engine = TurnEngine(
            agent=self._agent,
            tool_map=tool_map,
            converted_tools=converted_tools,
            streaming=config.streaming_mode == StreamingMode.SSE,
        )
        async with aclosing(engine.run(messages=messages)) as events:
            async for event in events:
                yield event
                if event.error_code:
                    return

        turn_messages = messages[start:]
        if any(m["role"] == "assistant" and _has_text(m) for m in turn_messages):
            self._session_service.append(session, turn_messages)
        else:
            logger.debug(f"Turn for session {session_id} produced no assistant content; history unchanged")
        yield Event(author=self._agent.name, turn_complete=True)

    async def aclose(self) -> None:
        for toolset in self._agent.toolsets:
            try:
                await toolset.close()
            except Exception as ex:
                logger.warning(f"Closing toolset '{toolset.name}' failed: {ex}")

    async def _load_tools(self) -> tuple[dict[str, Tool], list[dict]]:
        tools: list[Tool] = []
        for toolset in self._agent.toolsets:
            tools.extend(await toolset.get_tools())
        tool_map = {t.name: t for t in tools}
        return tool_map, self._agent.provider.convert_tools(list(tool_map.values()))
