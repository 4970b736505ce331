from __future__ import annotations

import threading
from collections.abc import Callable

from loguru import logger

from axe_desktop.agent_config import AgentConfig
from axe_desktop.app_config import AppConfig
from axe_desktop.errors import RunnerBuildError
from axe_desktop.mcp.mcp_toolset import McpToolset
from axe_desktop.models import Provider, ToolEndpoint, ToolTransport
from axe_desktop.provider import LLMProvider, create_provider
from axe_desktop.runner import Runner
from axe_desktop.sessions import InMemorySessionService
from axe_desktop.tool import Toolset


class RunnerFactory:
    """Builds and caches one Runner per chat session.

    The cache holds the credentials and model the runner was built with, so
    callers must ``evict`` a session whenever provider settings change.
    """

    def __init__(
        self,
        config: AppConfig,
        session_service: InMemorySessionService,
        *,
        provider_factory: Callable[[str, str], LLMProvider] = create_provider,
        toolset_factory: Callable[[ToolEndpoint], Toolset] = McpToolset,
    ):
        self._config = config
        self._session_service = session_service
        self._provider_factory = provider_factory
        self._toolset_factory = toolset_factory
        self._runners: dict[str, Runner] = {}
        self._lock = threading.Lock()

    @property
    def session_service(self) -> InMemorySessionService:
        return self._session_service

    def get(self, session_id: str) -> Runner | None:
        with self._lock:
            return self._runners.get(session_id)

    async def get_or_create(self, session_id: str, provider: Provider) -> Runner:
        cached = self.get(session_id)
        if cached is not None:
            return cached

        try:
            llm = self._provider_factory(provider.type, provider.api_key)
        except Exception as ex:
            raise RunnerBuildError("model", ex) from ex

        toolsets = self._build_toolsets()

        try:
            agent = AgentConfig(
                provider=llm,
                model=provider.model,
                instruction=self._config.system_prompt,
                toolsets=toolsets,
                max_tokens=self._config.max_tokens,
                temperature=self._config.temperature,
                max_tool_result_chars=self._config.max_tool_result_chars,
            )
        except Exception as ex:
            raise RunnerBuildError("agent", ex) from ex

        try:
            runner = Runner(agent=agent, session_service=self._session_service)
        except Exception as ex:
            raise RunnerBuildError("runner", ex) from ex

        with self._lock:
            existing = self._runners.setdefault(session_id, runner)
        if existing is not runner:
            # Another send for this session finished building first.
            await runner.aclose()
            return existing

        logger.info(
            f"Runner created: session={session_id}, provider={provider.name}, "
            f"model={provider.model}, toolsets={len(toolsets)}"
        )
        return runner

    def evict(self, session_id: str) -> Runner | None:
        with self._lock:
            return self._runners.pop(session_id, None)

    def evict_all(self) -> list[tuple[str, Runner]]:
        with self._lock:
            evicted = list(self._runners.items())
            self._runners.clear()
        return evicted

    def _build_toolsets(self) -> list[Toolset]:
        toolsets: list[Toolset] = []
        for endpoint in self._config.mcp_servers:
            if not endpoint.enabled:
                continue
            if endpoint.transport != ToolTransport.HTTP:
                logger.debug(f"Skipping tool endpoint '{endpoint.name}': transport '{endpoint.transport}' not supported")
                continue
            try:
                toolsets.append(self._toolset_factory(endpoint))
            except Exception as ex:
                logger.warning(f"Skipping tool endpoint '{endpoint.name}': {ex}")
        return toolsets
