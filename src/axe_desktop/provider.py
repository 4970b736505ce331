from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from axe_desktop.models import ProviderType
from axe_desktop.tool import Tool


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ModelResponse:
    """A complete model reply in internal (Anthropic-style) block format."""

    message: dict
    tool_use_blocks: list[dict] = field(default_factory=list)
    stop_reason: str = "end_turn"

    @property
    def text(self) -> str:
        return "".join(
            block.get("text", "")
            for block in self.message.get("content", [])
            if isinstance(block, dict) and block.get("type") == "text"
        )


@runtime_checkable
class LLMProvider(Protocol):
    def stream_chat(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
        tools: list[dict],
    ) -> AsyncIterator[TextDelta | ModelResponse]:
        """Stream a chat response.

        Yields a TextDelta per text fragment as it arrives, then exactly one
        ModelResponse carrying the assembled message.
        """
        ...

    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
        tools: list[dict],
    ) -> ModelResponse:
        """Non-streaming message creation."""
        ...

    def convert_tools(self, tools: list[Tool]) -> list[dict]:
        """Convert Tool protocol objects to the internal tool schema."""
        ...


def create_provider(provider_type: str, api_key: str) -> LLMProvider:
    """Factory: create an LLMProvider by type name."""
    name = str(provider_type).strip().lower()
    if name == ProviderType.ANTHROPIC:
        from axe_desktop.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key)
    if name == ProviderType.OPENAI:
        from axe_desktop.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key)
    raise ValueError(f"Unknown provider: {provider_type!r}. Supported: 'anthropic', 'openai'")
