from __future__ import annotations

import json
from collections.abc import AsyncIterator

import anthropic
from loguru import logger
from tenacity import retry

from axe_desktop.errors import ProviderError
from axe_desktop.provider import ModelResponse, TextDelta
from axe_desktop.providers.common import default_retry_kwargs, to_internal_tools
from axe_desktop.tool import Tool

_RETRYABLE = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
)


def _request_kwargs(
    model: str,
    max_tokens: int,
    temperature: float,
    system_prompt: str,
    messages: list[dict],
    tools: list[dict],
) -> dict:
    kwargs: dict = dict(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        messages=messages,
    )
    if system_prompt:
        kwargs["system"] = system_prompt
    if tools:
        kwargs["tools"] = tools
    return kwargs


def _to_provider_error(ex: anthropic.APIStatusError) -> ProviderError:
    return ProviderError(str(ex.status_code), ex.message)


def _build_response(content_blocks: list, stop_reason: str | None) -> ModelResponse:
    assistant_content: list[dict] = []
    tool_use_blocks: list[dict] = []
    for block in content_blocks:
        if block.type == "text":
            assistant_content.append({"type": "text", "text": block.text})
        elif block.type == "tool_use":
            tool_block = {
                "type": "tool_use",
                "id": block.id,
                "name": block.name,
                "input": block.input,
            }
            assistant_content.append(tool_block)
            tool_use_blocks.append(tool_block)
    return ModelResponse(
        message={"role": "assistant", "content": assistant_content},
        tool_use_blocks=tool_use_blocks,
        stop_reason=stop_reason or "end_turn",
    )


class AnthropicProvider:
    def __init__(self, api_key: str):
        self._client = anthropic.AsyncAnthropic(api_key=api_key)

    def convert_tools(self, tools: list[Tool]) -> list[dict]:
        return to_internal_tools(tools)

    @retry(**default_retry_kwargs(_RETRYABLE))
    async def _open_stream(self, **kwargs):
        return await self._client.messages.create(stream=True, **kwargs)

    async def stream_chat(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
        tools: list[dict],
    ) -> AsyncIterator[TextDelta | ModelResponse]:
        """Stream a chat response, yielding text deltas and then the final response."""
        logger.debug(
            f"API request: model={model}, max_tokens={max_tokens}, "
            f"messages={len(messages)}, tools={len(tools)}"
        )
        # blocks_acc: index -> {"type", "text"} or {"type", "id", "name", "json_parts"}
        blocks_acc: dict[int, dict] = {}
        stop_reason: str | None = None
        output_tokens = 0

        try:
            stream = await self._open_stream(
                **_request_kwargs(model, max_tokens, temperature, system_prompt, messages, tools)
            )
            async for event in stream:
                if event.type == "content_block_start":
                    block = event.content_block
                    if block.type == "tool_use":
                        blocks_acc[event.index] = {
                            "type": "tool_use",
                            "id": block.id,
                            "name": block.name,
                            "json_parts": [],
                        }
                    elif block.type == "text":
                        blocks_acc[event.index] = {"type": "text", "text": getattr(block, "text", "") or ""}
                elif event.type == "content_block_delta":
                    acc = blocks_acc.setdefault(event.index, {"type": "text", "text": ""})
                    if event.delta.type == "text_delta":
                        acc["text"] = acc.get("text", "") + event.delta.text
                        yield TextDelta(event.delta.text)
                    elif event.delta.type == "input_json_delta":
                        acc.setdefault("json_parts", []).append(event.delta.partial_json)
                elif event.type == "message_delta":
                    stop_reason = event.delta.stop_reason or stop_reason
                    usage = getattr(event, "usage", None)
                    if usage is not None:
                        output_tokens = getattr(usage, "output_tokens", output_tokens) or output_tokens
        except anthropic.APIStatusError as ex:
            raise _to_provider_error(ex) from ex

        assistant_content: list[dict] = []
        tool_use_blocks: list[dict] = []
        for idx in sorted(blocks_acc):
            acc = blocks_acc[idx]
            if acc["type"] == "text":
                if acc["text"]:
                    assistant_content.append({"type": "text", "text": acc["text"]})
                continue
            raw_args = "".join(acc["json_parts"])
            try:
                parsed_input = json.loads(raw_args) if raw_args else {}
            except json.JSONDecodeError:
                logger.warning(f"Failed to parse tool call arguments: {raw_args[:200]}")
                parsed_input = {}
            tool_block = {
                "type": "tool_use",
                "id": acc["id"],
                "name": acc["name"],
                "input": parsed_input,
            }
            assistant_content.append(tool_block)
            tool_use_blocks.append(tool_block)

        logger.debug(
            f"API response: stop_reason={stop_reason}, output_tokens={output_tokens}, "
            f"tool_calls={len(tool_use_blocks)}"
        )
        yield ModelResponse(
            message={"role": "assistant", "content": assistant_content},
            tool_use_blocks=tool_use_blocks,
            stop_reason=stop_reason or "end_turn",
        )

    @retry(**default_retry_kwargs(_RETRYABLE))
    async def _create(self, **kwargs):
        return await self._client.messages.create(**kwargs)

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
        logger.debug(f"API request (non-streaming): model={model}, messages={len(messages)}, tools={len(tools)}")
        try:
            response = await self._create(
                **_request_kwargs(model, max_tokens, temperature, system_prompt, messages, tools)
            )
        except anthropic.APIStatusError as ex:
            raise _to_provider_error(ex) from ex
        usage = response.usage
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, "
            f"input_tokens={usage.input_tokens}, output_tokens={usage.output_tokens}"
        )
        return _build_response(response.content, response.stop_reason)
