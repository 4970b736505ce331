from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

from loguru import logger

from axe_desktop.agent_config import AgentConfig
from axe_desktop.errors import ProviderError
from axe_desktop.events import Event, FunctionCall, FunctionResponse, Part
from axe_desktop.provider import ModelResponse, TextDelta
from axe_desktop.tool import Tool

_CONTINUE_PROMPT = (
    "Your response was cut off because it exceeded the token limit. "
    "Please continue, but be more concise."
)


class TurnEngine:
    """Runs the model/tool loop for one user turn and yields what happens as Events.

    ``messages`` is extended in place with every assistant reply and tool
    result, so the caller can commit it to the conversation history once the
    turn completes.
    """

    _MAX_TOKENS_RETRIES = 3

    def __init__(
        self,
        *,
        agent: AgentConfig,
        tool_map: dict[str, Tool],
        converted_tools: list[dict],
        streaming: bool,
    ) -> None:
        self._agent = agent
        self._provider = agent.provider
        self._tool_map = tool_map
        self._converted_tools = converted_tools
        self._streaming = streaming

    async def run(self, *, messages: list[dict]) -> AsyncIterator[Event]:
        author = self._agent.name
        max_tokens_attempts = 0

        while True:
            response: ModelResponse | None = None
            try:
                if self._streaming:
                    stream = self._provider.stream_chat(
                        self._agent.model,
                        self._agent.max_tokens,
                        self._agent.temperature,
                        self._agent.instruction,
                        messages,
                        self._converted_tools,
                    )
                    async with aclosing(stream):
                        async for chunk in stream:
                            if isinstance(chunk, TextDelta):
                                if chunk.text:
                                    yield Event.text(chunk.text, partial=True, author=author)
                            else:
                                response = chunk
                    if response is None:
                        raise RuntimeError("model stream ended without a final response")
                else:
                    response = await self._provider.create_message(
                        self._agent.model,
                        self._agent.max_tokens,
                        self._agent.temperature,
                        self._agent.instruction,
                        messages,
                        self._converted_tools,
                    )
                    if response.text:
                        yield Event.text(response.text, author=author)
            except ProviderError as ex:
                logger.warning(f"Model request rejected: {ex}")
                yield Event.error(ex.code, ex.message, author=author)
                return

            if not response.message.get("content"):
                logger.debug("Model returned an empty message; ending turn")
                return
            messages.append(response.message)

            if response.stop_reason == "max_tokens" and not response.tool_use_blocks:
                max_tokens_attempts += 1
                if max_tokens_attempts >= self._MAX_TOKENS_RETRIES:
                    logger.warning(
                        f"Response exceeded max_tokens ({self._agent.max_tokens}) "
                        f"{self._MAX_TOKENS_RETRIES} times in a row; stopping turn"
                    )
                    return
                messages.append({"role": "user", "content": _CONTINUE_PROMPT})
                continue

            max_tokens_attempts = 0

            if not response.tool_use_blocks:
                return

            yield Event(
                author=author,
                parts=tuple(
                    Part(function_call=FunctionCall(id=b["id"], name=b["name"], args=dict(b["input"] or {})))
                    for b in response.tool_use_blocks
                ),
            )
            responses = await self.execute_tools(response.tool_use_blocks)
            yield Event(
                author=author,
                parts=tuple(Part(function_response=r) for r in responses),
            )
            messages.append({
                "role": "user",
                "content": [self._to_tool_result_block(r) for r in responses],
            })

    async def execute_tools(self, tool_use_blocks: list[dict]) -> list[FunctionResponse]:
        async def run_one(block: dict) -> FunctionResponse:
            tool_name = block["name"]
            tool_use_id = block["id"]
            tool = self._tool_map.get(tool_name)

            if tool is None:
                return FunctionResponse(
                    id=tool_use_id,
                    name=tool_name,
                    response={"error": f'unknown tool "{tool_name}"'},
                )

            try:
                result = await tool.execute(block["input"] or {})
            except Exception as ex:
                logger.warning(f'Tool "{tool_name}" failed: {ex}')
                return FunctionResponse(
                    id=tool_use_id,
                    name=tool_name,
                    response={"error": f'Error executing tool "{tool_name}": {ex}'},
                )
            return FunctionResponse(id=tool_use_id, name=tool_name, response=self._truncate(result, tool_name))

        return list(await asyncio.gather(*(run_one(b) for b in tool_use_blocks)))

    def _to_tool_result_block(self, response: FunctionResponse) -> dict:
        block: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": response.id,
        }
        if response.error is not None:
            block["content"] = response.error
            block["is_error"] = True
        elif isinstance(response.response.get("output"), str):
            block["content"] = response.response["output"]
        else:
            block["content"] = json.dumps(response.response, default=str)
        return block

    def _truncate(self, result: dict[str, Any], tool_name: str) -> dict[str, Any]:
        limit = self._agent.max_tool_result_chars
        output = result.get("output")
        if limit <= 0 or not isinstance(output, str) or len(output) <= limit:
            return result

        original_length = len(output)
        message = (
            f"\n\n[OUTPUT TRUNCATED: Showing {limit:,} "
            f"of {original_length:,} characters from {tool_name}]"
        )
        logger.warning(f"{tool_name} output truncated from {original_length:,} to {limit:,} chars")
        return {**result, "output": output[:limit] + message}
