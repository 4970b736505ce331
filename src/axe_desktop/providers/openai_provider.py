import json
from collections.abc import AsyncIterator

import openai
from loguru import logger
from tenacity import retry

from axe_desktop.errors import ProviderError
from axe_desktop.provider import ModelResponse, TextDelta
from axe_desktop.providers.common import default_retry_kwargs, to_internal_tools
from axe_desktop.tool import Tool


# Map OpenAI finish reasons to internal stop reasons.
_STOP_REASON_MAP = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "length": "max_tokens",
}


def _tool_result_text(content) -> str:
    if isinstance(content, list):
        return "\n".join(
            sub.get("text", "")
            for sub in content
            if isinstance(sub, dict) and sub.get("type") == "text"
        )
    return str(content)


def _assistant_message(blocks: list[dict]) -> dict:
    texts = [b["text"] for b in blocks if b.get("type") == "text"]
    calls = [
        {
            "id": b["id"],
            "type": "function",
            "function": {"name": b["name"], "arguments": json.dumps(b["input"])},
        }
        for b in blocks
        if b.get("type") == "tool_use"
    ]
    message: dict = {"role": "assistant", "content": "\n".join(texts) if texts else None}
    if calls:
        message["tool_calls"] = calls
    return message


def _user_messages(blocks: list) -> list[dict]:
    """Tool results become ``tool`` messages, followed by any plain user text."""
    out: list[dict] = []
    texts: list[str] = []
    for block in blocks:
        if isinstance(block, str):
            texts.append(block)
        elif block.get("type") == "text":
            texts.append(block["text"])
        elif block.get("type") == "tool_result":
            out.append({
                "role": "tool",
                "tool_call_id": block["tool_use_id"],
                "content": _tool_result_text(block.get("content", "")),
            })
    if texts:
        out.append({"role": "user", "content": "\n".join(texts)})
    return out


def _to_openai_messages(system_prompt: str, messages: list[dict]) -> list[dict]:
    """Convert internal (Anthropic-style) messages to OpenAI chat format."""
    out: list[dict] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})

    for msg in messages:
        role = msg["role"]
        content = msg.get("content", "")
        if isinstance(content, str):
            out.append({"role": role, "content": content})
        elif role == "assistant":
            out.append(_assistant_message(content))
        elif role == "user":
            out.extend(_user_messages(content))
        else:
            out.append({"role": role, "content": str(content)})
    return out


def _to_openai_tools(tools: list[dict]) -> list[dict]:
    """Convert internal tool dicts to OpenAI function-calling format."""
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("input_schema", {}),
            },
        }
        for t in tools
    ]


_RETRYABLE = (
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.APITimeoutError,
)


def _to_provider_error(ex: openai.APIStatusError) -> ProviderError:
    return ProviderError(str(ex.status_code), ex.message)


def _parse_arguments(raw_args: str) -> dict:
    try:
        parsed = json.loads(raw_args) if raw_args else {}
    except json.JSONDecodeError:
        logger.warning(f"Failed to parse tool call arguments: {raw_args[:200]}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _build_response(text_content: str, tool_calls: list[dict], finish_reason: str | None) -> ModelResponse:
    stop_reason = _STOP_REASON_MAP.get(finish_reason or "stop", "end_turn")

    assistant_content: list[dict] = []
    tool_use_blocks: list[dict] = []

    if text_content:
        assistant_content.append({"type": "text", "text": text_content})

    for call in tool_calls:
        tool_block = {
            "type": "tool_use",
            "id": call["id"],
            "name": call["name"],
            "input": _parse_arguments(call["arguments"]),
        }
        assistant_content.append(tool_block)
        tool_use_blocks.append(tool_block)

    return ModelResponse(
        message={"role": "assistant", "content": assistant_content},
        tool_use_blocks=tool_use_blocks,
        stop_reason=stop_reason,
    )


class OpenAIProvider:
    def __init__(self, api_key: str):
        self._client = openai.AsyncOpenAI(api_key=api_key)

    def convert_tools(self, tools: list[Tool]) -> list[dict]:
        return to_internal_tools(tools)

    @retry(**default_retry_kwargs(_RETRYABLE))
    async def _create(self, **kwargs):
        return await self._client.chat.completions.create(**kwargs)

    def _request_kwargs(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
        tools: list[dict],
    ) -> dict:
        oai_tools = _to_openai_tools(tools)
        kwargs: dict = dict(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=_to_openai_messages(system_prompt, messages),
        )
        if oai_tools:
            kwargs["tools"] = oai_tools
        return kwargs

    async def stream_chat(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
        tools: list[dict],
    ) -> AsyncIterator[TextDelta | ModelResponse]:
        """Stream a chat response from OpenAI.

        Yields text deltas as they arrive, then the assembled response in
        internal (Anthropic-style) format.
        """
        kwargs = self._request_kwargs(model, max_tokens, temperature, system_prompt, messages, tools)
        logger.debug(
            f"API request: model={model}, max_tokens={max_tokens}, "
            f"messages={len(kwargs['messages'])}, tools={len(kwargs.get('tools', []))}"
        )

        text_content = ""
        # tool_calls_acc: index -> {"id", "name", "arguments_parts"}
        tool_calls_acc: dict[int, dict] = {}
        finish_reason: str | None = None

        try:
            stream = await self._create(stream=True, **kwargs)

            async for chunk in stream:
                choice = chunk.choices[0] if chunk.choices else None
                if choice is None:
                    continue

                if choice.finish_reason:
                    finish_reason = choice.finish_reason

                delta = choice.delta
                if delta is None:
                    continue

                if delta.content:
                    text_content += delta.content
                    yield TextDelta(delta.content)

                # Tool calls (arrive incrementally by index)
                if delta.tool_calls:
                    for tc_delta in delta.tool_calls:
                        idx = tc_delta.index
                        if idx not in tool_calls_acc:
                            tool_calls_acc[idx] = {
                                "id": tc_delta.id or "",
                                "name": (tc_delta.function.name if tc_delta.function and tc_delta.function.name else ""),
                                "arguments_parts": [],
                            }
                        acc = tool_calls_acc[idx]
                        if tc_delta.id:
                            acc["id"] = tc_delta.id
                        if tc_delta.function:
                            if tc_delta.function.name:
                                acc["name"] = tc_delta.function.name
                            if tc_delta.function.arguments:
                                acc["arguments_parts"].append(tc_delta.function.arguments)
        except openai.APIStatusError as ex:
            raise _to_provider_error(ex) from ex

        response = _build_response(
            text_content,
            [
                {
                    "id": tool_calls_acc[idx]["id"],
                    "name": tool_calls_acc[idx]["name"],
                    "arguments": "".join(tool_calls_acc[idx]["arguments_parts"]),
                }
                for idx in sorted(tool_calls_acc)
            ],
            finish_reason,
        )
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, "
            f"text_len={len(text_content)}, tool_calls={len(response.tool_use_blocks)}"
        )
        yield response

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
        kwargs = self._request_kwargs(model, max_tokens, temperature, system_prompt, messages, tools)
        logger.debug(f"API request (non-streaming): model={model}, messages={len(kwargs['messages'])}")
        try:
            response = await self._create(**kwargs)
        except openai.APIStatusError as ex:
            raise _to_provider_error(ex) from ex

        choice = response.choices[0]
        tool_calls = [
            {"id": tc.id, "name": tc.function.name, "arguments": tc.function.arguments or ""}
            for tc in (choice.message.tool_calls or [])
        ]
        result = _build_response(choice.message.content or "", tool_calls, choice.finish_reason)
        logger.debug(f"API response: stop_reason={result.stop_reason}, text_len={len(result.text)}")
        return result
