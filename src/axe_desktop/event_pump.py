from __future__ import annotations

import threading
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from axe_desktop.events import Event, FunctionCall, FunctionResponse
from axe_desktop.runner import StreamingMode

MessageHandler = Callable[[str, str], None]
ToolCallHandler = Callable[[str, dict[str, Any] | None, dict[str, Any] | None, str | None], None]
DebugHandler = Callable[[str], None]
ToolPartHandler = Callable[[FunctionCall | FunctionResponse], None]

CANCELLED_MARKER = "\n[Cancelled]"
NO_RESPONSE_MESSAGE = "No response received. Check the model name and API key."


class CancellationToken:
    """Cooperative stop signal for one in-flight turn; safe to set from any thread."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class TurnBuffer:
    """Text accumulated over every delivery attempt of a turn, plus how the last attempt ended."""

    text: str = ""
    error: str | None = None
    cancelled: bool = False

    def append(self, fragment: str) -> str:
        self.text += fragment
        return self.text


def emit_debug(on_debug: DebugHandler | None, line: str) -> None:
    if on_debug is None:
        return
    try:
        on_debug(line)
    except Exception as ex:
        logger.warning(f"Debug sink raised, ignoring: {ex}")


async def _close(events: AsyncIterator[Event]) -> None:
    aclose = getattr(events, "aclose", None)
    if aclose is not None:
        await aclose()


async def run_turn(
    events: AsyncIterator[Event],
    buffer: TurnBuffer,
    cancel_token: CancellationToken,
    on_message: MessageHandler,
    on_tool_call: ToolCallHandler,
    on_debug: DebugHandler | None = None,
    *,
    on_tool_part: ToolPartHandler | None = None,
) -> bool:
    """Consume one attempt's events, forwarding them to the callbacks.

    Returns True iff at least one text fragment was received. The first
    cancellation, raised error or error event ends the attempt; the stream is
    closed rather than drained. ``on_tool_part`` sees each function call and
    response, ids included, before ``on_tool_call`` does.
    """
    got_content = False
    seen_content = False
    event_count = 0
    buffer.error = None

    try:
        async for event in events:
            event_count += 1

            if cancel_token.cancelled:
                buffer.cancelled = True
                on_message("assistant", buffer.text + CANCELLED_MARKER)
                emit_debug(on_debug, "cancelled")
                return got_content

            if event.error_code:
                buffer.error = f"{event.error_code} - {event.error_message or ''}"
                on_message("system", f"Error: {buffer.error}")
                emit_debug(on_debug, f"error={event.error_code} message={event.error_message}")
                return got_content

            if event.parts and not seen_content:
                seen_content = True
                emit_debug(on_debug, "content=present")

            for part in event.parts:
                if part.text:
                    on_message("assistant", buffer.append(part.text))
                    got_content = True

                if part.function_call is not None:
                    call = part.function_call
                    if on_tool_part is not None:
                        on_tool_part(call)
                    on_tool_call(call.name, call.args, None, None)
                    emit_debug(on_debug, f"tool_call={call.name}")

                if part.function_response is not None:
                    resp = part.function_response
                    if on_tool_part is not None:
                        on_tool_part(resp)
                    on_tool_call(resp.name, None, resp.response, resp.error)
                    emit_debug(on_debug, f"tool_response={resp.name}")
    except Exception as ex:
        buffer.error = str(ex) or type(ex).__name__
        on_message("system", f"Error: {buffer.error}")
        emit_debug(on_debug, f"error={buffer.error}")
        return got_content
    finally:
        await _close(events)

    if event_count == 0:
        emit_debug(on_debug, "runner returned 0 events")

    return got_content


async def deliver_with_fallback(
    attempt: Callable[[StreamingMode], Awaitable[bool]],
    *,
    is_cancelled: Callable[[], bool] = lambda: False,
) -> bool:
    """Try streaming delivery, then non-streaming delivery if streaming produced no text.

    Returns whether either attempt produced content. A cancelled turn is
    never retried.
    """
    for mode in (StreamingMode.SSE, StreamingMode.NONE):
        if await attempt(mode):
            return True
        if is_cancelled():
            return False
    return False
