from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class FunctionCall:
    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FunctionResponse:
    id: str
    name: str
    response: dict[str, Any] = field(default_factory=dict)

    @property
    def error(self) -> str | None:
        value = self.response.get("error")
        return str(value) if value is not None else None


@dataclass(frozen=True)
class Part:
    """One fragment of an event: text, a function call, or a function result."""

    text: str = ""
    function_call: FunctionCall | None = None
    function_response: FunctionResponse | None = None


@dataclass(frozen=True)
class Event:
    """A single item of the response sequence a runner yields for one turn.

    ``partial`` marks streamed text deltas. An event with ``error_code`` set
    reports an application-level failure and ends the turn; ``turn_complete``
    marks the final event of a successful turn.
    """

    author: str = "axe-agent"
    parts: tuple[Part, ...] = ()
    partial: bool = False
    turn_complete: bool = False
    error_code: str | None = None
    error_message: str | None = None

    @classmethod
    def text(cls, text: str, *, partial: bool = False, author: str = "axe-agent") -> Event:
        return cls(author=author, parts=(Part(text=text),), partial=partial)

    @classmethod
    def error(cls, code: str, message: str, *, author: str = "axe-agent") -> Event:
        return cls(author=author, error_code=code, error_message=message)
