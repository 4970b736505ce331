from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class ProviderType(StrEnum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"


class ToolTransport(StrEnum):
    HTTP = "http"
    STDIO = "stdio"


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class MessageStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class Provider:
    id: str
    name: str
    type: ProviderType
    api_key: str = ""
    model: str = ""
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Provider:
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            type=ProviderType(str(data.get("type", ProviderType.ANTHROPIC)).strip().lower()),
            api_key=str(data.get("api_key", "") or ""),
            model=str(data.get("model", "") or ""),
            enabled=bool(data.get("enabled", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": str(self.type),
            "api_key": self.api_key,
            "model": self.model,
            "enabled": self.enabled,
        }


@dataclass
class ToolEndpoint:
    """An MCP server the agent may call tools on."""

    id: str
    name: str
    transport: ToolTransport
    url: str = ""
    command: str = ""
    args: list[str] = field(default_factory=list)
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolEndpoint:
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            transport=ToolTransport(str(data.get("type", ToolTransport.HTTP)).strip().lower()),
            url=str(data.get("url", "") or ""),
            command=str(data.get("command", "") or ""),
            args=[str(a) for a in data.get("args") or []],
            enabled=bool(data.get("enabled", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": str(self.transport),
            "enabled": self.enabled,
        }
        if self.url:
            out["url"] = self.url
        if self.command:
            out["command"] = self.command
        if self.args:
            out["args"] = list(self.args)
        return out


@dataclass
class Session:
    id: str
    user_id: str
    title: str
    model: str
    provider_id: str = ""
    system_prompt: str = ""
    summary: str | None = None
    created_at: str = ""
    updated_at: str = ""
    archived_at: str | None = None


@dataclass
class Message:
    session_id: str
    role: MessageRole
    content: str = ""
    status: MessageStatus = MessageStatus.COMPLETED
    id: str = ""
    token_count: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""


@dataclass
class ToolCall:
    session_id: str
    message_id: str
    tool_name: str
    args: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] | None = None
    error: str | None = None
    id: str = ""
    created_at: str = ""
