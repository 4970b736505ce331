from dataclasses import dataclass, field

from axe_desktop.provider import LLMProvider
from axe_desktop.tool import Toolset

DEFAULT_AGENT_NAME = "axe-agent"
DEFAULT_AGENT_DESCRIPTION = "Axe Desktop Assistant"
DEFAULT_INSTRUCTION = "You are a helpful AI assistant. Search the web when needed."


@dataclass
class AgentConfig:
    provider: LLMProvider
    model: str
    name: str = DEFAULT_AGENT_NAME
    description: str = DEFAULT_AGENT_DESCRIPTION
    instruction: str = DEFAULT_INSTRUCTION
    toolsets: list[Toolset] = field(default_factory=list)
    max_tokens: int = 8192
    temperature: float = 1.0
    max_tool_result_chars: int = 40_000

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("agent name must not be empty")
        if not self.model.strip():
            raise ValueError("agent model must not be empty")
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be positive, got {self.max_tokens}")
