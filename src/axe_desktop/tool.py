from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Tool(Protocol):
    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def input_schema(self) -> dict[str, Any]: ...

    async def execute(self, tool_input: dict[str, Any]) -> dict[str, Any]: ...


@runtime_checkable
class Toolset(Protocol):
    """A group of tools sharing one connection, opened on first use."""

    @property
    def name(self) -> str: ...

    async def get_tools(self) -> list[Tool]: ...

    async def close(self) -> None: ...
