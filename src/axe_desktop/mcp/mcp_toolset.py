import asyncio

from loguru import logger
from mcp import ClientSession
from mcp.client.streamable_http import streamable_http_client

from axe_desktop.mcp.mcp_tool_proxy import McpToolProxy
from axe_desktop.models import ToolEndpoint
from axe_desktop.tool import Tool

_SHUTDOWN_TIMEOUT = 5.0


class _ServerConnection:
    """Holds a running server's session and shutdown control."""

    def __init__(self, name: str, url: str):
        self.name = name
        self.url = url
        self.session: ClientSession | None = None
        self.tools: list[Tool] = []
        self._ready = asyncio.Event()
        self._shutdown = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._error: Exception | None = None

    async def wait_ready(self) -> None:
        await self._ready.wait()
        if self._error:
            raise self._error

    async def _run_http(self) -> None:
        async with streamable_http_client(self.url) as (read_stream, write_stream, _):
            async with ClientSession(read_stream, write_stream) as session:
                await session.initialize()
                self.session = session
                tools_result = await session.list_tools()
                self.tools = [
                    McpToolProxy(
                        server_name=self.name,
                        tool_name=tool.name,
                        tool_description=tool.description,
                        tool_input_schema=tool.inputSchema,
                        session=session,
                    )
                    for tool in tools_result.tools
                ]
                self._ready.set()
                await self._shutdown.wait()

    def start(self) -> None:
        async def _run():
            try:
                await self._run_http()
            except Exception as ex:
                self._error = ex
                self._ready.set()

        self._task = asyncio.create_task(_run())

    async def stop(self) -> None:
        if self._task is None or self._task.done():
            return
        # Signal shutdown and cancel: the client's anyio task group may not
        # respond to asyncio cancellation alone.
        self._shutdown.set()
        self._task.cancel()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=_SHUTDOWN_TIMEOUT)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            pass


class McpToolset:
    """Tools of one streamable-HTTP MCP endpoint, connected on first use.

    A failed connection is logged and leaves the toolset empty so the agent
    can still answer without it.
    """

    def __init__(self, endpoint: ToolEndpoint):
        self._endpoint = endpoint
        self._connection: _ServerConnection | None = None
        self._tools: list[Tool] | None = None
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self._endpoint.name or self._endpoint.id

    async def get_tools(self) -> list[Tool]:
        async with self._lock:
            if self._tools is not None:
                return self._tools

            conn = _ServerConnection(self._endpoint.id or self._endpoint.name, self._endpoint.url)
            self._connection = conn
            try:
                conn.start()
                await conn.wait_ready()
                self._tools = list(conn.tools)
                logger.info(f"MCP server '{self.name}': {len(self._tools)} tool(s) discovered")
            except Exception as ex:
                logger.error(f"Failed to connect to MCP server '{self.name}': {ex}")
                self._tools = []
            return self._tools

    async def close(self) -> None:
        conn = self._connection
        self._connection = None
        self._tools = None
        if conn is None:
            return
        logger.debug(f"Shutting down MCP server '{self.name}'...")
        try:
            await conn.stop()
            logger.debug(f"MCP server '{self.name}' shut down")
        except Exception as ex:
            logger.warning(f"MCP server '{self.name}' shutdown error: {ex}")
