import asyncio
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

from mcp.types import TextContent

from axe_desktop.mcp.mcp_tool_proxy import McpToolProxy
from axe_desktop.mcp.mcp_toolset import McpToolset
from axe_desktop.models import ToolEndpoint, ToolTransport


def _endpoint() -> ToolEndpoint:
    return ToolEndpoint(id="exa", name="Exa Search", transport=ToolTransport.HTTP, url="http://127.0.0.1:9/mcp")


class McpToolsetTests(unittest.TestCase):
    def test_connection_failure_yields_no_tools(self) -> None:
        toolset = McpToolset(_endpoint())

        async def scenario():
            with patch(
                "axe_desktop.mcp.mcp_toolset._ServerConnection._run_http",
                new=AsyncMock(side_effect=ConnectionError("refused")),
            ):
                tools = await toolset.get_tools()
                again = await toolset.get_tools()
            await toolset.close()
            return tools, again

        tools, again = asyncio.run(scenario())

        self.assertEqual([], tools)
        self.assertEqual([], again)

    def test_name_prefers_endpoint_name(self) -> None:
        self.assertEqual("Exa Search", McpToolset(_endpoint()).name)

    def test_close_before_connect_is_noop(self) -> None:
        asyncio.run(McpToolset(_endpoint()).close())


class McpToolProxyTests(unittest.TestCase):
    def _proxy(self, result) -> tuple[McpToolProxy, AsyncMock]:
        session = SimpleNamespace(call_tool=AsyncMock(return_value=result))
        proxy = McpToolProxy(
            server_name="exa",
            tool_name="web_search",
            tool_description="Search the web",
            tool_input_schema={"type": "object"},
            session=session,
        )
        return proxy, session.call_tool

    def test_text_content_becomes_output(self) -> None:
        result = SimpleNamespace(
            content=[TextContent(type="text", text="line 1"), TextContent(type="text", text="line 2")],
            isError=False,
            structuredContent=None,
        )
        proxy, call_tool = self._proxy(result)

        response = asyncio.run(proxy.execute({"query": "news"}))

        self.assertEqual("exa__web_search", proxy.name)
        self.assertEqual({"output": "line 1\nline 2"}, response)
        call_tool.assert_awaited_once_with("web_search", arguments={"query": "news"})

    def test_structured_content_is_kept(self) -> None:
        result = SimpleNamespace(content=[], isError=False, structuredContent={"hits": 3})
        proxy, _ = self._proxy(result)

        response = asyncio.run(proxy.execute({}))

        self.assertEqual({"output": "(no output)", "structured": {"hits": 3}}, response)

    def test_error_result_raises(self) -> None:
        result = SimpleNamespace(content=[TextContent(type="text", text="quota exceeded")], isError=True)
        proxy, _ = self._proxy(result)

        with self.assertRaises(RuntimeError) as ctx:
            asyncio.run(proxy.execute({}))
        self.assertIn("quota exceeded", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
