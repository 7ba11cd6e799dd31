"""MCP client wrapper and the Tool adapter for MCP server tools.

McpClient owns one mcp ClientSession over a transport (stdio, streamable
HTTP, ...). Transports are passed as zero-argument factories returning the
async context manager the mcp library provides, e.g.

    McpClient(lambda: stdio_client(StdioServerParameters(command="uvx", args=[...])))
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, AsyncExitStack
from datetime import timedelta
from typing import Any

from mcp import ClientSession
from mcp.types import CallToolResult, TextContent
from mcp.types import Tool as McpToolDefinition

from cadence.errors import CadenceError
from cadence.tools.tool import Tool, ToolContext
from cadence.types.content import JsonBlock, TextBlock, ToolResultBlock
from cadence.types.streaming import ToolStreamEvent

logger = logging.getLogger(__name__)

TransportFactory = Callable[[], AbstractAsyncContextManager[Any]]


class McpClient:
    def __init__(
        self,
        transport: TransportFactory,
        *,
        name: str = "mcp",
        read_timeout: float | None = None,
    ) -> None:
        self.name = name
        self._transport = transport
        self._read_timeout = timedelta(seconds=read_timeout) if read_timeout else None
        self._stack: AsyncExitStack | None = None
        self._session: ClientSession | None = None

    @property
    def connected(self) -> bool:
        return self._session is not None

    async def connect(self) -> None:
        """Open the transport and initialize the MCP session. No-op when connected."""
        if self._session is not None:
            return
        stack = AsyncExitStack()
        try:
            streams = await stack.enter_async_context(self._transport())
            read_stream, write_stream = streams[0], streams[1]
            session = await stack.enter_async_context(
                ClientSession(read_stream, write_stream, read_timeout_seconds=self._read_timeout)
            )
            await session.initialize()
        except BaseException:
            await stack.aclose()
            raise
        self._stack = stack
        self._session = session
        logger.info("MCP client '%s' connected", self.name)

    async def close(self) -> None:
        if self._stack is not None:
            await self._stack.aclose()
        self._stack = None
        self._session = None

    async def __aenter__(self) -> McpClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def list_tools(self) -> list[McpTool]:
        """Tools the server exposes, wrapped as agent tools."""
        session = await self._require_session()
        result = await session.list_tools()
        tools = [McpTool(self, definition) for definition in result.tools]
        logger.debug("MCP client '%s' listed %d tools", self.name, len(tools))
        return tools

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> CallToolResult:
        session = await self._require_session()
        return await session.call_tool(name, arguments)

    async def _require_session(self) -> ClientSession:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise CadenceError(f"MCP client '{self.name}' is not connected")
        return self._session


class McpTool(Tool):
    def __init__(self, client: McpClient, definition: McpToolDefinition) -> None:
        self.client = client
        self.name = definition.name
        self.description = definition.description or ""
        self.input_schema = definition.inputSchema or {"type": "object", "properties": {}}

    async def stream(self, context: ToolContext) -> AsyncIterator[ToolStreamEvent | ToolResultBlock]:
        # client.call_tool is looked up per call so instrumentation patches apply
        result = await self.client.call_tool(self.name, dict(context.tool_use.input))
        yield call_result_to_tool_result(result, context.tool_use.tool_use_id)


def call_result_to_tool_result(result: CallToolResult, tool_use_id: str) -> ToolResultBlock:
    blocks: list[TextBlock | JsonBlock] = []
    for item in result.content:
        if isinstance(item, TextContent):
            blocks.append(TextBlock(item.text))
        else:
            blocks.append(JsonBlock(item.model_dump(mode="json", exclude_none=True)))
    structured = getattr(result, "structuredContent", None)
    if structured:
        blocks.append(JsonBlock(structured))
    return ToolResultBlock(
        tool_use_id=tool_use_id,
        status="error" if result.isError else "success",
        content=tuple(blocks),
    )
