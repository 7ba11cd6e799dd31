"""Tools -- the tool interface, function tools, registry and MCP adapter.

Public API:
    Tool            - Abstract async-iterator tool
    FunctionTool    - Tool backed by a plain or async function
    function_tool   - Decorator building a FunctionTool
    ToolRegistry    - Name-keyed tool lookup
    ToolContext     - What a running tool receives
    McpClient, McpTool - MCP server tools as agent tools
"""

from cadence.tools.mcp import McpClient, McpTool
from cadence.tools.registry import ToolRegistry
from cadence.tools.tool import (
    FunctionTool,
    Tool,
    ToolContext,
    error_result,
    function_tool,
    to_tool_result,
)

__all__ = [
    "FunctionTool",
    "McpClient",
    "McpTool",
    "Tool",
    "ToolContext",
    "ToolRegistry",
    "error_result",
    "function_tool",
    "to_tool_result",
]
