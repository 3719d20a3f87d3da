"""Tool catalog and execution proxy adapters."""

from agent_tool_layer.tools.catalog import Tool, ToolCatalog
from agent_tool_layer.tools.proxy import (
    ExecutionProxy,
    HttpExecutionProxy,
    ToolInvocationError,
    ToolResult,
)

__all__ = [
    "Tool",
    "ToolCatalog",
    "ExecutionProxy",
    "HttpExecutionProxy",
    "ToolInvocationError",
    "ToolResult",
]
