"""Execution proxy: invokes a paid tool once admission has succeeded."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from agent_tool_layer.tools.catalog import Tool

logger = logging.getLogger("agent_tool_layer.tools.proxy")


@dataclass
class ToolResult:
    status_code: int
    body: Any


class ToolInvocationError(Exception):
    """The tool endpoint could not be reached or returned a server error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ExecutionProxy(Protocol):
    async def invoke(self, tool: Tool, params: dict) -> ToolResult: ...


class HttpExecutionProxy:
    """POSTs the call parameters as JSON to the tool's endpoint."""

    def __init__(self, timeout: float = 30.0) -> None:
        self.timeout = timeout

    async def invoke(self, tool: Tool, params: dict) -> ToolResult:
        if not tool.endpoint:
            raise ToolInvocationError(f"Tool {tool.id} has no endpoint")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(tool.endpoint, json=params)
        except httpx.HTTPError as exc:
            raise ToolInvocationError(f"{type(exc).__name__}: {exc}") from exc

        if resp.status_code >= 500:
            raise ToolInvocationError(
                f"Tool {tool.id} returned {resp.status_code}", status_code=resp.status_code
            )
        try:
            body = resp.json()
        except ValueError:
            body = resp.text
        logger.info(f"Tool {tool.id} executed upstream (status={resp.status_code})")
        return ToolResult(status_code=resp.status_code, body=body)
