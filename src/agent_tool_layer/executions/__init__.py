"""Execution record store."""

from agent_tool_layer.executions.store import ExecutionStore

__all__ = ["ExecutionStore"]
