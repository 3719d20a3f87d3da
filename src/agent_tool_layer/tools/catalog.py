"""Read-only view of the external tool registry."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from agent_tool_layer.config import ToolConfig


@dataclass(frozen=True)
class Tool:
    """A priced tool. ``owner`` is the counterparty paid on settlement."""

    id: str
    owner: str
    price: int
    endpoint: str = ""
    active: bool = True


class ToolCatalog:
    """Tools keyed by id, built from configuration at startup."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {t.id: t for t in tools}

    @classmethod
    def from_configs(cls, configs: Iterable[ToolConfig]) -> "ToolCatalog":
        return cls(
            Tool(id=c.id, owner=c.owner, price=c.price, endpoint=c.endpoint, active=c.active)
            for c in configs
        )

    def get(self, tool_id: str) -> Optional[Tool]:
        """Return the tool, or ``None`` if unknown or deactivated."""
        tool = self._tools.get(tool_id)
        if tool is None or not tool.active:
            return None
        return tool

    def list_all(self) -> list[Tool]:
        return list(self._tools.values())
