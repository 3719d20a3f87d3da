"""Chain definitions for the supported settlement networks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from agent_tool_layer.config import ChainConfig


@dataclass(frozen=True)
class Chain:
    """An EVM-compatible settlement network with an escrow contract."""

    name: str
    chain_id: int
    rpc_url: str
    escrow_address: str
    native_symbol: str
    explorer_url: str = ""

    @classmethod
    def from_config(cls, cfg: ChainConfig) -> "Chain":
        return cls(
            name=cfg.name,
            chain_id=cfg.chain_id,
            rpc_url=cfg.rpc_url,
            escrow_address=cfg.escrow_address,
            native_symbol=cfg.native_symbol,
            explorer_url=cfg.explorer_url,
        )

    def tx_url(self, tx_id: str) -> str:
        if not self.explorer_url:
            return ""
        return f"{self.explorer_url.rstrip('/')}/tx/{tx_id}"


class ChainRegistry:
    """Lookup of configured chains by name."""

    def __init__(self, chains: Iterable[Chain]) -> None:
        self._chains: dict[str, Chain] = {c.name: c for c in chains}

    @classmethod
    def from_configs(cls, configs: Iterable[ChainConfig]) -> "ChainRegistry":
        return cls(Chain.from_config(c) for c in configs)

    def get(self, name: str) -> Chain:
        """Get a chain by name. Raises ``KeyError`` if not found."""
        if name not in self._chains:
            raise KeyError(f"Unknown chain '{name}'. Available: {self.names()}")
        return self._chains[name]

    def __contains__(self, name: object) -> bool:
        return name in self._chains

    def __iter__(self):
        return iter(self._chains.values())

    def names(self) -> list[str]:
        """Return the names of all configured chains."""
        return list(self._chains.keys())
