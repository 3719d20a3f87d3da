"""Configuration system for Agent Tool Layer.

Loads deployment config from `.agent-tool-layer/config.yaml`, supports
environment variable expansion, and exposes the settlement, chain, gateway
and tool-catalog settings used by the rest of the package.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Environment-variable expansion helper
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}")


def _expand_env_vars(value: str) -> str:
    """Replace ``${VAR_NAME}`` placeholders with their environment values.

    If the variable is not set the placeholder is left as-is so that
    validation can catch it later.
    """

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))

    return _ENV_VAR_RE.sub(_replace, value)


def _expand_env_recursive(obj: object) -> object:
    """Walk an arbitrary nested structure and expand env vars in strings."""
    if isinstance(obj, str):
        return _expand_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _expand_env_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env_recursive(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# Pydantic v2 models
# ---------------------------------------------------------------------------


class ChainConfig(BaseModel):
    """A settlement chain and the escrow contract deployed on it."""

    name: str
    chain_id: int
    rpc_url: str
    escrow_address: str = ""        # ${BASE_ESCROW_CONTRACT}
    native_symbol: str = "ETH"
    explorer_url: str = ""


class SettlementConfig(BaseModel):
    """Batching engine knobs, applied to every chain worker."""

    interval_seconds: float = 300.0     # every 5 minutes
    pending_threshold: int = 50         # early trigger when this many are pending
    batch_size: int = 50                # records fetched per run
    max_attempts: int = 3               # on-chain submissions per group
    backoff_seconds: float = 2.0        # first retry delay, doubled each time
    backoff_max_seconds: float = 30.0
    confirmation_timeout: float = 120.0
    min_age_seconds: float = 60.0       # leave room for the tool call to finish

    @field_validator("max_attempts", "batch_size", "pending_threshold")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value


class GatewayConfig(BaseModel):
    """Relayer account used to broadcast settlement transactions."""

    relayer_private_key: str = ""   # ${RELAYER_PRIVATE_KEY}
    gas_limit_buffer_pct: int = 20
    poll_interval: float = 2.0


class PaymentConfig(BaseModel):
    """x402 challenge settings."""

    challenge_ttl_seconds: int = 300
    realm: str = "AgentToolLayer"


class ServerConfig(BaseModel):
    """HTTP API settings."""

    port: int = 8402
    host: str = "127.0.0.1"


class ToolConfig(BaseModel):
    """A priced tool as exposed by the (external) tool registry."""

    id: str
    owner: str                      # counterparty wallet receiving payouts
    price: int                      # smallest currency unit
    endpoint: str = ""
    active: bool = True

    @field_validator("price")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("price must not be negative")
        return value


def _default_chains() -> list[ChainConfig]:
    return [
        ChainConfig(
            name="base",
            chain_id=84532,
            rpc_url="https://sepolia.base.org",
            escrow_address="${BASE_ESCROW_CONTRACT}",
            native_symbol="ETH",
            explorer_url="https://sepolia.basescan.org",
        ),
        ChainConfig(
            name="kite",
            chain_id=2368,
            rpc_url="https://rpc-testnet.gokite.ai",
            escrow_address="${KITE_ESCROW_CONTRACT}",
            native_symbol="KITE",
            explorer_url="https://testnet.kitescan.ai",
        ),
    ]


class AppConfig(BaseModel):
    """Root configuration object for one deployment."""

    name: str = "Agent Tool Layer"
    database: str = "settlement.db"  # relative to the config directory
    default_chain: str = "kite"
    chains: list[ChainConfig] = Field(default_factory=_default_chains)
    settlement: SettlementConfig = Field(default_factory=SettlementConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    payments: PaymentConfig = Field(default_factory=PaymentConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    tools: list[ToolConfig] = Field(default_factory=list)

    def chain(self, name: str) -> Optional[ChainConfig]:
        for chain in self.chains:
            if chain.name == name:
                return chain
        return None


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def get_root_dir(base: Path | None = None) -> Path:
    """Return the ``.agent-tool-layer/`` directory (no auto-create).

    Parameters
    ----------
    base:
        Parent directory that contains (or will contain) the root folder.
        Defaults to the current working directory.
    """
    if base is None:
        base = Path.cwd()
    return base / ".agent-tool-layer"


def get_config_path(base: Path | None = None) -> Path:
    return get_root_dir(base) / "config.yaml"


def resolve_database_path(config: AppConfig, config_dir: Path) -> Path:
    """Return the absolute SQLite path for *config*."""
    db_path = Path(config.database)
    if db_path.is_absolute():
        return db_path
    return config_dir / db_path


def load_config(path: Path) -> AppConfig:
    """Load and validate a configuration from a YAML file.

    Environment variable placeholders (``${VAR}``) are expanded before
    validation.
    """
    raw_text = path.read_text(encoding="utf-8")
    raw_data = yaml.safe_load(raw_text) or {}
    expanded = _expand_env_recursive(raw_data)
    return AppConfig.model_validate(expanded)


def save_config(config: AppConfig, path: Path) -> None:
    """Serialize an :class:`AppConfig` to a YAML file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="python", exclude_none=True)
    with open(path, "w", encoding="utf-8") as fh:
        yaml.dump(data, fh, default_flow_style=False, sort_keys=False)
