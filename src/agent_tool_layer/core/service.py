"""SettlementService - wires the ledger, gate and settlement workers together."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from agent_tool_layer.chain.chains import ChainRegistry
from agent_tool_layer.chain.gateway import ChainGateway, Web3ChainGateway
from agent_tool_layer.config import (
    AppConfig,
    get_root_dir,
    load_config,
    resolve_database_path,
    save_config,
)
from agent_tool_layer.executions.store import ExecutionStore
from agent_tool_layer.ledger.escrow import EscrowLedger
from agent_tool_layer.payments.gate import PaymentGate
from agent_tool_layer.settlement.records import BatchStore
from agent_tool_layer.settlement.worker import SettlementScheduler
from agent_tool_layer.storage.database import Database
from agent_tool_layer.storage.models import EscrowBalance
from agent_tool_layer.tools.catalog import ToolCatalog
from agent_tool_layer.tools.proxy import ExecutionProxy, HttpExecutionProxy

logger = logging.getLogger("agent_tool_layer.service")


class SettlementService:
    """One deployment of the payment-settlement core.

    Owns the database connection and every component built on top of it.
    ``gateway`` and ``proxy`` can be injected; by default the web3 relayer
    gateway and the httpx tool proxy are used.
    """

    def __init__(
        self,
        config: AppConfig,
        root_dir: Path,
        db: Database,
        gateway: Optional[ChainGateway] = None,
        proxy: Optional[ExecutionProxy] = None,
    ):
        self.config = config
        self.root_dir = root_dir
        self.db = db
        self.chains = ChainRegistry.from_configs(config.chains)
        if gateway is None:
            gateway = self._build_gateway(config, self.chains)
        self.gateway = gateway
        self.proxy = proxy or HttpExecutionProxy()
        self.catalog = ToolCatalog.from_configs(config.tools)
        self.ledger = EscrowLedger(db)
        self.store = ExecutionStore(db)
        self.batches = BatchStore(db)
        self.scheduler = SettlementScheduler.build(
            self.chains, db, self.ledger, self.store, self.gateway, config.settlement
        )
        self.gate = PaymentGate(
            db,
            self.ledger,
            self.store,
            self.gateway,
            self.chains,
            self.catalog,
            self.proxy,
            settings=config.payments,
            on_admitted=self.scheduler.notify,
            batches=self.batches,
        )
        self._started = False

    @staticmethod
    def _build_gateway(config: AppConfig, chains: ChainRegistry) -> Web3ChainGateway:
        key = config.gateway.relayer_private_key
        if key.startswith("${"):
            logger.warning(f"Relayer key {key} is not set; settlement submissions will fail")
            key = ""
        return Web3ChainGateway(
            chains,
            relayer_private_key=key,
            gas_limit_buffer_pct=config.gateway.gas_limit_buffer_pct,
            poll_interval=config.gateway.poll_interval,
        )

    @classmethod
    async def load(
        cls,
        base_path: Path | None = None,
        gateway: Optional[ChainGateway] = None,
        proxy: Optional[ExecutionProxy] = None,
    ) -> SettlementService:
        """Load an existing deployment from a .agent-tool-layer directory."""
        root_dir = get_root_dir(base_path)
        config_path = root_dir / "config.yaml"

        if not config_path.exists():
            raise FileNotFoundError(
                f"No deployment found at {root_dir}. Run 'agent-tool-layer init' first."
            )

        config = load_config(config_path)
        db = Database(resolve_database_path(config, root_dir))
        await db.connect()
        return cls(config=config, root_dir=root_dir, db=db, gateway=gateway, proxy=proxy)

    @classmethod
    async def init(
        cls,
        base_path: Path | None = None,
        name: str = "Agent Tool Layer",
        config: Optional[AppConfig] = None,
    ) -> SettlementService:
        """Write a fresh config.yaml and create the database."""
        root_dir = get_root_dir(base_path)
        config = config or AppConfig(name=name)
        save_config(config, root_dir / "config.yaml")

        db = Database(resolve_database_path(config, root_dir))
        await db.connect()
        return cls(config=config, root_dir=root_dir, db=db)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start one settlement worker per chain."""
        if self._started:
            return
        await self.scheduler.start()
        self._started = True
        logger.info(f"'{self.config.name}' settling on {', '.join(self.chains.names())}")

    async def shutdown(self) -> None:
        try:
            if self._started:
                self._started = False
                await self.scheduler.stop()
        finally:
            await self.db.close()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def balances(self, agent: str) -> list[EscrowBalance]:
        """Escrow balance of *agent* on every configured chain."""
        result = []
        for chain in self.chains.names():
            result.append(await self.ledger.get_balance(agent, chain))
        return result

    def status(self) -> dict:
        return {
            "name": self.config.name,
            "chains": {
                name: {
                    "worker_running": worker.running,
                    "settling": worker.busy,
                    "state": worker.engine.state.value,
                }
                for name, worker in self.scheduler.workers.items()
            },
            "tools": len(self.catalog.list_all()),
        }
