"""
Pytest fixtures for the Agent Tool Layer tests.

The chain is replaced by :class:`FakeChainGateway`, whose receipts and
submission outcomes are scripted per test; tool calls go to
:class:`FakeExecutionProxy`.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Optional

import pytest
import pytest_asyncio

from agent_tool_layer.chain.chains import Chain, ChainRegistry
from agent_tool_layer.chain.gateway import Receipt, ReceiptStatus, SubmittedTx
from agent_tool_layer.config import PaymentConfig, SettlementConfig
from agent_tool_layer.errors import ChainUnavailable
from agent_tool_layer.executions.store import ExecutionStore
from agent_tool_layer.ledger.escrow import EscrowLedger
from agent_tool_layer.payments.gate import PaymentGate
from agent_tool_layer.settlement.engine import SettlementEngine
from agent_tool_layer.settlement.records import BatchStore
from agent_tool_layer.storage.database import Database
from agent_tool_layer.tools.catalog import Tool, ToolCatalog
from agent_tool_layer.tools.proxy import ToolInvocationError, ToolResult

AGENT = "0x" + "a1" * 20
AGENT_2 = "0x" + "a2" * 20
OWNER = "0x" + "b1" * 20
OWNER_2 = "0x" + "b2" * 20
ESCROW_BASE = "0x" + "e1" * 20
ESCROW_KITE = "0x" + "e2" * 20


# ─────────────────────────────────────────────────────────────────────────
#  Fakes
# ─────────────────────────────────────────────────────────────────────────


class FakeChainGateway:
    """In-memory chain.

    ``outcomes`` scripts successive submissions:

    * ``"success"``  - mined and visible immediately
    * ``"revert"``   - mined with a failed status
    * ``"timeout"``  - never mined
    * ``"late"``     - not seen by ``wait_for_receipt`` but mined by the
      next ``get_receipt`` call
    * ``"outage"``   - broadcast, then the node becomes unreachable

    ``submit_errors`` holds exceptions raised by successive submissions
    before anything is broadcast (``None`` lets a submission through), and
    ``on_wait`` is awaited while a confirmation is being waited for.
    """

    def __init__(self) -> None:
        self.receipts: dict[str, Receipt] = {}
        self.outcomes: list[str] = []
        self.submitted: list[tuple[str, str, bytes, str]] = []
        self.unavailable = False
        self.submit_errors: list[Optional[Exception]] = []
        self.on_wait: Optional[Callable[[str], Awaitable[None]]] = None
        self._late: dict[str, str] = {}
        self._counter = 0

    def add_payment(
        self,
        tx_hash: str,
        to: str,
        value: int,
        status: ReceiptStatus = ReceiptStatus.SUCCESS,
        sender: str = AGENT,
    ) -> None:
        self.receipts[tx_hash] = Receipt(
            tx_id=tx_hash, status=status, to=to, value=value, from_address=sender
        )

    def _check(self, chain: str) -> None:
        if self.unavailable:
            raise ChainUnavailable(chain, "connection refused")

    async def submit_transaction(
        self, chain: str, destination: str, encoded_call: bytes
    ) -> SubmittedTx:
        self._check(chain)
        error = self.submit_errors.pop(0) if self.submit_errors else None
        if error is not None:
            raise error
        self._counter += 1
        tx_id = f"0x{self._counter:064x}"
        outcome = self.outcomes.pop(0) if self.outcomes else "success"
        self.submitted.append((chain, destination, encoded_call, tx_id))

        if outcome == "success":
            self.add_payment(tx_id, destination, 0)
        elif outcome == "revert":
            self.add_payment(tx_id, destination, 0, status=ReceiptStatus.REVERTED)
        elif outcome == "late":
            self._late[tx_id] = destination
        elif outcome == "outage":
            self.unavailable = True
        return SubmittedTx(tx_id=tx_id, nonce=self._counter)

    async def get_receipt(self, chain: str, tx_id: str) -> Optional[Receipt]:
        self._check(chain)
        if tx_id in self._late:
            self.add_payment(tx_id, self._late.pop(tx_id), 0)
        return self.receipts.get(tx_id)

    async def wait_for_receipt(
        self, chain: str, tx_id: str, timeout: float
    ) -> Optional[Receipt]:
        if self.on_wait is not None:
            await self.on_wait(tx_id)
        self._check(chain)
        if tx_id in self._late:
            return None
        return self.receipts.get(tx_id)


class FakeExecutionProxy:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.fail_with: Optional[ToolInvocationError] = None

    async def invoke(self, tool: Tool, params: dict) -> ToolResult:
        self.calls.append((tool.id, params))
        if self.fail_with is not None:
            raise self.fail_with
        return ToolResult(status_code=200, body={"tool": tool.id, "echo": params})


# ─────────────────────────────────────────────────────────────────────────
#  Fixtures
# ─────────────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(tmp_path / "settlement.db")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def chains() -> ChainRegistry:
    return ChainRegistry([
        Chain(
            name="base",
            chain_id=84532,
            rpc_url="http://127.0.0.1:8545",
            escrow_address=ESCROW_BASE,
            native_symbol="ETH",
            explorer_url="https://sepolia.basescan.org",
        ),
        Chain(
            name="kite",
            chain_id=2368,
            rpc_url="http://127.0.0.1:8546",
            escrow_address=ESCROW_KITE,
            native_symbol="KITE",
        ),
    ])


@pytest.fixture
def gateway() -> FakeChainGateway:
    return FakeChainGateway()


@pytest.fixture
def proxy() -> FakeExecutionProxy:
    return FakeExecutionProxy()


@pytest.fixture
def catalog() -> ToolCatalog:
    return ToolCatalog([
        Tool(id="search", owner=OWNER, price=30),
        Tool(id="summarize", owner=OWNER, price=50),
        Tool(id="translate", owner=OWNER_2, price=15),
        Tool(id="retired", owner=OWNER, price=10, active=False),
    ])


@pytest.fixture
def settings() -> SettlementConfig:
    return SettlementConfig(
        min_age_seconds=0,
        backoff_seconds=0,
        backoff_max_seconds=0,
        confirmation_timeout=1,
    )


@pytest.fixture
def ledger(db) -> EscrowLedger:
    return EscrowLedger(db)


@pytest.fixture
def store(db) -> ExecutionStore:
    return ExecutionStore(db)


@pytest.fixture
def batches(db) -> BatchStore:
    return BatchStore(db)


@pytest.fixture
def gate(db, ledger, store, batches, gateway, chains, catalog, proxy) -> PaymentGate:
    return PaymentGate(
        db, ledger, store, gateway, chains, catalog, proxy,
        settings=PaymentConfig(), batches=batches,
    )


@pytest.fixture
def engine(db, ledger, store, batches, gateway, chains, settings) -> SettlementEngine:
    return SettlementEngine(chains.get("base"), db, ledger, store, batches, gateway, settings)
