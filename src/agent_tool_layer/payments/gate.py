"""x402 payment gate in front of the tool execution path.

Admission checks the escrow ledger and, in the same database transaction,
reserves the price and writes a ``pending`` execution record.  When funds are
short the caller receives a :class:`PaymentChallenge` for the difference and
can come back with an ``X-Payment`` proof, which is verified against the
chain before it is credited.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from agent_tool_layer.chain.chains import ChainRegistry
from agent_tool_layer.chain.gateway import ChainGateway
from agent_tool_layer.config import PaymentConfig
from agent_tool_layer.errors import (
    ChainUnavailable,
    InsufficientBalance,
    InvalidTransition,
    PaymentVerificationFailed,
    ToolNotFound,
    UnsupportedChain,
    UpstreamExecutionError,
)
from agent_tool_layer.executions.store import ExecutionStore
from agent_tool_layer.ledger.escrow import CreditResult, EscrowLedger
from agent_tool_layer.payments.challenge import (
    PaymentChallenge,
    PaymentProof,
    decode_payment_proof,
)
from agent_tool_layer.settlement.records import BatchStore
from agent_tool_layer.storage.database import Database
from agent_tool_layer.storage.models import ExecutionRecord
from agent_tool_layer.tools.catalog import Tool, ToolCatalog
from agent_tool_layer.tools.proxy import ExecutionProxy, ToolInvocationError, ToolResult

logger = logging.getLogger("agent_tool_layer.payments.gate")

AdmissionHook = Callable[[str], Awaitable[None]]


@dataclass
class ExecutionOutcome:
    execution: ExecutionRecord
    result: ToolResult
    credit: Optional[CreditResult] = None


class PaymentGate:
    """Request-scoped admission control backed by the escrow ledger."""

    def __init__(
        self,
        db: Database,
        ledger: EscrowLedger,
        store: ExecutionStore,
        gateway: ChainGateway,
        chains: ChainRegistry,
        catalog: ToolCatalog,
        proxy: ExecutionProxy,
        settings: Optional[PaymentConfig] = None,
        on_admitted: Optional[AdmissionHook] = None,
        batches: Optional[BatchStore] = None,
    ) -> None:
        self.db = db
        self.ledger = ledger
        self.store = store
        self.gateway = gateway
        self.chains = chains
        self.catalog = catalog
        self.proxy = proxy
        self.settings = settings or PaymentConfig()
        self.on_admitted = on_admitted
        self.batches = batches or BatchStore(db)

    # ------------------------------------------------------------------
    # Challenge
    # ------------------------------------------------------------------

    def build_challenge(self, tool: Tool, chain: str, amount: int) -> PaymentChallenge:
        info = self.chains.get(chain)
        return PaymentChallenge.issue(
            network=chain,
            asset=info.native_symbol,
            amount=amount,
            pay_to=info.escrow_address,
            memo=tool.id,
            ttl_seconds=self.settings.challenge_ttl_seconds,
        )

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def admit(self, agent: str, tool: Tool, chain: str) -> ExecutionRecord:
        """Reserve ``tool.price`` and create exactly one pending record.

        Raises :class:`InsufficientBalance` carrying a challenge for the
        shortfall; nothing is written in that case.
        """
        self._require_chain(chain)
        record = ExecutionRecord(
            agent=agent,
            counterparty=tool.owner,
            tool_id=tool.id,
            cost=tool.price,
            chain=chain,
        )
        async with self.db.transaction() as tx:
            check = await self.ledger.check_and_reserve(
                agent, chain, tool.price, tx=tx, reference=record.id
            )
            if check.ok:
                await self.store.create(record, tx=tx)

        if not check.ok:
            shortfall = tool.price - check.available
            logger.info(
                f"402 for {agent} on {chain}: {tool.id} costs {tool.price}, "
                f"available {check.available}"
            )
            raise InsufficientBalance(
                available=check.available,
                required=tool.price,
                challenge=self.build_challenge(tool, chain, shortfall),
            )

        if self.on_admitted is not None:
            await self.on_admitted(chain)
        return record

    # ------------------------------------------------------------------
    # Proof verification
    # ------------------------------------------------------------------

    async def verify_proof(self, agent: str, chain: str, proof: PaymentProof) -> CreditResult:
        """Check *proof* against the chain and credit the paid value once.

        Never credits on an ambiguous outcome: an unreachable node raises
        :class:`ChainUnavailable` and leaves the ledger untouched.
        """
        if chain not in self.chains:
            raise PaymentVerificationFailed(
                "chain_mismatch", f"Payment chain '{chain}' is not configured"
            )
        escrow = self.chains.get(chain).escrow_address.lower()

        try:
            receipt = await self.gateway.get_receipt(chain, proof.tx_hash)
        except ChainUnavailable:
            logger.warning(f"Verification unavailable for {proof.tx_hash} on {chain}")
            raise

        if receipt is None:
            raise PaymentVerificationFailed(
                "not_found", f"Transaction {proof.tx_hash} not found on {chain}"
            )
        if not receipt.succeeded:
            raise PaymentVerificationFailed("transaction_failed", "Payment transaction failed")
        if (receipt.to or "").lower() != escrow or proof.to.lower() != escrow:
            raise PaymentVerificationFailed("wrong_recipient", "Payment sent to wrong address")
        payer = agent.lower()
        if (receipt.from_address or "").lower() != payer or (
            proof.from_address and proof.from_address.lower() != payer
        ):
            raise PaymentVerificationFailed(
                "wrong_sender", f"Payment was not sent by {agent}"
            )
        if receipt.value < proof.value:
            raise PaymentVerificationFailed(
                "value_mismatch",
                f"Proof claims {proof.value} but transaction moved {receipt.value}",
            )

        result = await self.ledger.credit(agent, chain, receipt.value, proof_id=proof.proof_id)
        if result.credited:
            logger.info(
                f"x402 payment verified and credited: {agent} +{receipt.value} on {chain} "
                f"(tx={proof.tx_hash})"
            )
        return result

    # ------------------------------------------------------------------
    # Full request path
    # ------------------------------------------------------------------

    async def execute(
        self,
        agent: str,
        tool_id: str,
        chain: str,
        params: Optional[dict] = None,
        payment_header: Optional[str] = None,
    ) -> ExecutionOutcome:
        """Verify an optional proof, admit, then invoke the tool."""
        tool = self.catalog.get(tool_id)
        if tool is None:
            raise ToolNotFound(tool_id)
        self._require_chain(chain)

        credit = None
        if payment_header:
            proof = decode_payment_proof(payment_header)
            credit = await self.verify_proof(agent, chain, proof)

        record = await self.admit(agent, tool, chain)
        try:
            result = await self.proxy.invoke(tool, params or {})
        except ToolInvocationError as exc:
            await self._release(record, str(exc), exc.status_code)
            raise UpstreamExecutionError(
                f"Tool execution failed: {exc}", execution_id=record.id
            ) from exc
        return ExecutionOutcome(execution=record, result=result, credit=credit)

    async def _release(
        self, record: ExecutionRecord, error: str, upstream_status: Optional[int]
    ) -> None:
        """Fail a record whose tool call failed and give back its reservation.

        Refused while a settlement attempt covers the record: its debit may
        already be on-chain, so the charge stands.
        """
        try:
            async with self.db.transaction() as tx:
                if await self.batches.holds_execution(record.chain, record.id, tx):
                    logger.warning(
                        f"Execution {record.id} is being settled, not releasing its reservation"
                    )
                    return
                await self.store.mark_failed(
                    [record.id], error, tx=tx, upstream_status=upstream_status
                )
                await self.ledger.rollback_credit(
                    record.agent, record.chain, record.cost, tx=tx, reference=record.id
                )
        except InvalidTransition:
            # Settled before the tool returned; the charge stands.
            logger.warning(f"Execution {record.id} already settled, not releasing")
            return
        logger.info(f"Reservation for {record.id} released after upstream failure")

    def _require_chain(self, chain: str) -> None:
        if chain not in self.chains:
            raise UnsupportedChain(chain)
