"""Escrow ledger: the authoritative per-(agent, chain) balance record.

Each mutation happens inside one serialized database transaction and is
appended to ``ledger_entries`` so balances can be replayed and audited.

``balance`` only moves on verified deposits (credit) and confirmed on-chain
settlement (debit).  Admission adds the price to ``reserved`` instead, so the
reported balance is unchanged until the batch lands, while a second admission
already sees the reduced ``available`` amount.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from agent_tool_layer.errors import LedgerInvariantViolation
from agent_tool_layer.storage.database import Database, Transaction
from agent_tool_layer.storage.models import (
    EscrowBalance,
    LedgerEntry,
    LedgerEntryKind,
    utcnow,
)

logger = logging.getLogger("agent_tool_layer.ledger.escrow")


@dataclass(frozen=True)
class ReserveResult:
    ok: bool
    current_balance: int
    available: int


@dataclass(frozen=True)
class CreditResult:
    credited: bool
    balance: int


def _check_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError(f"Amount must be an integer, got {type(amount).__name__}")
    if amount < 0:
        raise ValueError(f"Amount must not be negative, got {amount}")
    return amount


class EscrowLedger:
    """Per-agent, per-chain escrow balances backed by :class:`Database`."""

    def __init__(self, db: Database) -> None:
        self.db = db

    @asynccontextmanager
    async def _tx(self, tx: Optional[Transaction]) -> AsyncIterator[Transaction]:
        # Join the caller's transaction when given one.
        if tx is not None:
            yield tx
            return
        async with self.db.transaction() as own:
            yield own

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_balance(self, agent: str, chain: str) -> EscrowBalance:
        """Return the balance row, or a zero snapshot for unknown accounts."""
        row = await self.db.fetch_one(
            "SELECT * FROM escrow_balances WHERE agent = ? AND chain = ?",
            (agent, chain),
        )
        if row is None:
            return EscrowBalance(agent=agent, chain=chain)
        return EscrowBalance.from_row(row)

    async def list_balances(self, agent: str) -> list[EscrowBalance]:
        rows = await self.db.fetch_all(
            "SELECT * FROM escrow_balances WHERE agent = ? ORDER BY chain",
            (agent,),
        )
        return [EscrowBalance.from_row(r) for r in rows]

    async def history(self, agent: str, chain: str) -> list[LedgerEntry]:
        rows = await self.db.fetch_all(
            "SELECT * FROM ledger_entries WHERE agent = ? AND chain = ? ORDER BY id",
            (agent, chain),
        )
        return [LedgerEntry.from_row(r) for r in rows]

    async def replay(self, agent: str, chain: str) -> EscrowBalance:
        """Rebuild the balance from the mutation log.

        Raises :class:`LedgerInvariantViolation` if any prefix of the log
        leaves ``balance`` or ``reserved`` negative, or if the replayed
        totals disagree with the stored row.
        """
        balance = 0
        reserved = 0
        for entry in await self.history(agent, chain):
            if entry.kind is LedgerEntryKind.CREDIT:
                balance += entry.amount
            elif entry.kind is LedgerEntryKind.RESERVE:
                reserved += entry.amount
            elif entry.kind is LedgerEntryKind.DEBIT:
                balance -= entry.amount
                reserved -= entry.amount
            elif entry.kind is LedgerEntryKind.ROLLBACK:
                reserved -= entry.amount
            if balance < 0 or reserved < 0:
                raise LedgerInvariantViolation(
                    f"Replay of {agent}/{chain} went negative at entry {entry.id}: "
                    f"balance={balance} reserved={reserved}"
                )
            if (balance, reserved) != (entry.balance_after, entry.reserved_after):
                raise LedgerInvariantViolation(
                    f"Replay of {agent}/{chain} diverged at entry {entry.id}"
                )

        stored = await self.get_balance(agent, chain)
        if (stored.balance, stored.reserved) != (balance, reserved):
            raise LedgerInvariantViolation(
                f"Stored balance for {agent}/{chain} does not match its log"
            )
        return stored

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def open_account(
        self, agent: str, chain: str, tx: Optional[Transaction] = None
    ) -> EscrowBalance:
        """Create a zero balance for (agent, chain). Idempotent."""
        async with self._tx(tx) as t:
            row = await self._load_or_create(t, agent, chain)
        return EscrowBalance.from_row(row)

    async def check_and_reserve(
        self,
        agent: str,
        chain: str,
        amount: int,
        tx: Optional[Transaction] = None,
        reference: str = "",
    ) -> ReserveResult:
        """Atomically check ``available >= amount`` and reserve it if so.

        ``balance`` itself is never touched here.
        """
        _check_amount(amount)
        async with self._tx(tx) as t:
            row = await self._load_or_create(t, agent, chain)
            balance = int(row["balance"])
            reserved = int(row["reserved"])
            available = balance - reserved
            if available < amount:
                return ReserveResult(ok=False, current_balance=balance, available=available)
            await self._write(
                t, agent, chain, LedgerEntryKind.RESERVE, amount,
                balance, reserved + amount, reference,
            )
        return ReserveResult(ok=True, current_balance=balance, available=available - amount)

    async def credit(
        self,
        agent: str,
        chain: str,
        amount: int,
        proof_id: str,
        tx: Optional[Transaction] = None,
    ) -> CreditResult:
        """Add a verified deposit. At most once per ``(chain, proof_id)``."""
        _check_amount(amount)
        async with self._tx(tx) as t:
            seen = await t.fetch_one(
                "SELECT agent FROM credited_proofs WHERE chain = ? AND proof_id = ?",
                (chain, proof_id),
            )
            if seen is not None:
                row = await self._load_or_create(t, agent, chain)
                logger.info(f"Proof {proof_id} on {chain} already credited, skipping")
                return CreditResult(credited=False, balance=int(row["balance"]))

            row = await self._load_or_create(t, agent, chain)
            new_balance = int(row["balance"]) + amount
            await t.execute(
                "INSERT INTO credited_proofs (chain, proof_id, agent, amount) "
                "VALUES (?, ?, ?, ?)",
                (chain, proof_id, agent, str(amount)),
            )
            await self._write(
                t, agent, chain, LedgerEntryKind.CREDIT, amount,
                new_balance, int(row["reserved"]), proof_id,
            )
        logger.info(f"Credited {amount} to {agent} on {chain} (proof={proof_id})")
        return CreditResult(credited=True, balance=new_balance)

    async def debit(
        self,
        agent: str,
        chain: str,
        amount: int,
        tx: Optional[Transaction] = None,
        reference: str = "",
    ) -> EscrowBalance:
        """Consume a settled reservation. Only the batching engine calls this."""
        _check_amount(amount)
        async with self._tx(tx) as t:
            row = await self._load_or_create(t, agent, chain)
            balance = int(row["balance"]) - amount
            reserved = int(row["reserved"]) - amount
            if balance < 0 or reserved < 0:
                logger.critical(
                    f"Ledger invariant violated: debit of {amount} from {agent} on "
                    f"{chain} leaves balance={balance} reserved={reserved}"
                )
                raise LedgerInvariantViolation(
                    f"Debit of {amount} would drive {agent}/{chain} negative"
                )
            await self._write(
                t, agent, chain, LedgerEntryKind.DEBIT, amount, balance, reserved, reference,
            )
        return EscrowBalance(agent=agent, chain=chain, balance=balance, reserved=reserved)

    async def rollback_credit(
        self,
        agent: str,
        chain: str,
        amount: int,
        tx: Optional[Transaction] = None,
        reference: str = "",
    ) -> EscrowBalance:
        """Release a reservation whose settlement (or execution) failed."""
        _check_amount(amount)
        async with self._tx(tx) as t:
            row = await self._load_or_create(t, agent, chain)
            balance = int(row["balance"])
            reserved = int(row["reserved"]) - amount
            if reserved < 0:
                logger.critical(
                    f"Ledger invariant violated: rollback of {amount} for {agent} on "
                    f"{chain} exceeds reserved {row['reserved']}"
                )
                raise LedgerInvariantViolation(
                    f"Rollback of {amount} exceeds reservation of {agent}/{chain}"
                )
            await self._write(
                t, agent, chain, LedgerEntryKind.ROLLBACK, amount, balance, reserved, reference,
            )
        return EscrowBalance(agent=agent, chain=chain, balance=balance, reserved=reserved)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load_or_create(self, t: Transaction, agent: str, chain: str) -> dict:
        row = await t.fetch_one(
            "SELECT * FROM escrow_balances WHERE agent = ? AND chain = ?",
            (agent, chain),
        )
        if row is not None:
            return row
        now = utcnow().isoformat()
        await t.execute(
            "INSERT INTO escrow_balances (agent, chain, balance, reserved, updated_at) "
            "VALUES (?, ?, '0', '0', ?)",
            (agent, chain, now),
        )
        await t.execute(
            "INSERT INTO ledger_entries "
            "(agent, chain, kind, amount, balance_after, reserved_after, reference, created_at) "
            "VALUES (?, ?, ?, '0', '0', '0', '', ?)",
            (agent, chain, LedgerEntryKind.OPEN.value, now),
        )
        logger.info(f"Opened escrow account for {agent} on {chain}")
        return {"agent": agent, "chain": chain, "balance": "0", "reserved": "0", "updated_at": now}

    async def _write(
        self,
        t: Transaction,
        agent: str,
        chain: str,
        kind: LedgerEntryKind,
        amount: int,
        balance: int,
        reserved: int,
        reference: str,
    ) -> None:
        now = utcnow().isoformat()
        await t.execute(
            "UPDATE escrow_balances SET balance = ?, reserved = ?, updated_at = ? "
            "WHERE agent = ? AND chain = ?",
            (str(balance), str(reserved), now, agent, chain),
        )
        await t.execute(
            "INSERT INTO ledger_entries "
            "(agent, chain, kind, amount, balance_after, reserved_after, reference, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (agent, chain, kind.value, str(amount), str(balance), str(reserved), reference, now),
        )
