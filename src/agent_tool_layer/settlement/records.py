"""Persistence for settlement batches and in-flight settlement attempts."""

from __future__ import annotations

import json
from typing import Optional

from agent_tool_layer.storage.database import Database, Transaction
from agent_tool_layer.storage.models import (
    AttemptState,
    ExecutionStatus,
    SettlementAttempt,
    SettlementBatch,
    utcnow,
)


class BatchStore:
    """Reads and writes ``settlement_batches`` and ``settlement_attempts``."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def insert_batch(self, batch: SettlementBatch, tx: Transaction) -> None:
        await tx.execute(
            "INSERT INTO settlement_batches "
            "(id, chain, agent, counterparty, amount, execution_ids_json, tx_id, confirmed_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                batch.id,
                batch.chain,
                batch.agent,
                batch.counterparty,
                str(batch.amount),
                json.dumps(batch.execution_ids),
                batch.tx_id,
                batch.confirmed_at.isoformat(),
            ),
        )

    async def list_batches(
        self, chain: Optional[str] = None, limit: int = 100
    ) -> list[SettlementBatch]:
        if chain:
            rows = await self.db.fetch_all(
                "SELECT * FROM settlement_batches WHERE chain = ? "
                "ORDER BY confirmed_at DESC LIMIT ?",
                (chain, limit),
            )
        else:
            rows = await self.db.fetch_all(
                "SELECT * FROM settlement_batches ORDER BY confirmed_at DESC LIMIT ?",
                (limit,),
            )
        return [SettlementBatch.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    # Attempts whose executions must not be collected, paid or released.
    _HOLDING = (AttemptState.SUBMITTING.value, AttemptState.NEEDS_REVIEW.value)

    async def open_attempt(self, attempt: SettlementAttempt) -> Optional[SettlementAttempt]:
        """Record the intent to settle *attempt* before anything is broadcast.

        Returns ``None`` without writing when one of its executions has left
        ``pending`` since it was collected.
        """
        ids = attempt.execution_ids
        placeholders = ",".join("?" for _ in ids)
        now = utcnow().isoformat()
        async with self.db.transaction() as tx:
            row = await tx.fetch_one(
                f"SELECT COUNT(*) AS n FROM executions "
                f"WHERE status = ? AND id IN ({placeholders})",
                (ExecutionStatus.PENDING.value, *ids),
            )
            if row["n"] != len(ids):
                return None
            await tx.execute(
                "INSERT INTO settlement_attempts "
                "(id, chain, agent, counterparty, amount, execution_ids_json, tx_ids_json, "
                "state, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, '[]', ?, ?, ?)",
                (
                    attempt.id,
                    attempt.chain,
                    attempt.agent,
                    attempt.counterparty,
                    str(attempt.amount),
                    json.dumps(ids),
                    AttemptState.SUBMITTING.value,
                    now,
                    now,
                ),
            )
        return attempt

    async def add_tx(self, attempt: SettlementAttempt, tx_id: str) -> None:
        """Persist a broadcast tx id before its confirmation is awaited."""
        attempt.tx_ids.append(tx_id)
        await self.db.execute(
            "UPDATE settlement_attempts SET tx_ids_json = ?, updated_at = ? WHERE id = ?",
            (json.dumps(attempt.tx_ids), utcnow().isoformat(), attempt.id),
        )

    async def finish_attempt(
        self,
        attempt_id: str,
        state: AttemptState,
        tx: Transaction,
        error: Optional[str] = None,
    ) -> None:
        await tx.execute(
            "UPDATE settlement_attempts SET state = ?, error = ?, updated_at = ? WHERE id = ?",
            (state.value, error, utcnow().isoformat(), attempt_id),
        )

    async def list_open_attempts(self, chain: str) -> list[SettlementAttempt]:
        rows = await self.db.fetch_all(
            "SELECT * FROM settlement_attempts WHERE chain = ? AND state = ? "
            "ORDER BY created_at",
            (chain, AttemptState.SUBMITTING.value),
        )
        return [SettlementAttempt.from_row(r) for r in rows]

    async def held_execution_ids(self, chain: str) -> set[str]:
        """Executions covered by a submitting or needs-review attempt."""
        rows = await self.db.fetch_all(
            "SELECT execution_ids_json FROM settlement_attempts "
            "WHERE chain = ? AND state IN (?, ?)",
            (chain, *self._HOLDING),
        )
        return {eid for r in rows for eid in json.loads(r["execution_ids_json"])}

    async def holds_execution(self, chain: str, execution_id: str, tx: Transaction) -> bool:
        rows = await tx.fetch_all(
            "SELECT execution_ids_json FROM settlement_attempts "
            "WHERE chain = ? AND state IN (?, ?)",
            (chain, *self._HOLDING),
        )
        return any(execution_id in json.loads(r["execution_ids_json"]) for r in rows)
