"""Append-only store of tool executions and their settlement status."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from agent_tool_layer.errors import InvalidTransition
from agent_tool_layer.storage.database import Database, Transaction
from agent_tool_layer.storage.models import ExecutionRecord, ExecutionStatus, utcnow

logger = logging.getLogger("agent_tool_layer.executions.store")


class ExecutionStore:
    """Owns settlement-status truth for every execution attempt.

    Records are never deleted and their cost never changes.  Status only
    moves out of ``pending``; the guarded ``UPDATE`` makes a second
    transition a no-op that is reported as :class:`InvalidTransition`.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(self, record: ExecutionRecord, tx: Optional[Transaction] = None) -> ExecutionRecord:
        sql = (
            "INSERT INTO executions "
            "(id, agent, counterparty, tool_id, cost, chain, status, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
        )
        params = (
            record.id,
            record.agent,
            record.counterparty,
            record.tool_id,
            str(record.cost),
            record.chain,
            ExecutionStatus.PENDING.value,
            record.created_at.isoformat(timespec="microseconds"),
        )
        if tx is not None:
            await tx.execute(sql, params)
        else:
            await self.db.execute(sql, params)
        logger.info(
            f"Execution {record.id} pending: {record.agent} -> {record.counterparty} "
            f"cost={record.cost} chain={record.chain}"
        )
        return record

    async def get(self, execution_id: str) -> Optional[ExecutionRecord]:
        row = await self.db.fetch_one("SELECT * FROM executions WHERE id = ?", (execution_id,))
        return ExecutionRecord.from_row(row) if row else None

    async def list_by_agent(self, agent: str, limit: int = 100) -> list[ExecutionRecord]:
        rows = await self.db.fetch_all(
            "SELECT * FROM executions WHERE agent = ? ORDER BY created_at DESC LIMIT ?",
            (agent, limit),
        )
        return [ExecutionRecord.from_row(r) for r in rows]

    async def list_pending(
        self, chain: str, limit: int, created_before: Optional[datetime] = None
    ) -> list[ExecutionRecord]:
        """Oldest pending records for *chain*, at most *limit*.

        *created_before* excludes records whose tool call may still be
        running.
        """
        cutoff = (created_before or utcnow()).isoformat(timespec="microseconds")
        rows = await self.db.fetch_all(
            "SELECT * FROM executions WHERE chain = ? AND status = ? AND created_at <= ? "
            "ORDER BY created_at, id LIMIT ?",
            (chain, ExecutionStatus.PENDING.value, cutoff, limit),
        )
        return [ExecutionRecord.from_row(r) for r in rows]

    async def count_pending(self, chain: str) -> int:
        row = await self.db.fetch_one(
            "SELECT COUNT(*) AS n FROM executions WHERE chain = ? AND status = ?",
            (chain, ExecutionStatus.PENDING.value),
        )
        return int(row["n"]) if row else 0

    async def mark_success(
        self,
        execution_ids: list[str],
        tx_id: str,
        batch_id: str,
        tx: Transaction,
    ) -> None:
        await self._complete(
            tx,
            execution_ids,
            "status = ?, tx_id = ?, batch_id = ?, completed_at = ?",
            (ExecutionStatus.SUCCESS.value, tx_id, batch_id, utcnow().isoformat()),
        )

    async def mark_failed(
        self,
        execution_ids: list[str],
        error: str,
        tx: Transaction,
        tx_id: Optional[str] = None,
        upstream_status: Optional[int] = None,
    ) -> None:
        await self._complete(
            tx,
            execution_ids,
            "status = ?, error = ?, tx_id = ?, upstream_status = ?, completed_at = ?",
            (ExecutionStatus.FAILED.value, error, tx_id, upstream_status, utcnow().isoformat()),
        )

    async def _complete(
        self, tx: Transaction, execution_ids: list[str], assignments: str, values: tuple
    ) -> None:
        if not execution_ids:
            return
        placeholders = ",".join("?" for _ in execution_ids)
        cursor = await tx.execute(
            f"UPDATE executions SET {assignments} "
            f"WHERE status = ? AND id IN ({placeholders})",
            (*values, ExecutionStatus.PENDING.value, *execution_ids),
        )
        if cursor.rowcount != len(execution_ids):
            raise InvalidTransition(
                f"{len(execution_ids) - cursor.rowcount} of {len(execution_ids)} "
                f"executions were not pending"
            )
