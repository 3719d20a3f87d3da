"""Async SQLite database layer for Agent Tool Layer.

Uses ``aiosqlite`` for non-blocking database access with WAL mode and
dictionary-style row results.  All writes go through :meth:`Database.transaction`
which serializes them on one connection, so a compare-and-update on a balance
row is a single atomic step rather than a read and a write racing each other.
"""

from __future__ import annotations

import asyncio
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite


class Transaction:
    """Handle for statements issued inside an open ``BEGIN IMMEDIATE`` block."""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        return await self._conn.execute(sql, params)

    async def fetch_one(self, sql: str, params: tuple = ()) -> Optional[dict]:
        cursor = await self._conn.execute(sql, params)
        row = await cursor.fetchone()
        if row is None:
            return None
        return dict(row)

    async def fetch_all(self, sql: str, params: tuple = ()) -> list[dict]:
        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]


class Database:
    """Thin async wrapper around an SQLite database.

    Parameters
    ----------
    db_path:
        Filesystem path to the SQLite database file.  The file (and any
        intermediate directories) will be created automatically on
        :meth:`connect` if they do not already exist.  ``":memory:"`` is
        accepted for tests.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = db_path if db_path == ":memory:" else Path(db_path)
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the database connection, enable WAL mode, and run migrations."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; transactions are opened explicitly.
        self._conn = await aiosqlite.connect(str(self.db_path), isolation_level=None)

        # Enable WAL mode for better concurrent read performance.
        await self._conn.execute("PRAGMA journal_mode=WAL;")

        # Return rows as ``sqlite3.Row`` so we can convert to dicts easily.
        self._conn.row_factory = sqlite3.Row

        await self._conn.execute("PRAGMA foreign_keys=ON;")

        await self._migrate()

    async def close(self) -> None:
        """Close the database connection gracefully."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    @property
    def connected(self) -> bool:
        return self._conn is not None

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """Run a block of statements atomically.

        Commits when the block exits normally and rolls back on any
        exception, which is then re-raised.
        """
        assert self._conn is not None, "Database not connected. Call connect() first."
        async with self._lock:
            await self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield Transaction(self._conn)
            except BaseException:
                await self._conn.rollback()
                raise
            else:
                await self._conn.commit()

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        """Execute a single SQL statement in its own transaction.

        Returns the raw ``aiosqlite.Cursor`` so callers can inspect
        ``lastrowid``, ``rowcount``, etc.
        """
        async with self.transaction() as tx:
            return await tx.execute(sql, params)

    async def fetch_one(self, sql: str, params: tuple = ()) -> Optional[dict]:
        """Execute a query and return the first row as a dict, or ``None``."""
        assert self._conn is not None, "Database not connected. Call connect() first."
        async with self._lock:
            cursor = await self._conn.execute(sql, params)
            row = await cursor.fetchone()
        if row is None:
            return None
        return dict(row)

    async def fetch_all(self, sql: str, params: tuple = ()) -> list[dict]:
        """Execute a query and return all rows as a list of dicts."""
        assert self._conn is not None, "Database not connected. Call connect() first."
        async with self._lock:
            cursor = await self._conn.execute(sql, params)
            rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Migrations
    # ------------------------------------------------------------------

    async def _migrate(self) -> None:
        """Create all required tables if they do not already exist."""
        assert self._conn is not None

        # Amounts are stored as decimal TEXT: wei values routinely exceed
        # SQLite's signed 64-bit INTEGER range.
        await self._conn.executescript(
            """\
            CREATE TABLE IF NOT EXISTS escrow_balances (
                agent TEXT NOT NULL,
                chain TEXT NOT NULL,
                balance TEXT NOT NULL DEFAULT '0',
                reserved TEXT NOT NULL DEFAULT '0',
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (agent, chain)
            );

            CREATE TABLE IF NOT EXISTS ledger_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                agent TEXT NOT NULL,
                chain TEXT NOT NULL,
                kind TEXT NOT NULL,
                amount TEXT NOT NULL,
                balance_after TEXT NOT NULL,
                reserved_after TEXT NOT NULL,
                reference TEXT DEFAULT '',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_ledger_account
                ON ledger_entries (agent, chain, id);

            CREATE TABLE IF NOT EXISTS credited_proofs (
                chain TEXT NOT NULL,
                proof_id TEXT NOT NULL,
                agent TEXT NOT NULL,
                amount TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (chain, proof_id)
            );

            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                agent TEXT NOT NULL,
                counterparty TEXT NOT NULL,
                tool_id TEXT NOT NULL,
                cost TEXT NOT NULL,
                chain TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                tx_id TEXT,
                batch_id TEXT,
                error TEXT,
                upstream_status INTEGER,
                created_at TIMESTAMP NOT NULL,
                completed_at TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_executions_pending
                ON executions (chain, status, created_at);

            CREATE INDEX IF NOT EXISTS idx_executions_agent
                ON executions (agent, created_at);

            CREATE TABLE IF NOT EXISTS settlement_batches (
                id TEXT PRIMARY KEY,
                chain TEXT NOT NULL,
                agent TEXT NOT NULL,
                counterparty TEXT NOT NULL,
                amount TEXT NOT NULL,
                execution_ids_json TEXT NOT NULL,
                tx_id TEXT NOT NULL,
                confirmed_at TIMESTAMP NOT NULL
            );

            CREATE TABLE IF NOT EXISTS settlement_attempts (
                id TEXT PRIMARY KEY,
                chain TEXT NOT NULL,
                agent TEXT NOT NULL,
                counterparty TEXT NOT NULL,
                amount TEXT NOT NULL,
                execution_ids_json TEXT NOT NULL,
                tx_ids_json TEXT NOT NULL DEFAULT '[]',
                state TEXT NOT NULL DEFAULT 'submitting',
                error TEXT,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            );
            """
        )
