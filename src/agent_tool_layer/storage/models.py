"""Pydantic models mapping to the Agent Tool Layer database tables."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ExecutionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class LedgerEntryKind(str, Enum):
    OPEN = "open"
    CREDIT = "credit"
    RESERVE = "reserve"
    DEBIT = "debit"
    ROLLBACK = "rollback"


class AttemptState(str, Enum):
    SUBMITTING = "submitting"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    NEEDS_REVIEW = "needs_review"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _new_id() -> str:
    """Generate a short hex ID (12 characters)."""
    return uuid.uuid4().hex[:12]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: object) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Record models
# ---------------------------------------------------------------------------

class EscrowBalance(BaseModel):
    """Maps to the ``escrow_balances`` table."""

    agent: str
    chain: str
    balance: int = 0
    reserved: int = 0
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def available(self) -> int:
        """Funds not yet promised to a pending execution."""
        return self.balance - self.reserved

    @classmethod
    def from_row(cls, row: dict) -> "EscrowBalance":
        return cls(
            agent=row["agent"],
            chain=row["chain"],
            balance=int(row["balance"]),
            reserved=int(row["reserved"]),
            updated_at=_parse_ts(row["updated_at"]) or utcnow(),
        )


class LedgerEntry(BaseModel):
    """Maps to the ``ledger_entries`` table (append-only mutation log)."""

    id: Optional[int] = None
    agent: str
    chain: str
    kind: LedgerEntryKind
    amount: int
    balance_after: int
    reserved_after: int
    reference: str = ""
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_row(cls, row: dict) -> "LedgerEntry":
        return cls(
            id=row["id"],
            agent=row["agent"],
            chain=row["chain"],
            kind=LedgerEntryKind(row["kind"]),
            amount=int(row["amount"]),
            balance_after=int(row["balance_after"]),
            reserved_after=int(row["reserved_after"]),
            reference=row["reference"] or "",
            created_at=_parse_ts(row["created_at"]) or utcnow(),
        )


class ExecutionRecord(BaseModel):
    """Maps to the ``executions`` table."""

    id: str = Field(default_factory=_new_id)
    agent: str
    counterparty: str
    tool_id: str
    cost: int
    chain: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    tx_id: Optional[str] = None
    batch_id: Optional[str] = None
    error: Optional[str] = None
    upstream_status: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    model_config = {"frozen": True}

    @classmethod
    def from_row(cls, row: dict) -> "ExecutionRecord":
        return cls(
            id=row["id"],
            agent=row["agent"],
            counterparty=row["counterparty"],
            tool_id=row["tool_id"],
            cost=int(row["cost"]),
            chain=row["chain"],
            status=ExecutionStatus(row["status"]),
            tx_id=row["tx_id"],
            batch_id=row["batch_id"],
            error=row["error"],
            upstream_status=row["upstream_status"],
            created_at=_parse_ts(row["created_at"]) or utcnow(),
            completed_at=_parse_ts(row["completed_at"]),
        )

    def to_dict(self) -> dict:
        data = self.model_dump(mode="json")
        # Keep big integers exact for JSON consumers.
        data["cost"] = str(self.cost)
        return data


class SettlementBatch(BaseModel):
    """Maps to the ``settlement_batches`` table."""

    id: str = Field(default_factory=lambda: f"batch-{_new_id()}")
    chain: str
    agent: str
    counterparty: str
    amount: int
    execution_ids: list[str]
    tx_id: str
    confirmed_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_row(cls, row: dict) -> "SettlementBatch":
        return cls(
            id=row["id"],
            chain=row["chain"],
            agent=row["agent"],
            counterparty=row["counterparty"],
            amount=int(row["amount"]),
            execution_ids=json.loads(row["execution_ids_json"]),
            tx_id=row["tx_id"],
            confirmed_at=_parse_ts(row["confirmed_at"]) or utcnow(),
        )

    def to_dict(self) -> dict:
        data = self.model_dump(mode="json")
        data["amount"] = str(self.amount)
        return data


class SettlementAttempt(BaseModel):
    """Maps to the ``settlement_attempts`` table.

    Written before waiting on a receipt so that an interrupted run leaves a
    ``submitting`` row that can be re-verified on restart.
    """

    id: str = Field(default_factory=_new_id)
    chain: str
    agent: str
    counterparty: str
    amount: int
    execution_ids: list[str]
    tx_ids: list[str] = Field(default_factory=list)
    state: AttemptState = AttemptState.SUBMITTING
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_row(cls, row: dict) -> "SettlementAttempt":
        return cls(
            id=row["id"],
            chain=row["chain"],
            agent=row["agent"],
            counterparty=row["counterparty"],
            amount=int(row["amount"]),
            execution_ids=json.loads(row["execution_ids_json"]),
            tx_ids=json.loads(row["tx_ids_json"] or "[]"),
            state=AttemptState(row["state"]),
            error=row["error"],
            created_at=_parse_ts(row["created_at"]) or utcnow(),
            updated_at=_parse_ts(row["updated_at"]) or utcnow(),
        )
