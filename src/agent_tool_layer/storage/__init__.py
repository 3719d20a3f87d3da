"""Agent Tool Layer storage layer -- async SQLite database and Pydantic models."""

from agent_tool_layer.storage.database import Database, Transaction
from agent_tool_layer.storage.models import (
    AttemptState,
    EscrowBalance,
    ExecutionRecord,
    ExecutionStatus,
    LedgerEntry,
    LedgerEntryKind,
    SettlementAttempt,
    SettlementBatch,
)

__all__ = [
    "Database",
    "Transaction",
    "AttemptState",
    "EscrowBalance",
    "ExecutionRecord",
    "ExecutionStatus",
    "LedgerEntry",
    "LedgerEntryKind",
    "SettlementAttempt",
    "SettlementBatch",
]
