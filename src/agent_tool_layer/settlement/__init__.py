"""Settlement batching engine and per-chain workers."""

from agent_tool_layer.settlement.engine import (
    EngineState,
    GroupKey,
    GroupOutcome,
    OutcomeStatus,
    RunReport,
    SettlementEngine,
    SettlementGroup,
    group_pending,
)
from agent_tool_layer.settlement.records import BatchStore
from agent_tool_layer.settlement.worker import SettlementScheduler, SettlementWorker

__all__ = [
    "EngineState",
    "GroupKey",
    "GroupOutcome",
    "OutcomeStatus",
    "RunReport",
    "SettlementEngine",
    "SettlementGroup",
    "group_pending",
    "BatchStore",
    "SettlementScheduler",
    "SettlementWorker",
]
