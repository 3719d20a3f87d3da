"""Escrow balance ledger."""

from agent_tool_layer.ledger.escrow import CreditResult, EscrowLedger, ReserveResult

__all__ = ["CreditResult", "EscrowLedger", "ReserveResult"]
