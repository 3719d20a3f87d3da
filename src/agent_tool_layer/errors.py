"""Error taxonomy for the payment-settlement core.

Every error carries an HTTP-style ``status_code`` and a stable ``code`` so the
API layer can render it without knowing the concrete class.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from agent_tool_layer.payments.challenge import PaymentChallenge


class SettlementError(Exception):
    """Base class for all errors raised by the settlement core."""

    status_code: int = 500
    code: str = "SETTLEMENT_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class InsufficientBalance(SettlementError):
    """Available escrow does not cover the price. Drives the 402 challenge."""

    status_code = 402
    code = "INSUFFICIENT_BALANCE"

    def __init__(
        self,
        available: int,
        required: int,
        challenge: Optional["PaymentChallenge"] = None,
    ) -> None:
        super().__init__(f"Balance {available} < required {required}")
        self.available = available
        self.required = required
        self.challenge = challenge

    @property
    def shortfall(self) -> int:
        return self.required - self.available


class PaymentVerificationFailed(SettlementError):
    """A payment proof was rejected. No state was mutated."""

    status_code = 400
    code = "PAYMENT_VERIFICATION_FAILED"

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "reason": self.reason}


class ChainUnavailable(SettlementError):
    """The chain gateway could not be reached. Safe to retry."""

    status_code = 503
    code = "VERIFICATION_UNAVAILABLE"

    def __init__(self, chain: str, message: str) -> None:
        super().__init__(f"{chain} unavailable: {message}")
        self.chain = chain


class SettlementFailed(SettlementError):
    """One settlement group could not be confirmed on-chain."""

    code = "SETTLEMENT_FAILED"

    def __init__(self, chain: str, message: str, tx_id: Optional[str] = None) -> None:
        super().__init__(f"{chain} settlement failed: {message}")
        self.chain = chain
        self.tx_id = tx_id


class LedgerInvariantViolation(SettlementError):
    """A ledger mutation would drive a balance negative. This is a bug."""

    code = "LEDGER_INVARIANT_VIOLATION"


class InvalidTransition(SettlementError):
    """An execution record was asked to leave a terminal status."""

    status_code = 409
    code = "INVALID_TRANSITION"


class UnsupportedChain(SettlementError):
    status_code = 400
    code = "UNSUPPORTED_CHAIN"

    def __init__(self, chain: str) -> None:
        super().__init__(f"Chain '{chain}' is not configured")
        self.chain = chain


class ToolNotFound(SettlementError):
    status_code = 404
    code = "TOOL_NOT_FOUND"

    def __init__(self, tool_id: str) -> None:
        super().__init__(f"Tool {tool_id} not found")
        self.tool_id = tool_id


class UpstreamExecutionError(SettlementError):
    """The paid tool itself failed; the reservation has been released."""

    status_code = 502
    code = "UPSTREAM_EXECUTION_FAILED"

    def __init__(self, message: str, execution_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.execution_id = execution_id
