"""x402 challenge-response payment gate."""

from agent_tool_layer.payments.challenge import (
    PAYMENT_CHAIN_HEADER,
    PAYMENT_HEADER,
    WALLET_HEADER,
    X402_SCHEME,
    PaymentChallenge,
    PaymentProof,
    decode_payment_proof,
    encode_payment_proof,
    www_authenticate,
)
from agent_tool_layer.payments.gate import ExecutionOutcome, PaymentGate

__all__ = [
    "PAYMENT_CHAIN_HEADER",
    "PAYMENT_HEADER",
    "WALLET_HEADER",
    "X402_SCHEME",
    "PaymentChallenge",
    "PaymentProof",
    "decode_payment_proof",
    "encode_payment_proof",
    "www_authenticate",
    "ExecutionOutcome",
    "PaymentGate",
]
