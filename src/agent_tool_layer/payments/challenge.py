"""x402 wire formats: the 402 payment challenge and the payment proof header."""

from __future__ import annotations

import base64
import binascii
import json
import time
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from agent_tool_layer.errors import PaymentVerificationFailed

X402_SCHEME = "x402"
PAYMENT_HEADER = "X-Payment"
PAYMENT_CHAIN_HEADER = "X-Payment-Chain"
WALLET_HEADER = "X-Wallet"


def _to_int(value: object) -> int:
    # Amounts travel as decimal strings so JSON never rounds them.
    if isinstance(value, bool):
        raise ValueError("boolean is not an amount")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ValueError(f"not a non-negative integer amount: {value!r}")


class PaymentChallenge(BaseModel):
    """Body of a 402 response describing the shortfall to pay.

    Advisory only: ``expires`` and ``memo`` guide the payer and are not
    checked when a proof comes back.  Proofs are verified against the
    chain, and any matching payment is credited.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    scheme: str = X402_SCHEME
    network: str
    asset: str
    amount: int
    pay_to: str = Field(alias="payTo")
    memo: str
    expires: int  # unix milliseconds

    @classmethod
    def issue(
        cls,
        network: str,
        asset: str,
        amount: int,
        pay_to: str,
        memo: str,
        ttl_seconds: int,
        now_ms: Optional[int] = None,
    ) -> "PaymentChallenge":
        now_ms = int(time.time() * 1000) if now_ms is None else now_ms
        return cls(
            network=network,
            asset=asset,
            amount=amount,
            pay_to=pay_to,
            memo=memo,
            expires=now_ms + ttl_seconds * 1000,
        )

    def to_wire(self) -> dict:
        data = self.model_dump(by_alias=True)
        data["amount"] = str(self.amount)
        return data


def www_authenticate(realm: str) -> str:
    """Header value advertising the x402 scheme for protocol discovery."""
    return f'{X402_SCHEME} realm="{realm}", charset="UTF-8"'


class PaymentProof(BaseModel):
    """Decoded ``X-Payment`` header: the caller's claim of an on-chain payment."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    tx_hash: str = Field(alias="txHash", min_length=1)
    from_address: str = Field(default="", alias="from")
    to: str
    value: int
    block_number: Optional[int] = Field(default=None, alias="blockNumber")
    timestamp: Optional[int] = None

    @field_validator("value", mode="before")
    @classmethod
    def _parse_value(cls, value: object) -> int:
        return _to_int(value)

    @property
    def proof_id(self) -> str:
        return self.tx_hash.lower()


def encode_payment_proof(proof: PaymentProof) -> str:
    data = proof.model_dump(by_alias=True)
    data["value"] = str(proof.value)
    raw = json.dumps(data, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def decode_payment_proof(header: str) -> PaymentProof:
    """Parse a base64 JSON proof, raising a ``malformed`` verification error."""
    try:
        raw = base64.b64decode(header.strip(), validate=True)
        data = json.loads(raw.decode("utf-8"))
        if not isinstance(data, dict):
            raise ValueError("proof must be a JSON object")
        return PaymentProof.model_validate(data)
    except (binascii.Error, UnicodeDecodeError, ValueError, ValidationError) as exc:
        raise PaymentVerificationFailed(
            "malformed", f"Invalid payment header format: {exc}"
        ) from exc
