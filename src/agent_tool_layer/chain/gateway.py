"""Chain gateway: broadcast settlement transactions and read receipts.

The settlement core talks to chains only through :class:`ChainGateway`.
:class:`Web3ChainGateway` is the production implementation backed by
web3.py and a relayer key; tests substitute an in-memory fake.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from eth_abi import encode as abi_encode
from eth_account import Account
from eth_utils import function_signature_to_4byte_selector
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware

from agent_tool_layer.chain.chains import ChainRegistry
from agent_tool_layer.errors import ChainUnavailable, SettlementFailed

logger = logging.getLogger("agent_tool_layer.chain.gateway")


DEBIT_SELECTOR = function_signature_to_4byte_selector("debit(address,address,uint256)")


class ReceiptStatus(str, Enum):
    SUCCESS = "success"
    REVERTED = "reverted"


@dataclass(frozen=True)
class SubmittedTx:
    tx_id: str
    nonce: Optional[int] = None


@dataclass(frozen=True)
class Receipt:
    tx_id: str
    status: ReceiptStatus
    to: Optional[str]
    value: int
    block_number: Optional[int] = None
    from_address: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is ReceiptStatus.SUCCESS


class ChainGateway(Protocol):
    """Uniform interface over independent settlement chains.

    Implementations raise :class:`ChainUnavailable` when the node cannot be
    reached; ``get_receipt`` returns ``None`` for unknown or unmined
    transactions.
    """

    async def submit_transaction(
        self, chain: str, destination: str, encoded_call: bytes
    ) -> SubmittedTx: ...

    async def get_receipt(self, chain: str, tx_id: str) -> Optional[Receipt]: ...

    async def wait_for_receipt(
        self, chain: str, tx_id: str, timeout: float
    ) -> Optional[Receipt]: ...


def encode_debit_call(agent: str, counterparty: str, amount: int) -> bytes:
    """ABI-encode ``Escrow.debit(agent, toolOwner, amount)``.

    Raises ``ValueError`` for malformed addresses or an out-of-range amount.
    """
    if amount < 0 or amount >= 2**256:
        raise ValueError(f"amount {amount} does not fit uint256")
    args = [
        Web3.to_checksum_address(agent),
        Web3.to_checksum_address(counterparty),
        amount,
    ]
    return DEBIT_SELECTOR + abi_encode(["address", "address", "uint256"], args)


class Web3ChainGateway:
    """Sends relayer-signed transactions over web3.py HTTP providers.

    web3.py is synchronous, so every node call runs in a worker thread.  A
    lock per chain keeps nonce assignment strictly sequential.
    """

    def __init__(
        self,
        chains: ChainRegistry,
        relayer_private_key: str,
        gas_limit_buffer_pct: int = 20,
        poll_interval: float = 2.0,
    ) -> None:
        self.chains = chains
        self._key = relayer_private_key
        self._account = Account.from_key(relayer_private_key) if relayer_private_key else None
        self._buffer_pct = gas_limit_buffer_pct
        self._poll_interval = poll_interval
        self._instances: dict[str, Web3] = {}
        self._nonce_locks: dict[str, asyncio.Lock] = {}

    @property
    def relayer_address(self) -> Optional[str]:
        return self._account.address if self._account else None

    def get_web3(self, chain_name: str) -> Web3:
        """Return a (cached) Web3 instance for the given chain.

        Injects POA middleware for non-mainnet chains.
        """
        if chain_name in self._instances:
            return self._instances[chain_name]

        chain = self.chains.get(chain_name)
        w3 = Web3(Web3.HTTPProvider(chain.rpc_url))

        if chain.chain_id != 1:
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

        self._instances[chain_name] = w3
        return w3

    async def submit_transaction(
        self, chain: str, destination: str, encoded_call: bytes
    ) -> SubmittedTx:
        if self._account is None:
            raise ChainUnavailable(chain, "no relayer key configured")
        lock = self._nonce_locks.setdefault(chain, asyncio.Lock())
        async with lock:
            try:
                return await asyncio.to_thread(
                    self._send_sync, chain, destination, encoded_call
                )
            except (ConnectionError, TimeoutError, OSError) as exc:
                raise ChainUnavailable(chain, str(exc)) from exc
            except (Web3Exception, ValueError) as exc:
                # Rejected by the node (estimate_gas revert, RPC error); nothing was broadcast.
                logger.warning(f"Transaction to {destination} on {chain} rejected: {exc}")
                raise SettlementFailed(chain, f"rejected by node: {exc}") from exc

    def _send_sync(self, chain_name: str, destination: str, data: bytes) -> SubmittedTx:
        w3 = self.get_web3(chain_name)
        chain = self.chains.get(chain_name)
        assert self._account is not None
        nonce = w3.eth.get_transaction_count(self._account.address, "pending")

        tx: dict = {
            "from": self._account.address,
            "to": Web3.to_checksum_address(destination),
            "data": data,
            "value": 0,
            "nonce": nonce,
            "chainId": chain.chain_id,
        }

        # Try EIP-1559 first, fall back to legacy gas price
        latest = w3.eth.get_block("latest")
        base_fee = latest.get("baseFeePerGas")
        if base_fee is not None:
            max_priority = Web3.to_wei(1.5, "gwei")
            tx["maxFeePerGas"] = base_fee * 2 + max_priority
            tx["maxPriorityFeePerGas"] = max_priority
        else:
            tx["gasPrice"] = w3.eth.gas_price
        tx["gas"] = w3.eth.estimate_gas(tx) * (100 + self._buffer_pct) // 100

        signed = w3.eth.account.sign_transaction(tx, self._key)
        tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        tx_id = Web3.to_hex(tx_hash)
        logger.info(f"Transaction submitted on {chain_name}: {tx_id} (nonce={nonce})")
        return SubmittedTx(tx_id=tx_id, nonce=nonce)

    async def get_receipt(self, chain: str, tx_id: str) -> Optional[Receipt]:
        try:
            return await asyncio.to_thread(self._receipt_sync, chain, tx_id)
        except (ConnectionError, TimeoutError, OSError, Web3Exception) as exc:
            raise ChainUnavailable(chain, str(exc)) from exc

    def _receipt_sync(self, chain_name: str, tx_id: str) -> Optional[Receipt]:
        w3 = self.get_web3(chain_name)
        try:
            receipt = w3.eth.get_transaction_receipt(tx_id)
            tx = w3.eth.get_transaction(tx_id)
        except TransactionNotFound:
            return None
        return Receipt(
            tx_id=tx_id,
            status=ReceiptStatus.SUCCESS if receipt["status"] == 1 else ReceiptStatus.REVERTED,
            to=receipt.get("to"),
            value=int(tx.get("value", 0)),
            block_number=receipt.get("blockNumber"),
            from_address=tx.get("from"),
        )

    async def wait_for_receipt(
        self, chain: str, tx_id: str, timeout: float
    ) -> Optional[Receipt]:
        """Poll for a receipt; ``None`` once *timeout* seconds have passed."""
        deadline = time.monotonic() + timeout
        while True:
            receipt = await self.get_receipt(chain, tx_id)
            if receipt is not None:
                return receipt
            if time.monotonic() >= deadline:
                logger.warning(f"No receipt for {tx_id} on {chain} after {timeout}s")
                return None
            await asyncio.sleep(self._poll_interval)
