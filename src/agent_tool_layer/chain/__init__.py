"""Settlement chains and the gateway used to reach them."""

from agent_tool_layer.chain.chains import Chain, ChainRegistry
from agent_tool_layer.chain.gateway import (
    ChainGateway,
    Receipt,
    ReceiptStatus,
    SubmittedTx,
    Web3ChainGateway,
    encode_debit_call,
)

__all__ = [
    "Chain",
    "ChainRegistry",
    "ChainGateway",
    "Receipt",
    "ReceiptStatus",
    "SubmittedTx",
    "Web3ChainGateway",
    "encode_debit_call",
]
