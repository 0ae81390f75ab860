"""
HTLC (Hash Time-Locked Contract) implementations for each chain.

HTLCs enable trustless atomic swaps by ensuring:
1. Funds can only be claimed with knowledge of a secret (preimage)
2. Funds can be refunded after a timeout if not claimed

Each chain has its own HTLC implementation:
- BTC: P2SH script with OP_CHECKSEQUENCEVERIFY
- XRP: Native escrow with a PREIMAGE-SHA-256 crypto-condition
"""

from .btc import BTCHtlc
from .xrp import XRPEscrow
from .condition import condition_binary, fulfillment_binary, parse_condition, parse_fulfillment

__all__ = [
    "BTCHtlc",
    "XRPEscrow",
    "condition_binary",
    "fulfillment_binary",
    "parse_condition",
    "parse_fulfillment",
]
