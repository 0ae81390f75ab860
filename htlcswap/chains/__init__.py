"""
Chain clients for htlcswap.

Each client wraps one ledger's RPC:
- Submitting transactions and mapping rejections
- Reading locks (UTXOs, escrow objects)
- Reading the chain clock (block height, ledger close time)
"""

from .btc import BTCClient
from .xrp import XRPClient

__all__ = ["BTCClient", "XRPClient"]
