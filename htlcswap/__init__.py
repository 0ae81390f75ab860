"""
htlcswap - Cross-Chain HTLC Swap Library

Atomic swaps between a Bitcoin-style UTXO chain (P2SH hashlock +
relative timelock) and the XRP Ledger (native conditional escrow).

Usage:
    from htlcswap import SwapExecutor, BTCClient, XRPClient
    from htlcswap import create_secret, verify_preimage

    # Initialize clients
    btc = BTCClient(BTCConfig.from_env())
    xrp = XRPClient(XRPConfig.from_env())

    # Register one leg per chain
    policy = TimeoutPolicy()
    executor = SwapExecutor({
        "XRP": XRPLeg(XRPEscrow(xrp), xrp),
        "BTC": BTCLeg(BTCHtlc(btc), btc, policy),
    }, SwapConfig(policy=policy))

    # Initiator locks XRP (leg A), responder locks BTC (leg B)
    swap = executor.create_swap(leg_a, leg_b)
    executor.run(swap.swap_id)
"""

from .core import (
    SwapState,
    LegStatus,
    Resolution,
    RejectReason,
    KeyInfo,
    UTXO,
    LegState,
    SwapSecret,
    SwapLeg,
    TimeoutPolicy,
    SwapError,
    InputValidationError,
    InsufficientFundsError,
    LedgerRejection,
    ProtocolViolation,
    ExtractionError,
    NotReady,
    RPCError,
    create_secret,
    verify_preimage,
    btc_to_sats,
    sats_to_btc,
)

from .chains.btc import BTCClient, BTCConfig
from .chains.xrp import XRPClient, XRPConfig

from .htlc.btc import BTCHtlc, encode_sequence, decode_sequence
from .htlc.xrp import XRPEscrow

from .swap.executor import SwapExecutor, SwapConfig, ActiveSwap
from .swap.legs import BTCLeg, XRPLeg
from .swap.store import SwapStore
from .swap.watcher import SwapWatcher, WatcherConfig

__version__ = "0.1.0"
__all__ = [
    # Core types
    "SwapState",
    "LegStatus",
    "Resolution",
    "RejectReason",
    "KeyInfo",
    "UTXO",
    "LegState",
    "SwapSecret",
    "SwapLeg",
    "TimeoutPolicy",
    # Errors
    "SwapError",
    "InputValidationError",
    "InsufficientFundsError",
    "LedgerRejection",
    "ProtocolViolation",
    "ExtractionError",
    "NotReady",
    "RPCError",
    # Utilities
    "create_secret",
    "verify_preimage",
    "btc_to_sats",
    "sats_to_btc",
    # Clients
    "BTCClient",
    "BTCConfig",
    "XRPClient",
    "XRPConfig",
    # HTLC
    "BTCHtlc",
    "encode_sequence",
    "decode_sequence",
    "XRPEscrow",
    # Swap
    "SwapExecutor",
    "SwapConfig",
    "ActiveSwap",
    "BTCLeg",
    "XRPLeg",
    "SwapStore",
    "SwapWatcher",
    "WatcherConfig",
]
