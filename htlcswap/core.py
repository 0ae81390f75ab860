"""
Core types and interfaces for htlcswap.
"""

import hashlib
import secrets
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Protocol


class SwapState(Enum):
    """Swap lifecycle states."""
    INIT = "init"                               # Secret chosen, nothing locked
    INITIATOR_LOCKED = "initiator_locked"       # Leg A locked (longer timeout)
    RESPONDER_LOCKED = "responder_locked"       # Leg B locked after verifying A
    SECRET_REVEALED = "secret_revealed"         # Initiator claimed B, secret on-chain
    BOTH_SETTLED = "both_settled"               # Responder claimed A with extracted secret
    TIMED_OUT_REFUNDING = "timed_out_refunding" # Waiting for timeouts to refund locks
    REFUNDED = "refunded"                       # Every unclaimed lock refunded
    ABANDONED = "abandoned"                     # Dropped before any funds were locked


TERMINAL_STATES = (SwapState.BOTH_SETTLED, SwapState.REFUNDED, SwapState.ABANDONED)


class LegStatus(Enum):
    """Per-leg lock status."""
    PENDING = "pending"
    LOCKED = "locked"
    CLAIMED = "claimed"
    REFUNDED = "refunded"


class Resolution(Enum):
    """What the orchestrator should do after a failed step."""
    RETRY = "retry"       # Transient, try again now
    WAIT = "wait"         # Not yet eligible, try again later
    ABANDON = "abandon"   # Fatal for the swap, fall back to refunds


class RejectReason(Enum):
    """Typed ledger rejection reasons."""
    INSUFFICIENT_FUNDS = "insufficient_funds"
    PREMATURE_TIMELOCK = "premature_timelock"   # UTXO relative timelock not matured
    TOO_EARLY = "too_early"                     # Escrow cancel before CancelAfter
    DOUBLE_SPEND = "double_spend"
    ALREADY_SETTLED = "already_settled"
    PERMISSION_DENIED = "permission_denied"
    CONDITION_MISMATCH = "condition_mismatch"
    MALFORMED = "malformed"
    UNKNOWN = "unknown"


# =============================================================================
# Errors
# =============================================================================

class SwapError(Exception):
    """Base error. Carries the chain side and the check that failed."""

    resolution = Resolution.ABANDON

    def __init__(self, message: str, side: str = "", check: str = ""):
        super().__init__(message)
        self.side = side
        self.check = check

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": str(self),
            "side": self.side,
            "check": self.check,
            "resolution": self.resolution.value,
        }


class InputValidationError(SwapError, ValueError):
    """Rejected locally, never submitted to a ledger."""


class InsufficientFundsError(InputValidationError):
    """Output would be zero or negative after the flat fee."""


class ProtocolViolation(SwapError):
    """Counterparty lock or fulfillment does not match what was agreed."""


class ExtractionError(SwapError):
    """A spend was observed but the secret could not be recovered from it."""


class NotReady(SwapError):
    """Nothing wrong, just not yet (unconfirmed lock, secret not revealed)."""

    resolution = Resolution.WAIT


class LedgerRejection(SwapError):
    """The ledger refused a submitted transaction or escrow operation."""

    _WAIT_REASONS = (RejectReason.PREMATURE_TIMELOCK, RejectReason.TOO_EARLY)

    def __init__(self, message: str, reason: RejectReason = RejectReason.UNKNOWN,
                 side: str = "", check: str = "", result_code: str = ""):
        super().__init__(message, side=side, check=check or reason.value)
        self.reason = reason
        self.result_code = result_code

    @property
    def resolution(self) -> Resolution:
        if self.reason in self._WAIT_REASONS:
            return Resolution.WAIT
        if self.reason == RejectReason.UNKNOWN:
            return Resolution.RETRY
        return Resolution.ABANDON

    @property
    def retryable(self) -> bool:
        return self.resolution != Resolution.ABANDON

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["reason"] = self.reason.value
        d["result_code"] = self.result_code
        return d


class RPCError(RuntimeError):
    """Transport-level RPC failure (node unreachable, bad response)."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


# =============================================================================
# Data model
# =============================================================================

@dataclass
class KeyInfo:
    """An address and its key pair on one chain."""
    address: str
    pubkey: bytes
    privkey: Optional[bytes] = None
    chain: str = ""

    def public(self) -> "KeyInfo":
        """Copy without the private key."""
        return KeyInfo(address=self.address, pubkey=self.pubkey, chain=self.chain)

    def to_dict(self) -> Dict[str, Any]:
        # Private keys are never serialized
        return {
            "address": self.address,
            "pubkey": self.pubkey.hex(),
            "chain": self.chain,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "KeyInfo":
        return cls(
            address=d["address"],
            pubkey=bytes.fromhex(d["pubkey"]),
            chain=d.get("chain", ""),
        )


@dataclass
class UTXO:
    """Reference to a locked output."""
    txid: str
    vout: int
    amount: int             # satoshis
    confirmations: int = 0
    height: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txid": self.txid,
            "vout": self.vout,
            "amount": self.amount,
            "confirmations": self.confirmations,
            "height": self.height,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "UTXO":
        return cls(
            txid=d["txid"],
            vout=d["vout"],
            amount=d["amount"],
            confirmations=d.get("confirmations", 0),
            height=d.get("height"),
        )


@dataclass
class LegState:
    """One lock of a swap: who pays whom, how much, and for how long.

    `timeout` is in the chain's native unit: relative blocks on BTC,
    seconds until CancelAfter on XRP. `lock` holds chain-specific
    lock data (script/address/utxo, or owner/offer sequence).
    """
    chain: str
    sender: KeyInfo         # Locks funds, refunds after timeout
    receiver: KeyInfo       # Claims with the secret
    amount: str             # Decimal string in the chain's display unit
    timeout: int
    status: LegStatus = LegStatus.PENDING
    lock: Dict[str, Any] = field(default_factory=dict)
    claim_ref: Optional[str] = None
    refund_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain": self.chain,
            "sender": self.sender.to_dict(),
            "receiver": self.receiver.to_dict(),
            "amount": self.amount,
            "timeout": self.timeout,
            "status": self.status.value,
            "lock": dict(self.lock),
            "claim_ref": self.claim_ref,
            "refund_ref": self.refund_ref,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LegState":
        return cls(
            chain=d["chain"],
            sender=KeyInfo.from_dict(d["sender"]),
            receiver=KeyInfo.from_dict(d["receiver"]),
            amount=d["amount"],
            timeout=d["timeout"],
            status=LegStatus(d.get("status", "pending")),
            lock=dict(d.get("lock") or {}),
            claim_ref=d.get("claim_ref"),
            refund_ref=d.get("refund_ref"),
        )


@dataclass
class SwapSecret:
    """Preimage plus everything derived from it."""
    raw: bytes
    hash: str               # SHA256(raw), lowercase hex
    condition: str          # PREIMAGE-SHA-256 condition, uppercase hex
    fulfillment: str        # PREIMAGE-SHA-256 fulfillment, uppercase hex


# =============================================================================
# HTLC Utilities
# =============================================================================

SECRET_SIZE = 32


def sha256(data: bytes) -> bytes:
    """SHA256 hash."""
    return hashlib.sha256(data).digest()


def create_secret(raw: Optional[bytes] = None) -> SwapSecret:
    """
    Create a swap secret with its hashlock and crypto-condition pair.

    Args:
        raw: Optional 32-byte preimage. Random when omitted.

    Returns:
        SwapSecret
    """
    from .htlc.condition import condition_binary, fulfillment_binary

    if raw is None:
        raw = secrets.token_bytes(SECRET_SIZE)
    elif not isinstance(raw, (bytes, bytearray)) or len(raw) != SECRET_SIZE:
        raise InputValidationError(
            f"Secret must be {SECRET_SIZE} bytes", check="secret-length"
        )
    raw = bytes(raw)

    return SwapSecret(
        raw=raw,
        hash=sha256(raw).hex(),
        condition=condition_binary(raw).hex().upper(),
        fulfillment=fulfillment_binary(raw).hex().upper(),
    )


def verify_preimage(preimage_hex: str, hashlock_hex: str) -> bool:
    """
    Verify that SHA256(preimage) == hashlock.

    Args:
        preimage_hex: 32-byte preimage as hex string
        hashlock_hex: Expected SHA256 hash as hex string

    Returns:
        True if valid
    """
    try:
        preimage = bytes.fromhex(preimage_hex)
        expected = bytes.fromhex(hashlock_hex)
        return sha256(preimage) == expected
    except (ValueError, TypeError):
        return False


def sats_to_btc(sats: int) -> float:
    """Convert satoshis to BTC."""
    return sats / 100_000_000


def btc_to_sats(btc) -> int:
    """Convert BTC (float, str or Decimal) to satoshis."""
    return int(round(float(btc) * 100_000_000))


def unix_to_ripple_time(ts: int) -> int:
    return ts - RIPPLE_EPOCH_OFFSET


def ripple_to_unix_time(ts: int) -> int:
    return ts + RIPPLE_EPOCH_OFFSET


# =============================================================================
# Leg capability set
# =============================================================================

class SwapLeg(Protocol):
    """
    One side of a swap. BTC and XRP implement the same capabilities
    with nothing shared but the hashlock.

    prepare_lock/prepare_claim/prepare_refund sign without submitting
    and return a pending record {"op", "ref", "raw", ...}. broadcast
    submits that record's bytes; confirm reports whether they landed.
    """

    chain: str

    def create_key_pair(self) -> KeyInfo: ...

    def prepare_lock(self, leg: LegState, secret_hash: str) -> Dict[str, Any]: ...

    def verify_lock(self, leg: LegState, secret_hash: str) -> None: ...

    def prepare_claim(self, leg: LegState, secret: bytes) -> Dict[str, Any]: ...

    def prepare_refund(self, leg: LegState) -> Dict[str, Any]: ...

    def broadcast(self, leg: LegState, pending: Dict[str, Any]) -> None: ...

    def confirm(self, leg: LegState, pending: Dict[str, Any]) -> bool: ...

    def find_secret(self, leg: LegState, secret_hash: str) -> Optional[bytes]: ...

    def timeout_seconds(self, leg: LegState) -> int: ...

    def remaining_seconds(self, leg: LegState) -> int: ...


# =============================================================================
# Timeout policy
# =============================================================================

@dataclass
class TimeoutPolicy:
    """Timeout and trust parameters shared by both parties."""
    safety_margin_seconds: int = 60     # Responder needs this long to react to a reveal
    min_confirmations: int = 1          # Depth before a lock is trusted
    btc_block_interval: int = 600       # Assumed seconds per UTXO-chain block

    def validate_cascade(self, initiator_seconds: int, responder_seconds: int) -> bool:
        """Check T_initiator > T_responder + margin.

        The initiator locks first and reveals last, so it must always
        have strictly more time than the responder needs to react.

        Returns True if valid, raises InputValidationError if not.
        """
        if initiator_seconds <= 0 or responder_seconds <= 0:
            raise InputValidationError(
                f"Timeouts must be positive: T_initiator={initiator_seconds}s, "
                f"T_responder={responder_seconds}s",
                check="timeout-positive",
            )
        if initiator_seconds <= responder_seconds:
            raise InputValidationError(
                f"Timeout cascade violated: T_initiator={initiator_seconds}s, "
                f"T_responder={responder_seconds}s (must be T_initiator > T_responder)",
                check="timeout-cascade",
            )
        if initiator_seconds - responder_seconds < self.safety_margin_seconds:
            raise InputValidationError(
                f"Insufficient gap T_initiator - T_responder: "
                f"{initiator_seconds - responder_seconds}s "
                f"(min {self.safety_margin_seconds}s)",
                check="timeout-margin",
            )
        return True


# =============================================================================
# Constants
# =============================================================================

RIPPLE_EPOCH_OFFSET = 946684800

# Flat fee for claim/refund transactions (0.00001 BTC)
DEFAULT_BTC_FEE_SATS = 1000

# Blocks needed on a fresh regtest chain before coinbase outputs are spendable
BITCOIN_MIN_BLOCKS = 101
