"""
Swap Executor for htlcswap.

Drives a two-leg HTLC swap as an explicit, persisted state machine.

Swap Flow (initiator holds the secret):
1. Initiator locks leg A (longer timeout) behind SHA256(secret)
2. Responder verifies leg A on-chain, then locks leg B (shorter timeout)
3. Initiator verifies leg B and claims it, publishing the secret
4. Responder extracts the secret from leg B's claim and claims leg A

If a step can no longer complete, each locked leg is refunded to its
sender once its own timeout matures.
"""

import os
import time
import uuid
import logging
from typing import Optional, Dict, List, Callable, Any
from dataclasses import dataclass, field

from ..core import (
    SwapState, LegStatus, Resolution, RejectReason, TERMINAL_STATES,
    KeyInfo, LegState, SwapLeg, TimeoutPolicy, create_secret,
    SwapError, InputValidationError, LedgerRejection, NotReady, ProtocolViolation, RPCError,
)
from .store import SwapStore

log = logging.getLogger(__name__)


@dataclass
class SwapConfig:
    """Swap executor configuration."""
    policy: TimeoutPolicy = field(default_factory=TimeoutPolicy)
    store_dir: str = ".htlcswap"
    poll_interval: float = 5.0      # Seconds between advance() calls in run()

    @classmethod
    def from_env(cls) -> "SwapConfig":
        """Read HTLCSWAP_* environment variables."""
        return cls(
            policy=TimeoutPolicy(
                safety_margin_seconds=int(os.getenv("HTLCSWAP_SAFETY_MARGIN", "60")),
                min_confirmations=int(os.getenv("HTLCSWAP_MIN_CONFIRMATIONS", "1")),
                btc_block_interval=int(os.getenv("HTLCSWAP_BTC_BLOCK_INTERVAL", "600")),
            ),
            store_dir=os.getenv("HTLCSWAP_STORE_DIR", ".htlcswap"),
            poll_interval=float(os.getenv("HTLCSWAP_POLL_INTERVAL", "5")),
        )


@dataclass
class ActiveSwap:
    """Active swap state."""
    swap_id: str
    state: SwapState
    secret_hash: str

    # Leg A: initiator -> responder, longer timeout
    leg_a: LegState
    # Leg B: responder -> initiator, shorter timeout
    leg_b: LegState

    # Preimage: the initiator's from the start, the responder's once extracted
    secret: Optional[bytes] = None

    created_at: int = 0
    updated_at: int = 0
    last_error: Optional[Dict[str, Any]] = None
    history: List[Dict[str, Any]] = field(default_factory=list)

    def legs(self) -> List[LegState]:
        return [self.leg_a, self.leg_b]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "swap_id": self.swap_id,
            "state": self.state.value,
            "secret_hash": self.secret_hash,
            "leg_a": self.leg_a.to_dict(),
            "leg_b": self.leg_b.to_dict(),
            "secret": self.secret.hex() if self.secret else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_error": self.last_error,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ActiveSwap":
        return cls(
            swap_id=d["swap_id"],
            state=SwapState(d["state"]),
            secret_hash=d["secret_hash"],
            leg_a=LegState.from_dict(d["leg_a"]),
            leg_b=LegState.from_dict(d["leg_b"]),
            secret=bytes.fromhex(d["secret"]) if d.get("secret") else None,
            created_at=d.get("created_at", 0),
            updated_at=d.get("updated_at", 0),
            last_error=d.get("last_error"),
            history=list(d.get("history", [])),
        )


class SwapExecutor:
    """
    Executes two-leg HTLC swaps.

    One leg implementation per chain is registered by chain name. Both
    parties' keys are supplied by the caller; only public halves are
    persisted.
    """

    def __init__(self, legs: Dict[str, SwapLeg], config: SwapConfig = None,
                 store: SwapStore = None):
        self.legs = legs
        self.config = config or SwapConfig()
        self.policy = self.config.policy
        self.store = store or SwapStore(self.config.store_dir)

        self.swaps: Dict[str, ActiveSwap] = {}

        self.on_state_change: Optional[Callable[[ActiveSwap, SwapState], None]] = None

    def _impl(self, leg: LegState) -> SwapLeg:
        impl = self.legs.get(leg.chain)
        if impl is None:
            raise InputValidationError(f"No leg registered for chain {leg.chain}",
                                       side=leg.chain, check="chain")
        return impl

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def create_swap(self, leg_a: LegState, leg_b: LegState,
                    secret: Optional[bytes] = None, swap_id: Optional[str] = None) -> ActiveSwap:
        """
        Create a swap in the init state. Nothing is locked yet.

        Args:
            leg_a: Initiator's lock (sender = initiator), longer timeout
            leg_b: Responder's lock (sender = responder), shorter timeout
            secret: Optional fixed 32-byte preimage (tests)

        Returns:
            ActiveSwap
        """
        for leg in (leg_a, leg_b):
            impl = self._impl(leg)
            if leg.sender.pubkey == leg.receiver.pubkey:
                raise InputValidationError("Sender and receiver keys must differ",
                                           side=impl.chain, check="distinct-keys")
            if leg.timeout <= 0:
                raise InputValidationError("Timeout must be positive",
                                           side=impl.chain, check="timeout-positive")

        self.policy.validate_cascade(
            self._impl(leg_a).timeout_seconds(leg_a),
            self._impl(leg_b).timeout_seconds(leg_b),
        )

        lock = create_secret(secret)
        now = int(time.time())
        swap = ActiveSwap(
            swap_id=swap_id or f"swap_{uuid.uuid4().hex[:12]}",
            state=SwapState.INIT,
            secret_hash=lock.hash,
            leg_a=leg_a,
            leg_b=leg_b,
            secret=lock.raw,
            created_at=now,
            updated_at=now,
        )
        self.swaps[swap.swap_id] = swap
        self._save(swap)

        log.info(f"Swap created: {swap.swap_id}, {leg_a.amount} {leg_a.chain} <-> "
                 f"{leg_b.amount} {leg_b.chain}, hashlock={lock.hash[:16]}...")
        return swap

    def abandon(self, swap_id: str) -> ActiveSwap:
        """Drop a swap. Before any lock this is free; afterwards it falls back to refunds."""
        swap = self._get(swap_id)
        if swap.state in TERMINAL_STATES:
            return swap
        if swap.state == SwapState.INIT:
            # An interrupted lock may have landed after all
            self._settle_pending(swap, swap.leg_a)
            if swap.leg_a.status == LegStatus.LOCKED:
                self._transition(swap, SwapState.TIMED_OUT_REFUNDING)
            else:
                self._transition(swap, SwapState.ABANDONED)
        else:
            self._transition(swap, SwapState.TIMED_OUT_REFUNDING)
        return swap

    def resume(self, keys: List[KeyInfo]) -> List[ActiveSwap]:
        """
        Reload non-terminal swaps from the store and re-attach private keys.

        Args:
            keys: KeyInfo with private keys, matched by address
        """
        by_address = {k.address: k for k in keys if k.privkey}
        resumed = []
        for doc in self.store.load_all():
            swap = ActiveSwap.from_dict(doc)
            if swap.state in TERMINAL_STATES:
                continue
            for leg in swap.legs():
                for attr in ("sender", "receiver"):
                    key = getattr(leg, attr)
                    if key.address in by_address:
                        setattr(leg, attr, by_address[key.address])
            self.swaps[swap.swap_id] = swap
            resumed.append(swap)
            log.info(f"Swap resumed: {swap.swap_id} in state {swap.state.value}")
        return resumed

    # =========================================================================
    # State machine
    # =========================================================================

    def advance(self, swap_id: str) -> ActiveSwap:
        """
        Perform the next step for the swap's current state.

        Wait/retry outcomes leave the state unchanged. Fatal outcomes move
        to abandoned (nothing locked) or timed_out_refunding.
        """
        swap = self._get(swap_id)
        if swap.state in TERMINAL_STATES:
            return swap

        step = {
            SwapState.INIT: self._lock_initiator,
            SwapState.INITIATOR_LOCKED: self._lock_responder,
            SwapState.RESPONDER_LOCKED: self._claim_responder_leg,
            SwapState.SECRET_REVEALED: self._claim_initiator_leg,
            SwapState.TIMED_OUT_REFUNDING: self._refund_locked,
        }[swap.state]

        try:
            step(swap)
            if swap.last_error is not None:
                swap.last_error = None
                self._save(swap)
        except SwapError as e:
            self._handle_error(swap, e)
        except RPCError as e:
            swap.last_error = {"error": "RPCError", "message": str(e),
                               "resolution": Resolution.RETRY.value}
            log.warning(f"Swap {swap.swap_id}: RPC failure, will retry: {e}")
            self._save(swap)
        return swap

    def run(self, swap_id: str, timeout: float = 3600) -> ActiveSwap:
        """Advance until the swap reaches a terminal state. Blocking."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            swap = self.advance(swap_id)
            if swap.state in TERMINAL_STATES:
                return swap
            time.sleep(self.config.poll_interval)
        raise TimeoutError(f"Swap {swap_id} did not finish in {timeout}s")

    def _handle_error(self, swap: ActiveSwap, error: SwapError):
        swap.last_error = error.to_dict()
        resolution = error.resolution

        if resolution in (Resolution.WAIT, Resolution.RETRY):
            log.info(f"Swap {swap.swap_id} [{swap.state.value}]: {resolution.value}: {error}")
            self._save(swap)
            return

        log.error(f"Swap {swap.swap_id} [{swap.state.value}] abandoned: "
                  f"{type(error).__name__} ({error.side}/{error.check}): {error}")
        if swap.state == SwapState.INIT:
            self._transition(swap, SwapState.ABANDONED)
        elif swap.state == SwapState.TIMED_OUT_REFUNDING:
            # Refunds are the last resort, keep trying them
            self._save(swap)
        else:
            self._transition(swap, SwapState.TIMED_OUT_REFUNDING)

    def _expired(self, leg: LegState) -> bool:
        return self._impl(leg).remaining_seconds(leg) <= 0

    def _submit(self, swap: ActiveSwap, leg: LegState, op: str,
                prepare: Callable[..., Dict[str, Any]], *args) -> str:
        """
        Put one fund-moving transaction on a ledger, at most once.

        The signed transaction is persisted in leg.lock["pending"] before
        it is broadcast. A later attempt first asks the ledger whether it
        landed, then rebroadcasts the same bytes rather than signing anew.
        Only a definite ledger rejection clears the pending record.

        Returns:
            The transaction reference (txid or hash)
        """
        impl = self._impl(leg)
        pending = leg.lock.get("pending")
        if pending is None or pending["op"] != op:
            pending = prepare(leg, *args)
            leg.lock["pending"] = pending
            self._save(swap)
        elif impl.confirm(leg, pending):
            log.info(f"Swap {swap.swap_id}: {leg.chain} {op} {pending['ref']} already on ledger")
            del leg.lock["pending"]
            return pending["ref"]

        try:
            impl.broadcast(leg, pending)
        except LedgerRejection:
            del leg.lock["pending"]
            self._save(swap)
            raise
        del leg.lock["pending"]
        return pending["ref"]

    def _settle_pending(self, swap: ActiveSwap, leg: LegState):
        """Resolve a pending lock or claim left behind by an interrupted step."""
        pending = leg.lock.get("pending")
        if pending is None:
            return
        landed = self._impl(leg).confirm(leg, pending)
        if pending["op"] == "lock" and leg.status == LegStatus.PENDING:
            if landed:
                leg.status = LegStatus.LOCKED
                log.info(f"Swap {swap.swap_id}: {leg.chain} lock {pending['ref']} found on ledger")
            del leg.lock["pending"]
        elif pending["op"] == "claim" and leg.status == LegStatus.LOCKED and landed:
            leg.status = LegStatus.CLAIMED
            leg.claim_ref = pending["ref"]
            del leg.lock["pending"]
            log.info(f"Swap {swap.swap_id}: {leg.chain} claim {pending['ref']} found on ledger")
        self._save(swap)

    def _lock_initiator(self, swap: ActiveSwap):
        leg = swap.leg_a
        impl = self._impl(leg)
        self._submit(swap, leg, "lock", impl.prepare_lock, swap.secret_hash)
        leg.status = LegStatus.LOCKED
        log.info(f"Swap {swap.swap_id}: initiator locked {leg.amount} {leg.chain}")
        self._transition(swap, SwapState.INITIATOR_LOCKED)

    def _lock_responder(self, swap: ActiveSwap):
        leg_a, leg_b = swap.leg_a, swap.leg_b
        impl_a, impl_b = self._impl(leg_a), self._impl(leg_b)

        # A lock already signed and persisted is finished, not re-checked
        if "pending" not in leg_b.lock:
            if self._expired(leg_a):
                log.warning(f"Swap {swap.swap_id}: leg A expired before the responder locked")
                self._transition(swap, SwapState.TIMED_OUT_REFUNDING)
                return

            # Never lock before the initiator's lock is verified on-chain
            impl_a.verify_lock(leg_a, swap.secret_hash)
            self._save(swap)

            remaining = impl_a.remaining_seconds(leg_a)
            needed = impl_b.timeout_seconds(leg_b) + self.policy.safety_margin_seconds
            if remaining <= needed:
                raise ProtocolViolation(
                    f"Leg A has {remaining}s left, responder needs more than {needed}s",
                    side=leg_a.chain, check="remaining-time",
                )

        self._submit(swap, leg_b, "lock", impl_b.prepare_lock, swap.secret_hash)
        leg_b.status = LegStatus.LOCKED
        log.info(f"Swap {swap.swap_id}: responder locked {leg_b.amount} {leg_b.chain}")
        self._transition(swap, SwapState.RESPONDER_LOCKED)

    def _claim_responder_leg(self, swap: ActiveSwap):
        leg = swap.leg_b
        impl = self._impl(leg)

        if "pending" not in leg.lock:
            if self._expired(leg):
                log.warning(f"Swap {swap.swap_id}: leg B expired before the initiator claimed")
                self._transition(swap, SwapState.TIMED_OUT_REFUNDING)
                return

            impl.verify_lock(leg, swap.secret_hash)
            self._save(swap)

            if swap.secret is None:
                raise ProtocolViolation("Initiator secret missing", side=leg.chain, check="secret-missing")

        # Publishes the secret on leg B's ledger
        leg.claim_ref = self._submit(swap, leg, "claim", impl.prepare_claim, swap.secret)
        leg.status = LegStatus.CLAIMED
        log.info(f"Swap {swap.swap_id}: initiator claimed {leg.chain}, ref={leg.claim_ref}")
        self._transition(swap, SwapState.SECRET_REVEALED)

    def _claim_initiator_leg(self, swap: ActiveSwap):
        leg_a, leg_b = swap.leg_a, swap.leg_b

        if "pending" not in leg_a.lock:
            if self._expired(leg_a):
                log.warning(f"Swap {swap.swap_id}: leg A expired before the responder claimed")
                self._transition(swap, SwapState.TIMED_OUT_REFUNDING)
                return

            # The responder learns the secret from leg B's ledger only
            secret = self._impl(leg_b).find_secret(leg_b, swap.secret_hash)
            if secret is None:
                raise NotReady("Claim of leg B not observed yet", side=leg_b.chain, check="secret-unrevealed")
            log.info(f"Swap {swap.swap_id}: secret extracted from {leg_b.chain}: {secret.hex()[:16]}...")
            swap.secret = secret

        impl_a = self._impl(leg_a)
        leg_a.claim_ref = self._submit(swap, leg_a, "claim", impl_a.prepare_claim, swap.secret)
        leg_a.status = LegStatus.CLAIMED
        log.info(f"Swap {swap.swap_id}: responder claimed {leg_a.chain}, ref={leg_a.claim_ref}")
        self._transition(swap, SwapState.BOTH_SETTLED)

    def _refund_locked(self, swap: ActiveSwap):
        for leg in swap.legs():
            self._settle_pending(swap, leg)

        pending = None
        for leg in swap.legs():
            if leg.status != LegStatus.LOCKED:
                continue
            impl = self._impl(leg)
            try:
                leg.refund_ref = self._submit(swap, leg, "refund", impl.prepare_refund)
                leg.status = LegStatus.REFUNDED
                log.info(f"Swap {swap.swap_id}: refunded {leg.chain}, ref={leg.refund_ref}")
            except LedgerRejection as e:
                if e.reason == RejectReason.ALREADY_SETTLED or e.reason == RejectReason.DOUBLE_SPEND:
                    # Counterparty claimed first
                    log.warning(f"Swap {swap.swap_id}: {leg.chain} lock already spent, marking claimed")
                    leg.status = LegStatus.CLAIMED
                elif pending is None:
                    pending = e
            except NotReady as e:
                if pending is None:
                    pending = e
            self._save(swap)

        if any(leg.status == LegStatus.LOCKED for leg in swap.legs()):
            if pending is not None:
                raise pending
            return
        self._transition(swap, SwapState.REFUNDED)

    # =========================================================================
    # Bookkeeping
    # =========================================================================

    def _transition(self, swap: ActiveSwap, new_state: SwapState):
        old_state = swap.state
        swap.state = new_state
        swap.updated_at = int(time.time())
        swap.history.append({"state": new_state.value, "at": swap.updated_at})
        self._save(swap)
        log.info(f"Swap {swap.swap_id}: {old_state.value} -> {new_state.value}")

        if self.on_state_change:
            self.on_state_change(swap, old_state)

    def _save(self, swap: ActiveSwap):
        self.store.save(swap.swap_id, swap.to_dict())

    def _get(self, swap_id: str) -> ActiveSwap:
        swap = self.swaps.get(swap_id)
        if not swap:
            raise KeyError(f"Swap not found: {swap_id}")
        return swap

    def get_swap(self, swap_id: str) -> Optional[ActiveSwap]:
        """Get swap by ID."""
        return self.swaps.get(swap_id)

    def get_active_swaps(self) -> List[ActiveSwap]:
        """Get all non-terminal swaps."""
        return [s for s in self.swaps.values() if s.state not in TERMINAL_STATES]
