"""
Swap Watcher for htlcswap.

Background thread that keeps every active swap moving: confirms locks,
picks up revealed secrets, and refunds once timeouts mature.
"""

import os
import logging
import threading
from typing import Callable, Optional
from dataclasses import dataclass

from ..core import SwapState
from .executor import SwapExecutor, ActiveSwap

log = logging.getLogger(__name__)


@dataclass
class WatcherConfig:
    """Watcher configuration."""
    poll_interval: float = 10.0     # seconds

    @classmethod
    def from_env(cls) -> "WatcherConfig":
        return cls(poll_interval=float(os.getenv("HTLCSWAP_WATCH_INTERVAL", "10")))


class SwapWatcher:
    """
    Background service that advances swaps.

    Events:
    - on_state_change: any transition (swap, old_state)
    - on_swap_completed: swap reached both_settled
    - on_swap_refunded: swap reached refunded
    """

    def __init__(self, executor: SwapExecutor, config: WatcherConfig = None):
        self.executor = executor
        self.config = config or WatcherConfig()

        # Callbacks
        self.on_state_change: Optional[Callable[[ActiveSwap, SwapState], None]] = None
        self.on_swap_completed: Optional[Callable[[ActiveSwap], None]] = None
        self.on_swap_refunded: Optional[Callable[[ActiveSwap], None]] = None

        # State
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start watcher in background thread."""
        if self.running:
            return

        self._stop.clear()
        self._thread = threading.Thread(target=self._watch_loop, name="swap-watcher", daemon=True)
        self._thread.start()
        log.info("Swap watcher started")

    def stop(self, timeout: float = 5.0):
        """Stop watcher."""
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        log.info("Swap watcher stopped")

    def _watch_loop(self):
        """Main watch loop."""
        while not self._stop.is_set():
            self.poll_once()
            self._stop.wait(self.config.poll_interval)

    def poll_once(self):
        """Advance every active swap by one step."""
        for swap in self.executor.get_active_swaps():
            if self._stop.is_set():
                return
            old_state = swap.state
            try:
                self.executor.advance(swap.swap_id)
            except Exception as e:
                # One broken swap must not stop the others
                log.exception(f"Watcher error on {swap.swap_id}: {e}")
                continue

            if swap.state != old_state:
                self._emit(swap, old_state)

    def _emit(self, swap: ActiveSwap, old_state: SwapState):
        self._call(self.on_state_change, swap, old_state)
        if swap.state == SwapState.BOTH_SETTLED:
            self._call(self.on_swap_completed, swap)
        elif swap.state == SwapState.REFUNDED:
            self._call(self.on_swap_refunded, swap)

    def _call(self, handler: Optional[Callable], *args):
        if handler is None:
            return
        try:
            handler(*args)
        except Exception as e:
            log.error(f"Handler error for {args[0].swap_id}: {e}")
