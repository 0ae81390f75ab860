"""
Swap coordination for htlcswap.

Orchestrates atomic swaps across chains using HTLCs.
"""

from .executor import SwapExecutor
from .watcher import SwapWatcher

__all__ = ["SwapExecutor", "SwapWatcher"]
