"""
Swap persistence for htlcswap.

One JSON document per swap. Private keys never reach the disk; the
caller re-attaches them when resuming.
"""

import os
import json
import logging
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional, Any

log = logging.getLogger(__name__)


class SwapStore:
    """JSON file store keyed by swap id."""

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self._lock = threading.Lock()

    def _path(self, swap_id: str) -> Path:
        return self.directory / f"{swap_id}.json"

    def save(self, swap_id: str, doc: Dict[str, Any]):
        """Write a swap document atomically."""
        with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{swap_id}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(doc, f, indent=2)
                os.replace(tmp, self._path(swap_id))
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise

    def load(self, swap_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(swap_id)
        if not path.exists():
            return None
        with open(path, "r") as f:
            return json.load(f)

    def load_all(self) -> List[Dict[str, Any]]:
        """Every stored swap document."""
        if not self.directory.exists():
            return []
        docs = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                with open(path, "r") as f:
                    docs.append(json.load(f))
            except json.JSONDecodeError as e:
                log.error(f"Skipping unreadable swap file {path}: {e}")
        log.info(f"Loaded {len(docs)} swaps from {self.directory}")
        return docs

    def delete(self, swap_id: str) -> bool:
        with self._lock:
            path = self._path(swap_id)
            if path.exists():
                path.unlink()
                return True
            return False
