"""
XRP Ledger client for htlcswap.

Thin wrapper over xrpl-py's JSON-RPC client: sign, submit, wait for
validation, read escrow objects and the validated ledger clock.

Signing and submission are separate steps so the transaction hash is
known, and can be recorded, before the blob reaches the network.
Resubmitting the same blob never applies it twice.
"""

import os
import time
import logging
from typing import Optional, Dict, Any, List, Tuple
from dataclasses import dataclass

from xrpl.clients import JsonRpcClient
from xrpl.core.binarycodec import encode
from xrpl.models.requests import AccountTx, Ledger, LedgerEntry, SubmitOnly, Tx
from xrpl.models.requests.ledger_entry import Escrow as EscrowRef
from xrpl.models.transactions import Transaction
from xrpl.transaction import autofill_and_sign
from xrpl.wallet import Wallet

from ..core import RPCError

log = logging.getLogger(__name__)


# Submit results that mean "applied or queued, keep waiting"
PENDING_RESULTS = ("tesSUCCESS", "terQUEUED", "tefALREADY")


@dataclass
class XRPConfig:
    """XRPL endpoint configuration."""
    url: str = "https://s.altnet.rippletest.net:51234/"
    validation_timeout: float = 60.0    # Seconds to wait for a validated result
    poll_interval: float = 1.0

    @classmethod
    def from_env(cls) -> "XRPConfig":
        """Read HTLCSWAP_XRP_* environment variables."""
        return cls(
            url=os.getenv("HTLCSWAP_XRP_URL", cls.url),
            validation_timeout=float(os.getenv("HTLCSWAP_XRP_VALIDATION_TIMEOUT", "60")),
            poll_interval=float(os.getenv("HTLCSWAP_XRP_POLL_INTERVAL", "1.0")),
        )


@dataclass
class SignedTx:
    """A signed transaction blob and the identifiers it commits to."""
    tx_hash: str
    blob: str
    sequence: int           # Account sequence the transaction consumes


@dataclass
class LedgerSubmission:
    """Outcome of one submitted transaction."""
    tx_hash: str
    result_code: str        # Final TransactionResult, or the preliminary engine_result
    sequence: int           # Account sequence the transaction consumed
    validated: bool = False

    @property
    def accepted(self) -> bool:
        return self.result_code == "tesSUCCESS"


class XRPClient:
    """
    XRPL JSON-RPC client.

    sign() autofills and signs. submit_signed() submits with fail_hard
    so a tec result is not broadcast, then waits for the validated
    result.
    """

    def __init__(self, config: XRPConfig, client: Optional[JsonRpcClient] = None):
        self.config = config
        self.client = client or JsonRpcClient(config.url)

    def _request(self, request) -> Dict[str, Any]:
        response = self.client.request(request)
        if not response.is_successful():
            error = response.result.get("error", "unknown")
            raise RPCError(f"XRPL request failed: {error}")
        return response.result

    # =========================================================================
    # Transactions
    # =========================================================================

    def sign(self, tx: Transaction, wallet: Wallet) -> SignedTx:
        """Autofill (fee, sequence, LastLedgerSequence) and sign."""
        signed = autofill_and_sign(tx, self.client, wallet)
        return SignedTx(signed.get_hash(), encode(signed.to_xrpl()), signed.sequence)

    def submit_signed(self, signed: SignedTx) -> LedgerSubmission:
        """
        Submit a signed blob and wait for validation.

        Returns:
            LedgerSubmission carrying the final result code. Rejections
            are returned, not raised; callers map the code.
        """
        result = self._request(SubmitOnly(tx_blob=signed.blob, fail_hard=True))
        engine_result = result.get("engine_result", "")
        log.info(f"XRPL submit: {signed.tx_hash} -> {engine_result}")

        if engine_result in PENDING_RESULTS:
            final = self.wait_for_validation(signed.tx_hash)
            return LedgerSubmission(signed.tx_hash, final, signed.sequence, validated=True)

        if engine_result == "tefPAST_SEQ":
            # Sequence already consumed, possibly by this same transaction
            final = self.tx_result(signed.tx_hash)
            if final is not None:
                return LedgerSubmission(signed.tx_hash, final, signed.sequence, validated=True)

        return LedgerSubmission(signed.tx_hash, engine_result, signed.sequence)

    def tx_result(self, tx_hash: str) -> Optional[str]:
        """Validated result code of a transaction, None if not in a validated ledger."""
        response = self.client.request(Tx(transaction=tx_hash))
        result = response.result
        if response.is_successful() and result.get("validated"):
            return result.get("meta", {}).get("TransactionResult", "")
        return None

    def wait_for_validation(self, tx_hash: str) -> str:
        """Poll until the transaction is in a validated ledger. Returns its result code."""
        deadline = time.monotonic() + self.config.validation_timeout
        while time.monotonic() < deadline:
            final = self.tx_result(tx_hash)
            if final is not None:
                return final
            time.sleep(self.config.poll_interval)
        raise RPCError(f"XRPL tx {tx_hash} not validated after {self.config.validation_timeout}s")

    # =========================================================================
    # Ledger state
    # =========================================================================

    def ledger_time(self) -> int:
        """Close time of the latest validated ledger (Ripple epoch seconds)."""
        result = self._request(Ledger(ledger_index="validated"))
        return int(result["ledger"]["close_time"])

    def get_escrow(self, owner: str, sequence: int) -> Optional[Dict[str, Any]]:
        """Escrow ledger object, or None once finished/cancelled (or never created)."""
        response = self.client.request(
            LedgerEntry(escrow=EscrowRef(owner=owner, seq=sequence), ledger_index="validated")
        )
        if not response.is_successful():
            if response.result.get("error") == "entryNotFound":
                return None
            raise RPCError(f"XRPL ledger_entry failed: {response.result.get('error')}")
        return response.result.get("node")

    def account_tx(self, account: str, limit: int = 200,
                   marker: Any = None) -> Tuple[List[Tuple[Dict[str, Any], Dict[str, Any]]], Any]:
        """
        One page of validated transactions touching an account, newest first.

        Returns:
            ([(tx, meta), ...], marker for the next page or None)
        """
        result = self._request(AccountTx(account=account, limit=limit, marker=marker))
        entries = []
        for entry in result.get("transactions", []):
            if not entry.get("validated", True):
                continue
            # API v2 returns tx_json, v1 returns tx
            tx = entry.get("tx_json") or entry.get("tx") or {}
            entries.append((tx, entry.get("meta") or {}))
        return entries, result.get("marker")
