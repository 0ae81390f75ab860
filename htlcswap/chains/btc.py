"""
Bitcoin RPC Client for htlcswap.

Talks JSON-RPC to Bitcoin Core (regtest/signet/testnet/mainnet).
"""

import os
import json
import logging
import threading
from typing import Optional, Dict, Any, List
from dataclasses import dataclass

import httpx

from ..core import UTXO, RPCError, LedgerRejection, RejectReason, btc_to_sats, sats_to_btc

log = logging.getLogger(__name__)


DEFAULT_PORTS = {
    "mainnet": 8332,
    "testnet": 18332,
    "signet": 38332,
    "regtest": 18443,
}

# Node reject strings -> typed reasons. First match wins.
REJECT_REASONS = [
    ("non-bip68-final", RejectReason.PREMATURE_TIMELOCK),
    ("locktime requirement not satisfied", RejectReason.PREMATURE_TIMELOCK),
    ("missingorspent", RejectReason.DOUBLE_SPEND),
    ("txn-mempool-conflict", RejectReason.DOUBLE_SPEND),
    ("bad-txns-spends-conflicting-tx", RejectReason.DOUBLE_SPEND),
    ("already in block chain", RejectReason.ALREADY_SETTLED),
    ("outputs already in utxo set", RejectReason.ALREADY_SETTLED),
    ("txn-already-known", RejectReason.ALREADY_SETTLED),
    ("txn-already-in-mempool", RejectReason.ALREADY_SETTLED),
    ("insufficient", RejectReason.INSUFFICIENT_FUNDS),
    ("min relay fee not met", RejectReason.INSUFFICIENT_FUNDS),
    ("bad-txns-in-belowout", RejectReason.INSUFFICIENT_FUNDS),
    ("script-verify-flag-failed", RejectReason.MALFORMED),
    ("decode failed", RejectReason.MALFORMED),
    ("dust", RejectReason.MALFORMED),
]


def classify_rejection(message: str) -> RejectReason:
    """Map a node reject string to a RejectReason."""
    lowered = message.lower()
    for needle, reason in REJECT_REASONS:
        if needle in lowered:
            return reason
    return RejectReason.UNKNOWN


@dataclass
class BTCConfig:
    """Bitcoin node configuration."""
    network: str = "regtest"        # regtest, signet, testnet, mainnet
    rpc_host: str = "127.0.0.1"
    rpc_port: int = 0               # 0 = network default
    rpc_user: str = ""
    rpc_password: str = ""
    wallet_name: str = ""           # Empty = use default loaded wallet
    timeout: float = 30.0

    @property
    def url(self) -> str:
        port = self.rpc_port or DEFAULT_PORTS.get(self.network, 18443)
        return f"http://{self.rpc_host}:{port}"

    @classmethod
    def from_env(cls) -> "BTCConfig":
        """Read HTLCSWAP_BTC_* environment variables."""
        return cls(
            network=os.getenv("HTLCSWAP_BTC_NETWORK", "regtest"),
            rpc_host=os.getenv("HTLCSWAP_BTC_RPC_HOST", "127.0.0.1"),
            rpc_port=int(os.getenv("HTLCSWAP_BTC_RPC_PORT", "0")),
            rpc_user=os.getenv("HTLCSWAP_BTC_RPC_USER", ""),
            rpc_password=os.getenv("HTLCSWAP_BTC_RPC_PASSWORD", ""),
            wallet_name=os.getenv("HTLCSWAP_BTC_WALLET", ""),
            timeout=float(os.getenv("HTLCSWAP_BTC_RPC_TIMEOUT", "30")),
        )


class BTCClient:
    """
    Bitcoin RPC client.

    JSON-RPC over HTTP with basic auth. The request id counter belongs
    to the client and is only advanced under its lock, so one client
    can be shared between the executor and the watcher thread.
    """

    def __init__(self, config: BTCConfig, transport: Optional[httpx.BaseTransport] = None):
        self.config = config
        auth = (config.rpc_user, config.rpc_password) if config.rpc_user else None
        self._http = httpx.Client(
            base_url=config.url,
            auth=auth,
            timeout=config.timeout,
            transport=transport,
        )
        self._id_lock = threading.Lock()
        self._request_id = 0

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _next_id(self) -> int:
        with self._id_lock:
            self._request_id += 1
            return self._request_id

    def _call(self, method: str, *params, wallet: bool = False) -> Any:
        """Execute one RPC call."""
        path = "/"
        if wallet and self.config.wallet_name:
            path = f"/wallet/{self.config.wallet_name}"

        payload = {
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": method,
            "params": list(params),
        }

        try:
            response = self._http.post(path, json=payload)
        except httpx.HTTPError as e:
            raise RPCError(f"BTC RPC transport error: {method} -> {e}")

        try:
            body = response.json()
        except json.JSONDecodeError:
            raise RPCError(
                f"BTC RPC bad response: {method} -> HTTP {response.status_code}",
                code=response.status_code,
            )

        error = body.get("error")
        if error:
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            log.debug(f"BTC RPC error: {method} -> {message}")
            raise RPCError(f"BTC RPC failed: {message}", code=code)

        if body.get("id") != payload["id"]:
            raise RPCError(f"BTC RPC id mismatch: sent {payload['id']}, got {body.get('id')}")

        return body.get("result")

    # =========================================================================
    # Wallet Operations
    # =========================================================================

    def create_wallet(self, name: str = None) -> bool:
        """Create wallet if it doesn't exist."""
        name = name or self.config.wallet_name
        try:
            self._call("createwallet", name)
            return True
        except RPCError as e:
            if "already exists" in str(e).lower():
                return self.load_wallet(name)
            log.warning(f"Create wallet failed: {e}")
            return False

    def load_wallet(self, name: str = None) -> bool:
        """Load wallet."""
        name = name or self.config.wallet_name
        try:
            self._call("loadwallet", name)
            return True
        except RPCError as e:
            if "already loaded" in str(e).lower():
                return True
            log.warning(f"Load wallet failed: {e}")
            return False

    def get_new_address(self, label: str = "", address_type: str = "legacy") -> str:
        """Generate new address."""
        return self._call("getnewaddress", label, address_type, wallet=True)

    def create_funding_tx(self, address: str, amount_sats: int) -> str:
        """
        Build and sign, but do not broadcast, a wallet payment.

        The txid is known before anything reaches the network, so a
        caller can record it and rebroadcast the same bytes later.

        Args:
            address: Destination address
            amount_sats: Amount in satoshis

        Returns:
            Signed transaction hex
        """
        raw = self._call("createrawtransaction", [], [{address: f"{sats_to_btc(amount_sats):.8f}"}])
        funded = self._call("fundrawtransaction", raw, wallet=True)
        signed = self._call("signrawtransactionwithwallet", funded["hex"], wallet=True)
        if not signed.get("complete"):
            raise RPCError(f"BTC wallet could not sign funding tx for {address}: "
                           f"{signed.get('errors')}")
        return signed["hex"]

    def generate_to_address(self, blocks: int, address: str) -> List[str]:
        """Mine blocks (regtest only)."""
        return self._call("generatetoaddress", blocks, address)

    # =========================================================================
    # Transaction Operations
    # =========================================================================

    def get_raw_transaction(self, txid: str, verbose: bool = True) -> Optional[Dict]:
        """Get raw transaction with details."""
        try:
            return self._call("getrawtransaction", txid, verbose)
        except RPCError:
            return None

    def send_raw_transaction(self, hex_tx: str) -> str:
        """
        Broadcast raw transaction.

        Raises:
            LedgerRejection: node refused the transaction, with a typed reason
        """
        try:
            txid = self._call("sendrawtransaction", hex_tx)
        except RPCError as e:
            reason = classify_rejection(str(e))
            log.warning(f"BTC broadcast rejected ({reason.value}): {e}")
            raise LedgerRejection(str(e), reason=reason, side="BTC",
                                  result_code=str(e.code) if e.code is not None else "")
        log.info(f"BTC broadcast: {txid}")
        return txid

    def get_tx_out(self, txid: str, vout: int, include_mempool: bool = True) -> Optional[Dict]:
        """Unspent output details, or None when spent or unknown."""
        return self._call("gettxout", txid, vout, include_mempool)

    def find_utxo(self, address: str) -> Optional[UTXO]:
        """
        Find a confirmed unspent output paying to an address.

        Uses scantxoutset, so the address need not be in the wallet.
        """
        result = self._call("scantxoutset", "start", [f"addr({address})"])
        unspents = (result or {}).get("unspents", [])
        if not unspents:
            return None

        tip = (result or {}).get("height") or self.get_block_count()
        best = max(unspents, key=lambda u: u["amount"])
        height = best.get("height", 0)
        return UTXO(
            txid=best["txid"],
            vout=best["vout"],
            amount=btc_to_sats(best["amount"]),
            confirmations=tip - height + 1 if height else 0,
            height=height or None,
        )

    # =========================================================================
    # Blockchain Info
    # =========================================================================

    def get_block_count(self) -> int:
        """Get current block height."""
        return self._call("getblockcount")

    def get_block_hash(self, height: int) -> str:
        """Get block hash at height."""
        return self._call("getblockhash", height)

    def get_block(self, block_hash: str, verbosity: int = 2) -> Dict:
        """Get block, with decoded transactions at verbosity 2."""
        return self._call("getblock", block_hash, verbosity)
