"""
Swap legs for htlcswap.

Each leg implements the SwapLeg capability set for one chain. The two
share nothing but the hashlock: BTC locks a P2SH script with a relative
timelock, XRP locks a native escrow with an absolute CancelAfter.

Fund-moving steps come in three parts. prepare_*() signs a transaction
and returns a pending record {"op", "ref", "raw", ...} that the executor
persists; broadcast() sends those exact bytes; confirm() asks the ledger
whether they already landed.
"""

import logging
from decimal import Decimal
from typing import Optional, Dict, Any

from xrpl.utils import xrp_to_drops

from ..core import (
    KeyInfo, LegState, UTXO, TimeoutPolicy, RejectReason, sha256, btc_to_sats,
    LedgerRejection, NotReady, ProtocolViolation,
)
from ..chains.btc import BTCClient
from ..chains.xrp import XRPClient, SignedTx
from ..htlc.btc import BTCHtlc, encode_sequence, hash160, txid_of
from ..htlc.xrp import XRPEscrow
from ..htlc.condition import condition_from_hash, fulfillment_binary

log = logging.getLogger(__name__)


class BTCLeg:
    """
    UTXO-chain leg.

    `leg.timeout` is the relative lock in blocks. The lock only starts
    counting once the funding output confirms.
    """

    chain = "BTC"

    def __init__(self, htlc: BTCHtlc, client: BTCClient, policy: TimeoutPolicy):
        self.htlc = htlc
        self.client = client
        self.policy = policy

    def create_key_pair(self) -> KeyInfo:
        return self.htlc.create_key_pair()

    def _script(self, leg: LegState) -> bytes:
        return bytes.fromhex(leg.lock["redeem_script"])

    def _utxo(self, leg: LegState) -> UTXO:
        if "utxo" not in leg.lock and "address" in leg.lock:
            utxo = self.htlc.check_htlc_funded(leg.lock["address"], btc_to_sats(leg.amount), 1)
            if utxo is not None:
                leg.lock["utxo"] = utxo.to_dict()
        if "utxo" not in leg.lock:
            raise NotReady("HTLC funding output not confirmed yet", side="BTC", check="lock-unconfirmed")
        return UTXO.from_dict(leg.lock["utxo"])

    def prepare_lock(self, leg: LegState, secret_hash: str) -> Dict[str, Any]:
        """Build the HTLC for this leg and a signed wallet payment into it."""
        sequence = encode_sequence(blocks=leg.timeout)
        script = self.htlc.create_htlc_script(
            secret_hash, leg.receiver.pubkey, leg.sender.pubkey, sequence
        )
        address = self.htlc.script_to_p2sh_address(script)
        tx_hex, vout = self.htlc.build_funding_tx(address, btc_to_sats(leg.amount))
        txid = txid_of(tx_hex)
        leg.lock.update({
            "redeem_script": script.hex(),
            "address": address,
            "sequence": sequence,
            "fund_txid": txid,
        })
        return {"op": "lock", "ref": txid, "raw": tx_hex, "vout": vout}

    def verify_lock(self, leg: LegState, secret_hash: str) -> None:
        """
        Check the on-chain HTLC matches what was agreed.

        Raises ProtocolViolation on any mismatch, NotReady while the
        funding output lacks confirmations.
        """
        script = self._script(leg)
        params = self.htlc.parse_htlc_script(script)

        checks = [
            ("hashlock", params["secret_hash"] == secret_hash.lower()),
            ("claim-key", params["claim_pkh"] == hash160(leg.receiver.pubkey)),
            ("refund-key", params["refund_pkh"] == hash160(leg.sender.pubkey)),
            ("timelock", params["sequence"] == encode_sequence(blocks=leg.timeout)),
            ("address", self.htlc.script_to_p2sh_address(script) == leg.lock.get("address")),
        ]
        for check, ok in checks:
            if not ok:
                raise ProtocolViolation(f"BTC HTLC {check} does not match", side="BTC", check=check)

        utxo = self.htlc.check_htlc_funded(
            leg.lock["address"], btc_to_sats(leg.amount), self.policy.min_confirmations
        )
        if utxo is None:
            raise NotReady(
                f"HTLC {leg.lock['address']} not funded with {self.policy.min_confirmations} conf",
                side="BTC", check="lock-unconfirmed",
            )
        leg.lock["utxo"] = utxo.to_dict()

    def prepare_claim(self, leg: LegState, secret: bytes) -> Dict[str, Any]:
        tx_hex = self.htlc.build_claim_tx(
            leg.receiver.address, self._script(leg), leg.receiver.privkey, self._utxo(leg), secret
        )
        return {"op": "claim", "ref": txid_of(tx_hex), "raw": tx_hex}

    def prepare_refund(self, leg: LegState) -> Dict[str, Any]:
        tx_hex = self.htlc.build_refund_tx(
            leg.sender.address, self._script(leg), leg.sender.privkey, self._utxo(leg),
            leg.lock["sequence"]
        )
        return {"op": "refund", "ref": txid_of(tx_hex), "raw": tx_hex}

    def broadcast(self, leg: LegState, pending: Dict[str, Any]) -> None:
        try:
            self.client.send_raw_transaction(pending["raw"])
        except LedgerRejection as e:
            # The node already has these exact bytes
            if e.reason != RejectReason.ALREADY_SETTLED:
                raise
            log.info(f"BTC {pending['op']} {pending['ref']} already known to the node")

    def confirm(self, leg: LegState, pending: Dict[str, Any]) -> bool:
        """True once the pending transaction is in the mempool or a block."""
        if self.client.get_raw_transaction(pending["ref"]) is not None:
            return True
        if pending["op"] == "lock":
            return self.client.get_tx_out(pending["ref"], pending["vout"]) is not None

        utxo = self._utxo(leg)
        if self.client.get_tx_out(utxo.txid, utxo.vout) is not None:
            return False
        spending = self.htlc.find_spending_tx(utxo, utxo.height or 0)
        return spending is not None and spending["txid"] == pending["ref"]

    def find_secret(self, leg: LegState, secret_hash: str) -> Optional[bytes]:
        utxo = self._utxo(leg)
        spending = self.htlc.find_spending_tx(utxo, utxo.height or 0)
        if spending is None:
            return None
        return self.htlc.extract_secret(spending, expected_hash=secret_hash)

    def timeout_seconds(self, leg: LegState) -> int:
        return leg.timeout * self.policy.btc_block_interval

    def remaining_seconds(self, leg: LegState) -> int:
        try:
            utxo = self._utxo(leg)
        except NotReady:
            # Not confirmed yet, the relative lock has not started
            return self.timeout_seconds(leg)
        # The refund may be mined at height + timeout
        blocks_left = (utxo.height or 0) + leg.timeout - (self.client.get_block_count() + 1)
        return max(0, blocks_left) * self.policy.btc_block_interval


class XRPLeg:
    """
    Account-ledger leg.

    `leg.timeout` is seconds from lock time to CancelAfter, measured on
    the validated ledger clock.
    """

    chain = "XRP"

    # Escrow operation per pending op
    OPERATIONS = {"lock": "create", "claim": "finish", "refund": "cancel"}

    def __init__(self, escrow: XRPEscrow, client: XRPClient):
        self.escrow = escrow
        self.client = client

    def create_key_pair(self) -> KeyInfo:
        return self.escrow.create_key_pair()

    @staticmethod
    def _pending(op: str, signed: SignedTx) -> Dict[str, Any]:
        return {"op": op, "ref": signed.tx_hash, "raw": signed.blob, "sequence": signed.sequence}

    def prepare_lock(self, leg: LegState, secret_hash: str) -> Dict[str, Any]:
        condition = condition_from_hash(secret_hash)
        cancel_after = self.client.ledger_time() + leg.timeout
        signed = self.escrow.prepare_create(
            leg.sender, leg.receiver.address, leg.amount, condition, cancel_after
        )
        leg.lock.update({
            "owner": leg.sender.address,
            "offer_sequence": signed.sequence,
            "condition": condition,
            "cancel_after": cancel_after,
        })
        return self._pending("lock", signed)

    def verify_lock(self, leg: LegState, secret_hash: str) -> None:
        """Check the escrow object on the validated ledger matches what was agreed."""
        entry = self.escrow.get_escrow(leg.lock["owner"], leg.lock["offer_sequence"])
        if entry is None:
            raise ProtocolViolation(
                f"Escrow {leg.lock['owner']}#{leg.lock['offer_sequence']} not on ledger",
                side="XRP", check="escrow-missing",
            )

        checks = [
            ("owner", entry.get("Account") == leg.sender.address),
            ("destination", entry.get("Destination") == leg.receiver.address),
            ("amount", entry.get("Amount") == xrp_to_drops(Decimal(str(leg.amount)))),
            ("condition", (entry.get("Condition") or "").upper() == condition_from_hash(secret_hash)),
            ("timelock", entry.get("CancelAfter") == leg.lock["cancel_after"]),
            ("finish-after", entry.get("FinishAfter") is None),
        ]
        for check, ok in checks:
            if not ok:
                raise ProtocolViolation(f"XRP escrow {check} does not match", side="XRP", check=check)

    def prepare_claim(self, leg: LegState, secret: bytes) -> Dict[str, Any]:
        signed = self.escrow.prepare_finish(
            leg.receiver,
            leg.lock["owner"],
            leg.lock["offer_sequence"],
            leg.lock["condition"],
            fulfillment_binary(secret).hex().upper(),
        )
        return self._pending("claim", signed)

    def prepare_refund(self, leg: LegState) -> Dict[str, Any]:
        signed = self.escrow.prepare_cancel(leg.sender, leg.lock["owner"], leg.lock["offer_sequence"])
        return self._pending("refund", signed)

    def broadcast(self, leg: LegState, pending: Dict[str, Any]) -> None:
        signed = SignedTx(pending["ref"], pending["raw"], pending["sequence"])
        self.escrow.submit(signed, self.OPERATIONS[pending["op"]])

    def confirm(self, leg: LegState, pending: Dict[str, Any]) -> bool:
        return self.client.tx_result(pending["ref"]) == "tesSUCCESS"

    def find_secret(self, leg: LegState, secret_hash: str) -> Optional[bytes]:
        preimage = self.escrow.extract_secret(leg.lock["owner"], leg.lock["offer_sequence"])
        if preimage is not None and sha256(preimage).hex() != secret_hash.lower():
            raise ProtocolViolation("Revealed preimage does not match hashlock",
                                    side="XRP", check="preimage-mismatch")
        return preimage

    def timeout_seconds(self, leg: LegState) -> int:
        return leg.timeout

    def remaining_seconds(self, leg: LegState) -> int:
        if "cancel_after" not in leg.lock:
            return leg.timeout
        return max(0, leg.lock["cancel_after"] - self.client.ledger_time())
