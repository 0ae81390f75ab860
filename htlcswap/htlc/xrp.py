"""
XRP Ledger escrow HTLC for htlcswap.

Uses native conditional escrows:
    EscrowCreate  Condition = PREIMAGE-SHA-256(secret), CancelAfter = T
    EscrowFinish  Fulfillment proves the preimage, before or after T
    EscrowCancel  anyone, only after T (ledger close time)

The fulfillment sits in the EscrowFinish transaction, so the secret
can be read back from the owner's account history.
"""

import logging
from decimal import Decimal
from typing import Optional, Dict, Any, Union

from xrpl.constants import CryptoAlgorithm
from xrpl.models.transactions import EscrowCancel, EscrowCreate, EscrowFinish
from xrpl.utils import xrp_to_drops
from xrpl.wallet import Wallet

from ..core import (
    KeyInfo, RejectReason, LedgerRejection, InputValidationError, ExtractionError,
)
from ..chains.xrp import XRPClient, LedgerSubmission, SignedTx
from .condition import parse_condition, parse_fulfillment

log = logging.getLogger(__name__)


def classify_engine_result(code: str, operation: str) -> Optional[RejectReason]:
    """
    Map an XRPL result code to a RejectReason.

    Args:
        code: engine_result / TransactionResult
        operation: "create", "finish" or "cancel"

    Returns:
        None for tesSUCCESS
    """
    if code == "tesSUCCESS":
        return None
    if code == "tecNO_PERMISSION":
        # Cancel before CancelAfter (or finish before FinishAfter)
        return RejectReason.TOO_EARLY if operation == "cancel" else RejectReason.PERMISSION_DENIED
    if code == "tecCRYPTOCONDITION_ERROR":
        return RejectReason.CONDITION_MISMATCH
    if code in ("tecNO_TARGET", "tecNO_ENTRY"):
        return RejectReason.ALREADY_SETTLED
    if code.startswith("tecUNFUNDED") or code == "tecINSUFFICIENT_RESERVE":
        return RejectReason.INSUFFICIENT_FUNDS
    if code.startswith("tem"):
        return RejectReason.MALFORMED
    return RejectReason.UNKNOWN


class XRPEscrow:
    """
    XRPL escrow manager.

    All account arguments are KeyInfo with the private key attached for
    the acting account, or plain classic addresses for the others.
    """

    def __init__(self, client: XRPClient):
        self.client = client

    def create_key_pair(self) -> KeyInfo:
        """Fresh secp256k1 account key pair."""
        wallet = Wallet.create(algorithm=CryptoAlgorithm.SECP256K1)
        return KeyInfo(
            address=wallet.classic_address,
            pubkey=bytes.fromhex(wallet.public_key),
            privkey=bytes.fromhex(wallet.private_key),
            chain="XRP",
        )

    @staticmethod
    def _wallet(key: KeyInfo) -> Wallet:
        if not key.privkey:
            raise InputValidationError(
                f"No private key for {key.address}", side="XRP", check="missing-privkey"
            )
        return Wallet(public_key=key.pubkey.hex().upper(), private_key=key.privkey.hex().upper())

    def _check(self, submission: LedgerSubmission, operation: str) -> LedgerSubmission:
        reason = classify_engine_result(submission.result_code, operation)
        if reason is not None:
            log.warning(f"XRPL escrow {operation} rejected: {submission.result_code} ({reason.value})")
            raise LedgerRejection(
                f"Escrow {operation} rejected: {submission.result_code}",
                reason=reason, side="XRP", result_code=submission.result_code,
            )
        return submission

    # =========================================================================
    # Escrow lifecycle
    # =========================================================================

    def prepare_create(self, creator: KeyInfo, destination: str, amount: Union[str, Decimal],
                       condition: str, cancel_after: int) -> SignedTx:
        """
        Sign an EscrowCreate without submitting it.

        Args:
            creator: Funding account (with private key)
            destination: Account that may finish with the fulfillment
            amount: XRP amount (decimal string)
            condition: PREIMAGE-SHA-256 condition, hex
            cancel_after: Ripple-epoch time after which anyone may cancel

        Returns:
            SignedTx; its sequence is the escrow's OfferSequence
        """
        parse_condition(condition)
        now = self.client.ledger_time()
        if cancel_after <= now:
            raise InputValidationError(
                f"CancelAfter {cancel_after} is not after ledger time {now}",
                side="XRP", check="cancel-after-past",
            )

        tx = EscrowCreate(
            account=creator.address,
            amount=xrp_to_drops(Decimal(str(amount))),
            destination=destination,
            condition=condition.upper(),
            cancel_after=cancel_after,
        )
        return self.client.sign(tx, self._wallet(creator))

    def prepare_finish(self, actor: KeyInfo, owner: str, offer_sequence: int,
                       condition: str, fulfillment: str) -> SignedTx:
        """Sign an EscrowFinish carrying the fulfillment."""
        tx = EscrowFinish(
            account=actor.address,
            owner=owner,
            offer_sequence=offer_sequence,
            condition=condition.upper(),
            fulfillment=fulfillment.upper(),
        )
        return self.client.sign(tx, self._wallet(actor))

    def prepare_cancel(self, actor: KeyInfo, owner: str, offer_sequence: int) -> SignedTx:
        """Sign an EscrowCancel. Any account may cancel."""
        tx = EscrowCancel(account=actor.address, owner=owner, offer_sequence=offer_sequence)
        return self.client.sign(tx, self._wallet(actor))

    def submit(self, signed: SignedTx, operation: str) -> LedgerSubmission:
        """
        Submit a prepared escrow transaction.

        Raises:
            LedgerRejection with the mapped reason unless it validated
            with tesSUCCESS
        """
        return self._check(self.client.submit_signed(signed), operation)

    def create_escrow(self, creator: KeyInfo, destination: str, amount: Union[str, Decimal],
                      condition: str, cancel_after: int) -> int:
        """
        Lock XRP behind a condition.

        Returns:
            OfferSequence identifying the escrow
        """
        signed = self.prepare_create(creator, destination, amount, condition, cancel_after)
        self.submit(signed, "create")
        log.info(f"XRPL escrow created: {creator.address}#{signed.sequence} -> {destination}, "
                 f"{amount} XRP, cancel_after={cancel_after}")
        return signed.sequence

    def finish_escrow(self, actor: KeyInfo, owner: str, offer_sequence: int,
                      condition: str, fulfillment: str) -> str:
        """
        Release an escrow to its destination with the fulfillment.

        Returns:
            EscrowFinish transaction hash
        """
        signed = self.prepare_finish(actor, owner, offer_sequence, condition, fulfillment)
        self.submit(signed, "finish")
        log.info(f"XRPL escrow finished: {owner}#{offer_sequence} by {actor.address}")
        return signed.tx_hash

    def cancel_escrow(self, actor: KeyInfo, owner: str, offer_sequence: int) -> str:
        """
        Return an expired escrow to its owner.

        Raises:
            LedgerRejection(TOO_EARLY) before CancelAfter
        """
        signed = self.prepare_cancel(actor, owner, offer_sequence)
        self.submit(signed, "cancel")
        log.info(f"XRPL escrow cancelled: {owner}#{offer_sequence} by {actor.address}")
        return signed.tx_hash

    def get_escrow(self, owner: str, offer_sequence: int) -> Optional[Dict[str, Any]]:
        """Escrow object while it is open, None once finished or cancelled."""
        return self.client.get_escrow(owner, offer_sequence)

    # =========================================================================
    # Secret extraction
    # =========================================================================

    def find_finish(self, owner: str, offer_sequence: int) -> Optional[Dict[str, Any]]:
        """
        The successful EscrowFinish for an escrow, if any.

        Pages back through the owner's history, newest first, and stops
        at the EscrowCreate that opened the escrow.
        """
        marker = None
        while True:
            entries, marker = self.client.account_tx(owner, marker=marker)
            for tx, meta in entries:
                kind = tx.get("TransactionType")
                if (kind == "EscrowCreate" and tx.get("Account") == owner
                        and tx.get("Sequence") == offer_sequence):
                    return None
                if kind != "EscrowFinish":
                    continue
                if tx.get("Owner") != owner or tx.get("OfferSequence") != offer_sequence:
                    continue
                if meta.get("TransactionResult") != "tesSUCCESS":
                    continue
                return tx
            if marker is None:
                return None

    def extract_secret(self, owner: str, offer_sequence: int) -> Optional[bytes]:
        """
        Recover the preimage from the EscrowFinish that released an escrow.

        Returns:
            Preimage, or None while the escrow has not been finished
        """
        tx = self.find_finish(owner, offer_sequence)
        if tx is None:
            return None
        fulfillment = tx.get("Fulfillment")
        if not fulfillment:
            raise ExtractionError(
                f"EscrowFinish for {owner}#{offer_sequence} has no fulfillment",
                side="XRP", check="missing-fulfillment",
            )
        try:
            return parse_fulfillment(fulfillment)
        except InputValidationError as e:
            raise ExtractionError(str(e), side="XRP", check="fulfillment-decode")
