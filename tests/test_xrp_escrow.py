#!/usr/bin/env python3
"""
XRPL escrow HTLC tests against the in-memory ledger.
"""

import unittest

from htlcswap.core import (
    create_secret, LedgerRejection, RejectReason, Resolution, InputValidationError,
)
from htlcswap.htlc.xrp import XRPEscrow, classify_engine_result

from tests.fakes import FakeXRPLedger


class EscrowTestCase(unittest.TestCase):

    def setUp(self):
        self.ledger = FakeXRPLedger()
        self.escrow = XRPEscrow(self.ledger)
        self.owner = self.escrow.create_key_pair()
        self.dest = self.escrow.create_key_pair()
        self.secret = create_secret(b"\x5a" * 32)

    def _create(self, timeout: int = 120) -> int:
        return self.escrow.create_escrow(
            self.owner, self.dest.address, "0.14",
            self.secret.condition, self.ledger.ledger_time() + timeout,
        )


class TestEscrowLifecycle(EscrowTestCase):

    def test_create_finish_extract(self):
        seq = self._create()
        entry = self.escrow.get_escrow(self.owner.address, seq)
        self.assertEqual(entry["Amount"], "140000")
        self.assertEqual(entry["Condition"], self.secret.condition)
        self.assertIsNone(self.escrow.extract_secret(self.owner.address, seq))

        self.escrow.finish_escrow(self.dest, self.owner.address, seq,
                                  self.secret.condition, self.secret.fulfillment)

        self.assertIsNone(self.escrow.get_escrow(self.owner.address, seq))
        self.assertEqual(self.ledger.balance(self.dest.address),
                         FakeXRPLedger.START_BALANCE + 140_000)
        self.assertEqual(self.escrow.extract_secret(self.owner.address, seq), self.secret.raw)

    def test_wrong_fulfillment_leaves_escrow_open(self):
        seq = self._create()
        other = create_secret(b"\x5b" * 32)

        with self.assertRaises(LedgerRejection) as ctx:
            self.escrow.finish_escrow(self.dest, self.owner.address, seq,
                                      self.secret.condition, other.fulfillment)
        self.assertEqual(ctx.exception.reason, RejectReason.CONDITION_MISMATCH)
        self.assertEqual(ctx.exception.result_code, "tecCRYPTOCONDITION_ERROR")
        self.assertIsNotNone(self.escrow.get_escrow(self.owner.address, seq))

        # The right fulfillment still works afterwards
        self.escrow.finish_escrow(self.dest, self.owner.address, seq,
                                  self.secret.condition, self.secret.fulfillment)
        self.assertIsNone(self.escrow.get_escrow(self.owner.address, seq))

    def test_cancel_only_after_cancel_after(self):
        seq = self._create(timeout=100)
        bystander = self.escrow.create_key_pair()

        with self.assertRaises(LedgerRejection) as ctx:
            self.escrow.cancel_escrow(bystander, self.owner.address, seq)
        self.assertEqual(ctx.exception.reason, RejectReason.TOO_EARLY)
        self.assertEqual(ctx.exception.resolution, Resolution.WAIT)

        self.ledger.advance(101)
        self.escrow.cancel_escrow(bystander, self.owner.address, seq)

        self.assertIsNone(self.escrow.get_escrow(self.owner.address, seq))
        self.assertEqual(self.ledger.balance(self.owner.address), FakeXRPLedger.START_BALANCE)

    def test_finish_after_cancel_is_already_settled(self):
        seq = self._create(timeout=10)
        self.ledger.advance(11)
        self.escrow.cancel_escrow(self.owner, self.owner.address, seq)

        with self.assertRaises(LedgerRejection) as ctx:
            self.escrow.finish_escrow(self.dest, self.owner.address, seq,
                                      self.secret.condition, self.secret.fulfillment)
        self.assertEqual(ctx.exception.reason, RejectReason.ALREADY_SETTLED)
        self.assertEqual(ctx.exception.resolution, Resolution.ABANDON)
        self.assertIsNone(self.escrow.extract_secret(self.owner.address, seq))

    def test_finish_after_expiry_is_denied(self):
        seq = self._create(timeout=10)
        self.ledger.advance(11)
        with self.assertRaises(LedgerRejection) as ctx:
            self.escrow.finish_escrow(self.dest, self.owner.address, seq,
                                      self.secret.condition, self.secret.fulfillment)
        self.assertEqual(ctx.exception.reason, RejectReason.PERMISSION_DENIED)

    def test_extract_pages_through_history(self):
        seq = self._create()
        self.escrow.finish_escrow(self.dest, self.owner.address, seq,
                                  self.secret.condition, self.secret.fulfillment)
        # Later activity pushes the finish off the first pages
        for _ in range(3):
            self._create()
        self.ledger.page_size = 1

        self.assertEqual(self.escrow.extract_secret(self.owner.address, seq), self.secret.raw)

    def test_history_scan_stops_at_escrow_creation(self):
        self._create()
        seq = self._create()
        self._create()
        self._create()
        self.ledger.page_size = 1

        markers = []
        page = self.ledger.account_tx

        def recording(account, limit=200, marker=None):
            markers.append(marker)
            return page(account, limit, marker)
        self.ledger.account_tx = recording

        self.assertIsNone(self.escrow.extract_secret(self.owner.address, seq))
        self.assertEqual(markers, [None, 1, 2])

    def test_signed_create_applies_once(self):
        signed = self.escrow.prepare_create(self.owner, self.dest.address, "0.14",
                                            self.secret.condition, self.ledger.ledger_time() + 120)
        self.assertEqual(self.ledger.submitted, [])

        first = self.escrow.submit(signed, "create")
        again = self.escrow.submit(signed, "create")
        self.assertEqual((first.tx_hash, again.tx_hash), (signed.tx_hash, signed.tx_hash))
        self.assertTrue(again.validated)
        self.assertEqual(len(self.ledger.escrows), 1)
        self.assertEqual(self.ledger.balance(self.owner.address),
                         FakeXRPLedger.START_BALANCE - 140_000)


class TestEscrowValidation(EscrowTestCase):

    def test_cancel_after_in_past(self):
        with self.assertRaises(InputValidationError) as ctx:
            self.escrow.create_escrow(self.owner, self.dest.address, "1",
                                      self.secret.condition, self.ledger.ledger_time())
        self.assertEqual(ctx.exception.check, "cancel-after-past")
        self.assertEqual(self.ledger.submitted, [])

    def test_bad_condition_not_submitted(self):
        with self.assertRaises(InputValidationError):
            self.escrow.create_escrow(self.owner, self.dest.address, "1",
                                      "A1" + self.secret.condition[2:],
                                      self.ledger.ledger_time() + 60)
        self.assertEqual(self.ledger.submitted, [])

    def test_missing_private_key(self):
        with self.assertRaises(InputValidationError) as ctx:
            self.escrow.create_escrow(self.owner.public(), self.dest.address, "1",
                                      self.secret.condition, self.ledger.ledger_time() + 60)
        self.assertEqual(ctx.exception.check, "missing-privkey")

    def test_unfunded(self):
        with self.assertRaises(LedgerRejection) as ctx:
            self.escrow.create_escrow(self.owner, self.dest.address, "5000",
                                      self.secret.condition, self.ledger.ledger_time() + 60)
        self.assertEqual(ctx.exception.reason, RejectReason.INSUFFICIENT_FUNDS)


class TestClassifyEngineResult(unittest.TestCase):

    def test_table(self):
        cases = [
            ("tesSUCCESS", "finish", None),
            ("tecNO_PERMISSION", "cancel", RejectReason.TOO_EARLY),
            ("tecNO_PERMISSION", "finish", RejectReason.PERMISSION_DENIED),
            ("tecCRYPTOCONDITION_ERROR", "finish", RejectReason.CONDITION_MISMATCH),
            ("tecNO_TARGET", "cancel", RejectReason.ALREADY_SETTLED),
            ("tecNO_ENTRY", "finish", RejectReason.ALREADY_SETTLED),
            ("tecUNFUNDED", "create", RejectReason.INSUFFICIENT_FUNDS),
            ("tecINSUFFICIENT_RESERVE", "create", RejectReason.INSUFFICIENT_FUNDS),
            ("temMALFORMED", "create", RejectReason.MALFORMED),
            ("tefPAST_SEQ", "create", RejectReason.UNKNOWN),
        ]
        for code, op, expected in cases:
            with self.subTest(code=code, op=op):
                self.assertEqual(classify_engine_result(code, op), expected)


if __name__ == "__main__":
    unittest.main()
