#!/usr/bin/env python3
"""
XRPL client tests over a scripted JSON-RPC client.
"""

import unittest

from xrpl.models.requests import AccountTx, SubmitOnly, Tx
from xrpl.models.response import Response, ResponseStatus

from htlcswap.core import RPCError
from htlcswap.chains.xrp import XRPClient, XRPConfig, SignedTx

SIGNED = SignedTx(tx_hash="AB" * 32, blob="120001DEADBEEF", sequence=7)


def ok(result):
    return Response(status=ResponseStatus.SUCCESS, result=result)


def error(name):
    return Response(status=ResponseStatus.ERROR, result={"error": name})


class ScriptedClient:
    """Answers requests by type and keeps them."""

    def __init__(self, submit=None, tx=None, account_tx=None):
        self.requests = []
        self.answers = {SubmitOnly: submit, Tx: tx, AccountTx: account_tx}

    def request(self, request):
        self.requests.append(request)
        return self.answers[type(request)]


def make_client(**answers) -> XRPClient:
    config = XRPConfig(validation_timeout=0.05, poll_interval=0)
    return XRPClient(config, client=ScriptedClient(**answers))


class TestSubmitSigned(unittest.TestCase):

    def test_success_waits_for_validation(self):
        client = make_client(
            submit=ok({"engine_result": "tesSUCCESS"}),
            tx=ok({"validated": True, "meta": {"TransactionResult": "tesSUCCESS"}}),
        )
        submission = client.submit_signed(SIGNED)
        self.assertTrue(submission.accepted)
        self.assertTrue(submission.validated)
        self.assertEqual(submission.sequence, 7)

        submit = client.client.requests[0]
        self.assertEqual(submit.tx_blob, SIGNED.blob)
        self.assertTrue(submit.fail_hard)
        self.assertEqual(client.client.requests[1].transaction, SIGNED.tx_hash)

    def test_resubmitted_blob_already_applied(self):
        client = make_client(
            submit=ok({"engine_result": "tefALREADY"}),
            tx=ok({"validated": True, "meta": {"TransactionResult": "tesSUCCESS"}}),
        )
        self.assertTrue(client.submit_signed(SIGNED).accepted)

    def test_past_sequence_consumed_by_this_transaction(self):
        client = make_client(
            submit=ok({"engine_result": "tefPAST_SEQ"}),
            tx=ok({"validated": True, "meta": {"TransactionResult": "tesSUCCESS"}}),
        )
        submission = client.submit_signed(SIGNED)
        self.assertTrue(submission.accepted)
        self.assertTrue(submission.validated)

    def test_past_sequence_consumed_by_another_transaction(self):
        client = make_client(submit=ok({"engine_result": "tefPAST_SEQ"}), tx=error("txnNotFound"))
        submission = client.submit_signed(SIGNED)
        self.assertEqual(submission.result_code, "tefPAST_SEQ")
        self.assertFalse(submission.validated)

    def test_claimed_fee_result_is_not_waited_for(self):
        client = make_client(submit=ok({"engine_result": "tecNO_TARGET"}))
        self.assertEqual(client.submit_signed(SIGNED).result_code, "tecNO_TARGET")
        self.assertEqual(len(client.client.requests), 1)

    def test_validation_timeout(self):
        client = make_client(submit=ok({"engine_result": "tesSUCCESS"}), tx=ok({"validated": False}))
        with self.assertRaises(RPCError):
            client.submit_signed(SIGNED)

    def test_tx_result_unknown_hash(self):
        self.assertIsNone(make_client(tx=error("txnNotFound")).tx_result(SIGNED.tx_hash))


class TestAccountTx(unittest.TestCase):

    def test_page_and_marker(self):
        client = make_client(account_tx=ok({
            "transactions": [
                {"tx_json": {"TransactionType": "EscrowFinish"}, "meta": {"TransactionResult": "tesSUCCESS"},
                 "validated": True},
                {"tx": {"TransactionType": "EscrowCreate"}, "meta": {}},
                {"tx_json": {"TransactionType": "Payment"}, "validated": False},
            ],
            "marker": {"ledger": 12, "seq": 3},
        }))
        entries, marker = client.account_tx("rOwner", limit=3, marker={"ledger": 20, "seq": 0})

        self.assertEqual([tx["TransactionType"] for tx, _ in entries], ["EscrowFinish", "EscrowCreate"])
        self.assertEqual(marker, {"ledger": 12, "seq": 3})
        request = client.client.requests[0]
        self.assertEqual((request.account, request.limit), ("rOwner", 3))
        self.assertEqual(request.marker, {"ledger": 20, "seq": 0})

    def test_last_page(self):
        client = make_client(account_tx=ok({"transactions": []}))
        self.assertEqual(client.account_tx("rOwner"), ([], None))


if __name__ == "__main__":
    unittest.main()
