#!/usr/bin/env python3
"""
Bitcoin JSON-RPC client tests over a mocked HTTP transport.
"""

import json
import base64
import threading
import unittest
from unittest.mock import patch

import httpx

from htlcswap.core import RPCError, LedgerRejection, RejectReason, Resolution
from htlcswap.chains.btc import BTCClient, BTCConfig, classify_rejection


class RecordingNode:
    """Answers every call from a handler and keeps the requests."""

    def __init__(self, handler=None):
        self.requests = []
        self.handler = handler or (lambda method, params: (None, None))
        self._lock = threading.Lock()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        with self._lock:
            self.requests.append((request, body))
        result, error = self.handler(body["method"], body["params"])
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"],
                                         "result": result, "error": error})


def make_client(node: RecordingNode, **config) -> BTCClient:
    cfg = BTCConfig(rpc_user="alice", rpc_password="hunter2", **config)
    return BTCClient(cfg, transport=httpx.MockTransport(node))


class TestRPCEnvelope(unittest.TestCase):

    def test_ids_increment_and_auth_sent(self):
        node = RecordingNode(lambda m, p: (150, None))
        client = make_client(node)

        self.assertEqual(client.get_block_count(), 150)
        self.assertEqual(client.get_block_count(), 150)

        ids = [body["id"] for _, body in node.requests]
        self.assertEqual(ids, [1, 2])
        request, body = node.requests[0]
        self.assertEqual(body["jsonrpc"], "2.0")
        self.assertEqual(body["method"], "getblockcount")
        expected = "Basic " + base64.b64encode(b"alice:hunter2").decode()
        self.assertEqual(request.headers["authorization"], expected)
        self.assertEqual(request.url.port, 18443)

    def test_ids_unique_across_threads(self):
        node = RecordingNode(lambda m, p: (1, None))
        client = make_client(node)

        threads = [threading.Thread(target=lambda: [client.get_block_count() for _ in range(20)])
                   for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        ids = [body["id"] for _, body in node.requests]
        self.assertEqual(len(ids), 80)
        self.assertEqual(len(set(ids)), 80)

    def test_wallet_path(self):
        node = RecordingNode(lambda m, p: ("bcrt1qxyz", None))
        client = make_client(node, wallet_name="swap")
        client.get_new_address()
        client.get_block_count()
        self.assertEqual(node.requests[0][0].url.path, "/wallet/swap")
        self.assertEqual(node.requests[1][0].url.path, "/")

    def test_error_raises(self):
        node = RecordingNode(lambda m, p: (None, {"code": -5, "message": "Invalid address"}))
        client = make_client(node)
        with self.assertRaises(RPCError) as ctx:
            client.get_block_hash(1)
        self.assertEqual(ctx.exception.code, -5)

    def test_id_mismatch(self):
        def handler(request):
            return httpx.Response(200, json={"id": 999, "result": 1, "error": None})
        client = BTCClient(BTCConfig(), transport=httpx.MockTransport(handler))
        with self.assertRaises(RPCError):
            client.get_block_count()

    def test_non_json_response(self):
        client = BTCClient(BTCConfig(), transport=httpx.MockTransport(
            lambda request: httpx.Response(401, text="Unauthorized")))
        with self.assertRaises(RPCError) as ctx:
            client.get_block_count()
        self.assertEqual(ctx.exception.code, 401)


class TestBroadcastRejections(unittest.TestCase):

    def _reject_with(self, message: str) -> LedgerRejection:
        node = RecordingNode(lambda m, p: (None, {"code": -26, "message": message}))
        client = make_client(node)
        with self.assertRaises(LedgerRejection) as ctx:
            client.send_raw_transaction("00")
        return ctx.exception

    def test_premature_refund_waits(self):
        err = self._reject_with("non-BIP68-final")
        self.assertEqual(err.reason, RejectReason.PREMATURE_TIMELOCK)
        self.assertEqual(err.resolution, Resolution.WAIT)
        self.assertEqual(err.side, "BTC")
        self.assertEqual(err.result_code, "-26")

    def test_premature_refund_logged_as_warning(self):
        with self.assertLogs("htlcswap.chains.btc", level="DEBUG") as logs:
            self._reject_with("non-BIP68-final")
        levels = [record.levelname for record in logs.records]
        self.assertNotIn("ERROR", levels)
        self.assertEqual(levels.count("WARNING"), 1)
        self.assertIn("premature_timelock", logs.output[-1])

    def test_double_spend(self):
        err = self._reject_with("bad-txns-inputs-missingorspent")
        self.assertEqual(err.reason, RejectReason.DOUBLE_SPEND)
        self.assertEqual(err.resolution, Resolution.ABANDON)

    def test_classify_table(self):
        cases = [
            ("mandatory-script-verify-flag-failed (Locktime requirement not satisfied)",
             RejectReason.PREMATURE_TIMELOCK),
            ("txn-mempool-conflict", RejectReason.DOUBLE_SPEND),
            ("Transaction already in block chain", RejectReason.ALREADY_SETTLED),
            ("Transaction outputs already in utxo set", RejectReason.ALREADY_SETTLED),
            ("min relay fee not met, 100 < 141", RejectReason.INSUFFICIENT_FUNDS),
            ("mandatory-script-verify-flag-failed (Script evaluated without error "
             "but finished with a false/empty top stack element)", RejectReason.MALFORMED),
            ("something new", RejectReason.UNKNOWN),
        ]
        for message, reason in cases:
            with self.subTest(message=message):
                self.assertEqual(classify_rejection(message), reason)


class TestQueries(unittest.TestCase):

    def test_find_utxo(self):
        def handler(method, params):
            self.assertEqual(method, "scantxoutset")
            self.assertEqual(params, ["start", ["addr(2N1xyz)"]])
            return {
                "height": 210,
                "unspents": [
                    {"txid": "aa" * 32, "vout": 1, "amount": 0.0005, "height": 205},
                    {"txid": "bb" * 32, "vout": 0, "amount": 0.001, "height": 208},
                ],
            }, None

        client = make_client(RecordingNode(handler))
        utxo = client.find_utxo("2N1xyz")
        self.assertEqual(utxo.txid, "bb" * 32)
        self.assertEqual(utxo.amount, 100_000)
        self.assertEqual(utxo.confirmations, 3)
        self.assertEqual(utxo.height, 208)

    def test_find_utxo_none(self):
        client = make_client(RecordingNode(lambda m, p: ({"height": 1, "unspents": []}, None)))
        self.assertIsNone(client.find_utxo("2N1xyz"))

    def test_create_funding_tx(self):
        answers = {
            "createrawtransaction": "0200raw",
            "fundrawtransaction": {"hex": "0200funded", "fee": 0.0000141, "changepos": 1},
            "signrawtransactionwithwallet": {"hex": "0200signed", "complete": True},
        }
        node = RecordingNode(lambda m, p: (answers[m], None))
        client = make_client(node, wallet_name="swap")

        self.assertEqual(client.create_funding_tx("2N1xyz", 150_000), "0200signed")
        calls = [(body["method"], body["params"], request.url.path) for request, body in node.requests]
        self.assertEqual(calls, [
            ("createrawtransaction", [[], [{"2N1xyz": "0.00150000"}]], "/"),
            ("fundrawtransaction", ["0200raw"], "/wallet/swap"),
            ("signrawtransactionwithwallet", ["0200funded"], "/wallet/swap"),
        ])
        self.assertNotIn("sendrawtransaction", [c[0] for c in calls])

    def test_create_funding_tx_incomplete_signature(self):
        answers = {
            "createrawtransaction": "0200raw",
            "fundrawtransaction": {"hex": "0200funded"},
            "signrawtransactionwithwallet": {"hex": "0200partial", "complete": False,
                                             "errors": [{"error": "locked wallet"}]},
        }
        client = make_client(RecordingNode(lambda m, p: (answers[m], None)))
        with self.assertRaises(RPCError):
            client.create_funding_tx("2N1xyz", 150_000)

    def test_get_tx_out_spent(self):
        node = RecordingNode(lambda m, p: (None, None))
        self.assertIsNone(make_client(node).get_tx_out("cc" * 32, 0))
        self.assertEqual(node.requests[0][1]["params"], ["cc" * 32, 0, True])

    def test_get_raw_transaction_missing(self):
        node = RecordingNode(lambda m, p: (None, {"code": -5, "message": "No such mempool"}))
        self.assertIsNone(make_client(node).get_raw_transaction("dd" * 32))


class TestConfig(unittest.TestCase):

    def test_from_env(self):
        env = {
            "HTLCSWAP_BTC_NETWORK": "signet",
            "HTLCSWAP_BTC_RPC_HOST": "node.local",
            "HTLCSWAP_BTC_RPC_USER": "u",
            "HTLCSWAP_BTC_WALLET": "swap",
        }
        with patch.dict("os.environ", env, clear=True):
            cfg = BTCConfig.from_env()
        self.assertEqual(cfg.network, "signet")
        self.assertEqual(cfg.wallet_name, "swap")
        self.assertEqual(cfg.url, "http://node.local:38332")

    def test_explicit_port(self):
        self.assertEqual(BTCConfig(rpc_port=9999).url, "http://127.0.0.1:9999")


if __name__ == "__main__":
    unittest.main()
