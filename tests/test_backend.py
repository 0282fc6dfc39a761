"""Unit tests for the HyperSync client. No network calls are made."""

import unittest
from unittest import mock

import requests

from approval_reconciler.backend import (
    BackendError,
    HypersyncClient,
    build_query,
)
from approval_reconciler.events import (
    APPROVAL_TOPIC,
    TRANSFER_TOPIC,
    address_to_topic,
)
from approval_reconciler.scanner import ChainScanner, ScanState

TARGET = "0x" + "aa" * 20
SPENDER = "0x" + "bb" * 20
TOKEN = "0x" + "cc" * 20


def response(payload, status=200):
    resp = mock.Mock()
    resp.status_code = status
    resp.json.return_value = payload
    resp.text = str(payload)
    return resp


def page(next_block, logs=(), transactions=(), archive_height=None):
    body = {
        "data": [{"logs": list(logs), "transactions": list(transactions)}],
        "next_block": next_block,
    }
    if archive_height is not None:
        body["archive_height"] = archive_height
    return body


APPROVAL_JSON = {
    "address": TOKEN,
    "topic0": APPROVAL_TOPIC,
    "topic1": address_to_topic(TARGET),
    "topic2": address_to_topic(SPENDER),
    "data": "0x" + format(7, "064x"),
    "block_number": 3,
    "transaction_hash": "0xa3",
}


class TestBuildQuery(unittest.TestCase):
    def test_filters_are_a_union(self):
        query = build_query(TARGET.upper().replace("0X", "0x"), 0)
        topic = address_to_topic(TARGET)
        body = query.to_json()
        self.assertEqual(body["from_block"], 0)
        self.assertNotIn("to_block", body)
        self.assertEqual(
            body["logs"],
            [
                {"topics": [[APPROVAL_TOPIC], [topic], []]},
                {"topics": [[TRANSFER_TOPIC], [topic], []]},
                {"topics": [[TRANSFER_TOPIC], [], [topic]]},
            ],
        )
        self.assertEqual(body["transactions"], [{"from": [TARGET]}, {"to": [TARGET]}])
        self.assertIn("topic2", body["field_selection"]["log"])
        self.assertEqual(body["field_selection"]["transaction"], ["from", "to", "hash"])


class TestHypersyncClient(unittest.TestCase):
    def setUp(self):
        self.client = HypersyncClient("https://1.hypersync.xyz/", api_token="secret")
        self.client.session = mock.Mock()

    def test_token_header(self):
        client = HypersyncClient("https://x", api_token="secret")
        self.assertEqual(client.session.headers["Authorization"], "Bearer secret")

    def test_get_height(self):
        self.client.session.request.return_value = response({"height": 123})
        self.assertEqual(self.client.get_height(), 123)
        args, kwargs = self.client.session.request.call_args
        self.assertEqual(args, ("GET", "https://1.hypersync.xyz/height"))
        self.assertEqual(kwargs["timeout"], 30)

    def test_http_error(self):
        self.client.session.request.return_value = response({}, status=503)
        with self.assertRaises(BackendError):
            self.client.get_height()

    def test_connection_error(self):
        self.client.session.request.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(BackendError):
            self.client.get_height()

    def test_error_payload(self):
        self.client.session.request.return_value = response({"error": "bad query"})
        with self.assertRaises(BackendError):
            self.client.query(build_query(TARGET))

    def test_stream_pages_until_stop_block(self):
        self.client.session.request.side_effect = [
            response(page(50, logs=[APPROVAL_JSON],
                          transactions=[{"hash": "0xa3", "from": TARGET, "to": TOKEN}])),
            response(page(61)),
        ]
        stream = self.client.open_stream(build_query(TARGET), to_block=61)

        first = stream.receive_batch()
        self.assertEqual(first.next_block, 50)
        self.assertEqual(len(first.logs), 1)
        self.assertEqual(first.logs[0].topics[0], APPROVAL_TOPIC)
        self.assertEqual(first.transactions[0].sender, TARGET)

        second = stream.receive_batch()
        self.assertEqual(second.logs, [])
        self.assertEqual(second.next_block, 61)
        second_body = self.client.session.request.call_args[1]["json"]
        self.assertEqual(second_body["from_block"], 50)
        self.assertEqual(second_body["to_block"], 61)

        self.assertIsNone(stream.receive_batch())
        self.assertEqual(self.client.session.request.call_count, 2)

    def test_stream_uses_archive_height_without_stop_block(self):
        self.client.session.request.side_effect = [
            response(page(10, archive_height=9)),
        ]
        stream = self.client.open_stream(build_query(TARGET))
        self.assertEqual(stream.receive_batch().next_block, 10)
        self.assertIsNone(stream.receive_batch())

    def test_failed_receive_does_not_move_cursor(self):
        self.client.session.request.side_effect = [
            requests.Timeout("slow"),
            response(page(20)),
        ]
        stream = self.client.open_stream(build_query(TARGET), to_block=100)
        with self.assertRaises(BackendError):
            stream.receive_batch()
        self.assertEqual(stream.cursor, 0)
        self.assertEqual(stream.receive_batch().next_block, 20)

    def test_malformed_log_is_skipped_and_counted(self):
        bad = dict(APPROVAL_JSON, block_number="0xzz", transaction_hash="0xa4")
        self.client.session.request.side_effect = [
            response(page(20, logs=[APPROVAL_JSON, bad],
                          transactions=[{"hash": 7, "from": TARGET}])),
        ]
        stream = self.client.open_stream(build_query(TARGET), to_block=20)
        batch = stream.receive_batch()
        self.assertEqual(len(batch.logs), 1)
        self.assertEqual(batch.skipped_logs, 1)
        self.assertEqual(batch.transactions, [])
        self.assertEqual(stream.cursor, 20)

    def test_scan_survives_malformed_log(self):
        bad = dict(APPROVAL_JSON, block_number="0xzz")
        self.client.session.request.side_effect = [
            response({"height": 19}),
            response(page(20, logs=[APPROVAL_JSON, bad])),
        ]
        scanner = ChainScanner(1, self.client, TARGET, retry_delay=0)
        result = scanner.run()
        self.assertEqual(scanner.stats.state, ScanState.COMPLETE)
        self.assertEqual(scanner.stats.total_events, 2)
        self.assertEqual(result.approvals[TOKEN][SPENDER].approved_amount, 7)

    def test_non_advancing_page_is_delivered_once(self):
        self.client.session.request.side_effect = [
            response(page(0, logs=[APPROVAL_JSON])),
            response(page(0, logs=[APPROVAL_JSON])),
        ]
        stream = self.client.open_stream(build_query(TARGET), to_block=100)
        batch = stream.receive_batch()
        self.assertEqual(len(batch.logs), 1)
        self.assertEqual(batch.next_block, 0)
        self.assertIsNone(stream.receive_batch())
        self.assertEqual(self.client.session.request.call_count, 1)

    def test_close_drops_connections(self):
        self.client.close()
        self.client.session.close.assert_called_once_with()


if __name__ == "__main__":
    unittest.main()
