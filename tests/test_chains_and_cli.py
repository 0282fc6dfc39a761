"""Unit tests for chain selection, metadata fallbacks and the CLI surface."""

import io
import unittest
from contextlib import redirect_stdout
from unittest import mock

from approval_reconciler import cli
from approval_reconciler.chains import PRESETS, resolve_chains
from approval_reconciler.metadata import (
    EthereumRPC,
    TokenMetadataResolver,
    decode_string,
    get_token_metadata,
)

TOKEN = "0x" + "cc" * 20


class TestResolveChains(unittest.TestCase):
    def test_single_id(self):
        self.assertEqual(resolve_chains("1"), [1])

    def test_list_of_ids_and_names(self):
        self.assertEqual(resolve_chains("137, base,1,137"), [137, 8453, 1])

    def test_preset(self):
        self.assertEqual(resolve_chains("popular"), PRESETS["popular"])

    def test_unknown_entries_skipped(self):
        self.assertEqual(resolve_chains("999999,1"), [1])

    def test_nothing_resolvable(self):
        with self.assertRaises(ValueError):
            resolve_chains("nope")
        with self.assertRaises(ValueError):
            resolve_chains("")


class TestMetadata(unittest.TestCase):
    def test_decode_abi_string(self):
        encoded = (
            "0x"
            + format(32, "064x")
            + format(4, "064x")
            + b"USDC".hex().ljust(64, "0")
        )
        self.assertEqual(decode_string(encoded), "USDC")

    def test_decode_bytes32_string(self):
        self.assertEqual(decode_string("0x" + b"MKR".hex().ljust(64, "0")), "MKR")

    def test_all_lookups_failing_falls_back(self):
        rpc = mock.Mock()
        rpc.eth_call.side_effect = RuntimeError("RPC connection error")
        meta = get_token_metadata(rpc, TOKEN)
        self.assertIsNone(meta.symbol)
        self.assertEqual(meta.decimals, 18)

    def test_reply_without_result_falls_back(self):
        resolver = TokenMetadataResolver({1: "https://rpc.example"})
        reply = mock.Mock(status_code=200)
        reply.json.return_value = {"jsonrpc": "2.0", "id": 1}
        resolver._clients[1].session = mock.Mock()
        resolver._clients[1].session.post.return_value = reply
        self.assertEqual(resolver.symbol_and_decimals(1, TOKEN), (TOKEN, 18))

    def test_non_object_reply_falls_back(self):
        rpc = EthereumRPC("https://rpc.example")
        rpc.session = mock.Mock()
        reply = mock.Mock(status_code=200)
        reply.json.return_value = ["not", "an", "object"]
        rpc.session.post.return_value = reply
        with self.assertRaises(RuntimeError):
            rpc.eth_call(TOKEN, "0x95d89b41")
        meta = get_token_metadata(rpc, TOKEN)
        self.assertIsNone(meta.symbol)
        self.assertEqual(meta.decimals, 18)

    def test_resolver_without_rpc_uses_address(self):
        resolver = TokenMetadataResolver({})
        self.assertEqual(resolver.symbol_and_decimals(1, TOKEN), (TOKEN, 18))


class TestCli(unittest.TestCase):
    def test_missing_address_exits_one(self):
        self.assertEqual(cli.main([]), 1)

    def test_invalid_address_exits_one(self):
        self.assertEqual(cli.main(["--address", "0x1234"]), 1)

    def test_unknown_chain_exits_one(self):
        self.assertEqual(
            cli.main(["--address", "0x" + "aa" * 20, "--chains", "nope"]), 1
        )

    def test_list_chains(self):
        out = io.StringIO()
        with redirect_stdout(out):
            self.assertEqual(cli.main(["--list-chains"]), 0)
        self.assertIn("ethereum", out.getvalue())
        self.assertIn("popular", out.getvalue())

    def test_scan_with_no_approvals_exits_zero(self):
        backend = mock.Mock()
        backend.get_height.return_value = 5
        backend.open_stream.return_value.receive_batch.return_value = None
        out = io.StringIO()
        with mock.patch.object(cli, "HypersyncClient", return_value=backend), \
                redirect_stdout(out), \
                mock.patch("sys.stderr", new_callable=io.StringIO):
            code = cli.main(["--address", "0x" + "aa" * 20, "--chains", "1,10"])
        self.assertEqual(code, 0)
        self.assertIn("No outstanding approvals found.", out.getvalue())


if __name__ == "__main__":
    unittest.main()
