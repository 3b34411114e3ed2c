import json
import pathlib
import subprocess
import sys
import unittest
from unittest import mock

RUNTIME_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(RUNTIME_ROOT) not in sys.path:
    sys.path.insert(0, str(RUNTIME_ROOT))

from clawkalash import rpc  # noqa: E402
from clawkalash.errors import SubprocessTimeout, TransportError, WalletStoreError  # noqa: E402

PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
ADDRESS = "0x2c7536e3605d9c16a7a3d7b1898e529396a65c23"
TO = "0x2222222222222222222222222222222222222222"
TX_HASH = "0x" + "ab" * 32


def _client() -> rpc.CastChainClient:
    return rpc.CastChainClient("https://rpc.example", rpc.Signer(address=ADDRESS, private_key=PRIVATE_KEY), cast_bin="cast")


class CastOutputParsingTests(unittest.TestCase):
    def test_parse_uint_text(self) -> None:
        self.assertEqual(rpc.parse_uint_text("42"), 42)
        self.assertEqual(rpc.parse_uint_text("0x2a"), 42)
        self.assertEqual(rpc.parse_uint_text("20000000000000000000000 [2e22]"), 20000000000000000000000)
        with self.assertRaises(TransportError):
            rpc.parse_uint_text("n/a")

    def test_extract_tx_hash(self) -> None:
        self.assertEqual(rpc.extract_tx_hash(json.dumps({"transactionHash": TX_HASH})), TX_HASH)
        self.assertEqual(rpc.extract_tx_hash(f"sent {TX_HASH}\n"), TX_HASH)
        with self.assertRaises(TransportError):
            rpc.extract_tx_hash("")

    def test_signer_repr_hides_secret(self) -> None:
        signer = rpc.Signer(address=ADDRESS, private_key=PRIVATE_KEY)
        self.assertNotIn(PRIVATE_KEY, repr(signer))
        self.assertEqual(signer.cast_args(), ["--private-key", PRIVATE_KEY])

    def test_signer_from_private_key(self) -> None:
        signer = rpc.signer_from_secret(PRIVATE_KEY[2:])
        self.assertEqual(signer.address, ADDRESS)
        self.assertEqual(signer.private_key, PRIVATE_KEY)

    def test_signer_from_garbage_rejected(self) -> None:
        with self.assertRaises(WalletStoreError):
            rpc.signer_from_secret("not a secret")


class CastChainClientTests(unittest.TestCase):
    def test_token_balance_uses_cast_call(self) -> None:
        with mock.patch.object(rpc.subprocess, "run", return_value=mock.Mock(returncode=0, stdout="1500000 [1.5e6]\n", stderr="")) as run:
            balance = _client().token_balance("0x" + "33" * 20, ADDRESS)
        self.assertEqual(balance, 1500000)
        cmd = run.call_args[0][0]
        self.assertEqual(cmd[:4], ["cast", "call", "0x" + "33" * 20, "balanceOf(address)(uint256)"])
        self.assertIn("--rpc-url", cmd)

    def test_cast_send_retries_underpriced_then_succeeds(self) -> None:
        commands: list[list[str]] = []

        def fake_run(cmd: list[str], text: bool = True, capture_output: bool = True, **kwargs):  # type: ignore[override]
            commands.append(cmd)
            if cmd[1] == "nonce":
                return mock.Mock(returncode=0, stdout="0x1", stderr="")
            if cmd[1] == "send":
                send_index = len([entry for entry in commands if len(entry) > 1 and entry[1] == "send"])
                if send_index == 1:
                    return mock.Mock(returncode=1, stdout="", stderr="replacement transaction underpriced")
                return mock.Mock(returncode=0, stdout=json.dumps({"transactionHash": TX_HASH}), stderr="")
            raise AssertionError(f"Unexpected command {cmd}")

        with mock.patch.object(rpc.subprocess, "run", side_effect=fake_run), mock.patch.object(rpc.time, "sleep"):
            tx_hash = _client().send_transaction(TO, "0xdeadbeef", value="5")

        self.assertEqual(tx_hash, TX_HASH)
        send_cmds = [entry for entry in commands if entry[1] == "send"]
        self.assertEqual(len(send_cmds), 2)
        self.assertIn("--nonce", send_cmds[0])
        self.assertEqual(send_cmds[1][send_cmds[1].index("--value") + 1], "5")
        self.assertEqual(send_cmds[1][-2:], [TO, "0xdeadbeef"])

    def test_cast_send_non_retryable_error_fails_immediately(self) -> None:
        commands: list[list[str]] = []

        def fake_run(cmd: list[str], text: bool = True, capture_output: bool = True, **kwargs):  # type: ignore[override]
            commands.append(cmd)
            if cmd[1] == "nonce":
                return mock.Mock(returncode=0, stdout="0x2", stderr="")
            return mock.Mock(returncode=1, stdout="", stderr="execution reverted")

        with mock.patch.object(rpc.subprocess, "run", side_effect=fake_run):
            with self.assertRaises(TransportError):
                _client().send_transaction(TO, "0xdeadbeef")

        self.assertEqual(len([entry for entry in commands if entry[1] == "send"]), 1)

    def test_cast_send_retry_budget_exhausted(self) -> None:
        def fake_run(cmd: list[str], text: bool = True, capture_output: bool = True, **kwargs):  # type: ignore[override]
            if cmd[1] == "nonce":
                return mock.Mock(returncode=0, stdout="0x3", stderr="")
            return mock.Mock(returncode=1, stdout="", stderr="nonce too low")

        with mock.patch.dict(rpc.os.environ, {"CLAWKALASH_TX_SEND_MAX_ATTEMPTS": "2"}, clear=False), mock.patch.object(
            rpc.subprocess, "run", side_effect=fake_run
        ), mock.patch.object(rpc.time, "sleep"):
            with self.assertRaises(TransportError) as ctx:
                _client().send_transaction(TO, "0xdeadbeef")
        self.assertIn("after 2 attempts", str(ctx.exception))

    def test_timeout_does_not_leak_secret(self) -> None:
        def fake_run(cmd, **kwargs):
            raise subprocess.TimeoutExpired(cmd, 30)

        with mock.patch.object(rpc.subprocess, "run", side_effect=fake_run):
            with self.assertRaises(SubprocessTimeout) as ctx:
                _client().sign_typed_data({"types": {}, "primaryType": "X", "domain": {}, "message": {}})
        self.assertNotIn(PRIVATE_KEY, str(ctx.exception))
        self.assertEqual(ctx.exception.kind, "cast_sign")

    def test_failed_receipt_status(self) -> None:
        with mock.patch.object(rpc.subprocess, "run", return_value=mock.Mock(returncode=0, stdout='{"status":"0x0"}', stderr="")):
            with self.assertRaises(TransportError):
                _client().wait_for_receipt(TX_HASH)
        with mock.patch.object(rpc.subprocess, "run", return_value=mock.Mock(returncode=0, stdout='{"status":"0x1"}', stderr="")):
            self.assertEqual(_client().wait_for_receipt(TX_HASH)["status"], "0x1")

    def test_sign_typed_data_passes_json_document(self) -> None:
        signature = "0x" + "1b" * 65
        with mock.patch.object(rpc.subprocess, "run", return_value=mock.Mock(returncode=0, stdout=signature + "\n", stderr="")) as run:
            result = _client().sign_typed_data({"types": {}, "primaryType": "X", "domain": {}, "message": {"a": 1}})
        self.assertEqual(result, signature)
        cmd = run.call_args[0][0]
        self.assertEqual(cmd[1:3], ["wallet", "sign"])
        self.assertEqual(json.loads(cmd[cmd.index("--data") + 1])["message"], {"a": 1})

    def test_missing_cast_binary(self) -> None:
        with mock.patch.object(rpc, "_find_cast_bin", return_value=None):
            with self.assertRaises(TransportError) as ctx:
                rpc.require_cast_bin()
        self.assertEqual(ctx.exception.code, "missing_dependency")


if __name__ == "__main__":
    unittest.main()
