import pathlib
import sys
import unittest

RUNTIME_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(RUNTIME_ROOT) not in sys.path:
    sys.path.insert(0, str(RUNTIME_ROOT))

from clawkalash import guard  # noqa: E402
from clawkalash.chains import NATIVE_TOKEN_ADDRESS, PERMIT2_ADDRESS  # noqa: E402
from clawkalash.errors import (  # noqa: E402
    AmountMismatch,
    ChainMismatch,
    SpenderMismatch,
    TokenMismatch,
    UnsupportedPayload,
    ValidationError,
    VerifyingContractMismatch,
    ZeroAddressRecipient,
)

USER = "0x1111111111111111111111111111111111111111"
USDC_BASE = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
OTHER_TOKEN = "0x4200000000000000000000000000000000000006"
ROUTER = "0x3a23F943181408EAC424116Af7b7790c94Cb97a5"


def _permit2_route(verifying_contract: str = PERMIT2_ADDRESS, token: str = USDC_BASE, amount: str = "1000000") -> dict:
    return {
        "quoteId": "q-1",
        "requestType": "SINGLE_OUTPUT_REQUEST",
        "signTypedData": {
            "domain": {"name": "Permit2", "chainId": 8453, "verifyingContract": verifying_contract},
            "types": {"PermitWitnessTransferFrom": [{"name": "permitted", "type": "TokenPermissions"}]},
            "values": {
                "permitted": {"token": token, "amount": amount},
                "spender": ROUTER,
                "nonce": "1",
                "deadline": "1700000000",
                "witness": {"user": USER, "receiver": USER},
            },
        },
    }


class ParsePayloadTests(unittest.TestCase):
    def test_sign_typed_data_parses_to_permit2(self) -> None:
        payload = guard.parse_signing_payload(_permit2_route())
        self.assertIsInstance(payload, guard.Permit2TypedData)
        self.assertEqual(payload.verifying_contract, PERMIT2_ADDRESS)
        self.assertEqual(payload.witness, {"user": USER, "receiver": USER})

    def test_tx_data_parses_to_native_transaction(self) -> None:
        payload = guard.parse_signing_payload({"txData": {"to": ROUTER, "value": "10", "data": "0x", "chainId": "0x2105"}})
        self.assertIsInstance(payload, guard.NativeTransaction)
        self.assertEqual(payload.chain_id, 8453)

    def test_bare_payloads_are_accepted(self) -> None:
        self.assertIsInstance(guard.parse_signing_payload({"to": ROUTER, "value": "1", "data": "0x"}), guard.NativeTransaction)
        bare = _permit2_route()["signTypedData"]
        self.assertIsInstance(guard.parse_signing_payload(bare), guard.Permit2TypedData)

    def test_unknown_shapes_are_unsupported(self) -> None:
        for raw in ({}, {"userOp": "0x1234"}, [], "0xdeadbeef", {"txData": {"to": ROUTER}}):
            with self.subTest(raw=raw):
                with self.assertRaises(UnsupportedPayload):
                    guard.parse_signing_payload(raw)

    def test_typed_data_without_permitted_is_unsupported(self) -> None:
        route = _permit2_route()
        del route["signTypedData"]["values"]["permitted"]
        with self.assertRaises(UnsupportedPayload):
            guard.parse_signing_payload(route)

    def test_to_eip712_fills_domain_type(self) -> None:
        payload = guard.parse_signing_payload(_permit2_route())
        doc = payload.to_eip712()
        self.assertEqual(doc["primaryType"], "PermitWitnessTransferFrom")
        self.assertEqual(
            [entry["name"] for entry in doc["types"]["EIP712Domain"]],
            ["name", "chainId", "verifyingContract"],
        )
        self.assertEqual(doc["message"]["permitted"]["amount"], "1000000")


class NativeTransactionTests(unittest.TestCase):
    def test_matching_transaction_passes(self) -> None:
        tx = guard.NativeTransaction(to=ROUTER, value="100000000000000000", data="0xabcdef", chain_id=8453)
        guard.validate_native_transaction(tx, "100000000000000000", 8453)

    def test_value_mismatch(self) -> None:
        tx = guard.NativeTransaction(to=ROUTER, value="100000000000000001", data="0x")
        with self.assertRaises(AmountMismatch) as ctx:
            guard.validate_native_transaction(tx, "100000000000000000", 8453)
        self.assertIn("does not match", str(ctx.exception))

    def test_zero_address_recipient(self) -> None:
        tx = guard.NativeTransaction(to="0x0000000000000000000000000000000000000000", value="5", data="0x")
        with self.assertRaises(ZeroAddressRecipient) as ctx:
            guard.validate_native_transaction(tx, "5", 1)
        self.assertIn("zero address", str(ctx.exception))

    def test_chain_mismatch(self) -> None:
        tx = guard.NativeTransaction(to=ROUTER, value="5", data="0x", chain_id=10)
        with self.assertRaises(ChainMismatch) as ctx:
            guard.validate_native_transaction(tx, "5", 8453)
        self.assertIn("does not match origin chain", str(ctx.exception))

    def test_missing_chain_id_is_not_checked(self) -> None:
        guard.validate_native_transaction(guard.NativeTransaction(to=ROUTER, value="5", data="0x"), "5", 8453)


class Permit2Tests(unittest.TestCase):
    def test_matching_request_passes(self) -> None:
        payload = guard.parse_signing_payload(_permit2_route())
        guard.validate_permit2_signature_request(payload, USDC_BASE.lower(), "1000000")

    def test_verifying_contract_casing_is_ignored(self) -> None:
        for verifying_contract in (PERMIT2_ADDRESS.lower(), "0x" + PERMIT2_ADDRESS[2:].upper()):
            with self.subTest(verifying_contract=verifying_contract):
                payload = guard.parse_signing_payload(_permit2_route(verifying_contract=verifying_contract))
                guard.validate_permit2_signature_request(payload, USDC_BASE, "1000000")

    def test_expected_token_casing_is_ignored(self) -> None:
        payload = guard.parse_signing_payload(_permit2_route(token=USDC_BASE.lower()))
        guard.validate_permit2_signature_request(payload, USDC_BASE, "1000000")
        guard.validate_permit2_signature_request(payload, "0x" + USDC_BASE[2:].upper(), "1000000")

    def test_wrong_verifying_contract(self) -> None:
        payload = guard.parse_signing_payload(_permit2_route(verifying_contract=ROUTER))
        with self.assertRaises(VerifyingContractMismatch) as ctx:
            guard.validate_permit2_signature_request(payload, USDC_BASE, "1000000")
        self.assertIn("verifyingContract mismatch", str(ctx.exception))

    def test_wrong_token(self) -> None:
        payload = guard.parse_signing_payload(_permit2_route(token=OTHER_TOKEN))
        with self.assertRaises(TokenMismatch) as ctx:
            guard.validate_permit2_signature_request(payload, USDC_BASE, "1000000")
        self.assertIn("Permit2 token mismatch", str(ctx.exception))

    def test_wrong_amount(self) -> None:
        payload = guard.parse_signing_payload(_permit2_route(amount="1000001"))
        with self.assertRaises(AmountMismatch) as ctx:
            guard.validate_permit2_signature_request(payload, USDC_BASE, "1000000")
        self.assertIn("Permit2 amount mismatch", str(ctx.exception))

    def test_checks_run_in_order(self) -> None:
        payload = guard.parse_signing_payload(_permit2_route(verifying_contract=ROUTER, token=OTHER_TOKEN, amount="1"))
        with self.assertRaises(VerifyingContractMismatch):
            guard.validate_permit2_signature_request(payload, USDC_BASE, "1000000")


class ApprovalDataTests(unittest.TestCase):
    def test_approval_to_permit2_passes(self) -> None:
        approval = guard.parse_approval_data({"tokenAddress": USDC_BASE, "spenderAddress": PERMIT2_ADDRESS, "amount": "1000000"})
        assert approval is not None
        guard.validate_approval_data(approval, USDC_BASE, "1000000")

    def test_approval_to_other_spender_is_rejected(self) -> None:
        approval = guard.ApprovalData(token_address=USDC_BASE, spender_address=ROUTER, amount="1000000")
        with self.assertRaises(SpenderMismatch):
            guard.validate_approval_data(approval, USDC_BASE, "1000000")

    def test_approval_below_amount_is_rejected(self) -> None:
        approval = guard.ApprovalData(token_address=USDC_BASE, spender_address=PERMIT2_ADDRESS, amount="999999")
        with self.assertRaises(AmountMismatch):
            guard.validate_approval_data(approval, USDC_BASE, "1000000")

    def test_missing_approval_data(self) -> None:
        self.assertIsNone(guard.parse_approval_data(None))
        with self.assertRaises(UnsupportedPayload):
            guard.parse_approval_data({"tokenAddress": USDC_BASE})


class CheckPayloadTests(unittest.TestCase):
    def _intent(self, token: str = USDC_BASE, amount: str = "1000000") -> guard.SwapIntent:
        return guard.SwapIntent(
            user_address=USER,
            origin_chain_id=8453,
            destination_chain_id=42161,
            input_token_address=token,
            output_token_address=OTHER_TOKEN,
            input_amount_base_units=amount,
        )

    def test_receiver_defaults_to_user(self) -> None:
        self.assertEqual(self._intent().receiver_address, USER)

    def test_dispatches_permit2(self) -> None:
        guard.check_payload(self._intent(), guard.parse_signing_payload(_permit2_route()))
        with self.assertRaises(AmountMismatch):
            guard.check_payload(self._intent(amount="2000000"), guard.parse_signing_payload(_permit2_route()))

    def test_dispatches_native(self) -> None:
        intent = self._intent(token=NATIVE_TOKEN_ADDRESS, amount="100")
        guard.check_payload(intent, guard.NativeTransaction(to=ROUTER, value="100", data="0x", chain_id=8453))
        with self.assertRaises(ChainMismatch):
            guard.check_payload(intent, guard.NativeTransaction(to=ROUTER, value="100", data="0x", chain_id=1))

    def test_approval_is_checked_with_payload(self) -> None:
        approval = guard.ApprovalData(token_address=USDC_BASE, spender_address=ROUTER, amount="1000000")
        with self.assertRaises(ValidationError):
            guard.check_payload(self._intent(), guard.parse_signing_payload(_permit2_route()), approval)

    def test_unknown_payload_type_is_rejected(self) -> None:
        with self.assertRaises(UnsupportedPayload):
            guard.check_payload(self._intent(), {"to": ROUTER})  # type: ignore[arg-type]


if __name__ == "__main__":
    unittest.main()
