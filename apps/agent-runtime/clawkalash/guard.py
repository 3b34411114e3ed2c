"""Intent guard: proves an aggregator payload matches the user's intent before signing.

The aggregator is an untrusted network service. Every payload it returns is
parsed into exactly one of two known shapes and checked field by field against
the intent the user declared; anything unexpected is rejected. Nothing in this
module performs I/O or mutates its inputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from .chains import PERMIT2_ADDRESS, ZERO_ADDRESS, same_address
from .errors import (
    AmountMismatch,
    ChainMismatch,
    SpenderMismatch,
    TokenMismatch,
    UnsupportedPayload,
    VerifyingContractMismatch,
    ZeroAddressRecipient,
)


@dataclass(frozen=True)
class SwapIntent:
    user_address: str
    origin_chain_id: int
    destination_chain_id: int
    input_token_address: str
    output_token_address: str
    input_amount_base_units: str
    receiver_address: str = ""

    def __post_init__(self) -> None:
        if not self.receiver_address:
            object.__setattr__(self, "receiver_address", self.user_address)


@dataclass(frozen=True)
class NativeTransaction:
    to: str
    value: str
    data: str
    chain_id: int | None = None


@dataclass(frozen=True)
class Permit2TypedData:
    domain: dict[str, Any]
    values: dict[str, Any]
    types: dict[str, Any] = field(default_factory=dict)
    primary_type: str | None = None

    @property
    def verifying_contract(self) -> str:
        return str(self.domain.get("verifyingContract") or "")

    @property
    def permitted(self) -> dict[str, Any]:
        permitted = self.values.get("permitted")
        return permitted if isinstance(permitted, dict) else {}

    @property
    def witness(self) -> dict[str, Any] | None:
        witness = self.values.get("witness")
        return witness if isinstance(witness, dict) else None

    def to_eip712(self) -> dict[str, Any]:
        """Typed-data document in the shape ``cast wallet sign --data`` expects."""
        types = dict(self.types)
        primary_type = self.primary_type or next((name for name in types if name != "EIP712Domain"), "")
        if "EIP712Domain" not in types:
            types["EIP712Domain"] = [
                {"name": name, "type": kind}
                for name, kind in (
                    ("name", "string"),
                    ("version", "string"),
                    ("chainId", "uint256"),
                    ("verifyingContract", "address"),
                )
                if name in self.domain
            ]
        return {"types": types, "primaryType": primary_type, "domain": self.domain, "message": self.values}


SigningPayload = Union[NativeTransaction, Permit2TypedData]


@dataclass(frozen=True)
class ApprovalData:
    token_address: str
    spender_address: str
    amount: str


def _parse_chain_id(raw: Any) -> int | None:
    if raw is None or raw == "":
        return None
    try:
        if isinstance(raw, str) and raw.lower().startswith("0x"):
            return int(raw, 16)
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise UnsupportedPayload(f"Transaction chainId '{raw}' is not an integer.") from exc


def _native_from_dict(raw: dict[str, Any]) -> NativeTransaction:
    missing = [key for key in ("to", "value", "data") if key not in raw]
    if missing:
        raise UnsupportedPayload(f"Transaction payload missing fields: {', '.join(missing)}")
    return NativeTransaction(
        to=str(raw["to"]),
        value=str(raw["value"]),
        data=str(raw["data"]),
        chain_id=_parse_chain_id(raw.get("chainId")),
    )


def _permit2_from_dict(raw: dict[str, Any]) -> Permit2TypedData:
    domain = raw.get("domain")
    values = raw.get("values")
    if not isinstance(domain, dict) or not isinstance(values, dict):
        raise UnsupportedPayload("Typed-data payload must carry domain and values objects.")
    permitted = values.get("permitted")
    if not isinstance(permitted, dict) or "token" not in permitted or "amount" not in permitted:
        raise UnsupportedPayload("Typed-data payload is missing values.permitted.token/amount.")
    types = raw.get("types")
    return Permit2TypedData(
        domain=domain,
        values=values,
        types=types if isinstance(types, dict) else {},
        primary_type=raw.get("primaryType") if isinstance(raw.get("primaryType"), str) else None,
    )


def parse_signing_payload(raw: Any) -> SigningPayload:
    """Build exactly one payload variant from an aggregator route or a bare payload."""
    if not isinstance(raw, dict):
        raise UnsupportedPayload("Aggregator payload must be a JSON object.")
    typed = raw.get("signTypedData")
    tx = raw.get("txData")
    if isinstance(typed, dict):
        return _permit2_from_dict(typed)
    if isinstance(tx, dict):
        return _native_from_dict(tx)
    if "domain" in raw and "values" in raw:
        return _permit2_from_dict(raw)
    if "to" in raw and "value" in raw:
        return _native_from_dict(raw)
    raise UnsupportedPayload(
        "Aggregator returned neither a transaction nor a typed-data signature request.",
        "Do not sign. Request a new quote.",
        {"keys": sorted(str(k) for k in raw.keys())},
    )


def parse_approval_data(raw: Any) -> ApprovalData | None:
    if not isinstance(raw, dict):
        return None
    try:
        return ApprovalData(
            token_address=str(raw["tokenAddress"]),
            spender_address=str(raw["spenderAddress"]),
            amount=str(raw["amount"]),
        )
    except KeyError as exc:
        raise UnsupportedPayload(f"Approval payload missing field {exc}.") from exc


def validate_native_transaction(tx: NativeTransaction, expected_amount_base_units: str, expected_origin_chain_id: int) -> None:
    if str(tx.value) != str(expected_amount_base_units):
        raise AmountMismatch(
            f"txData.value ({tx.value}) does not match expected amount ({expected_amount_base_units})",
            details={"value": tx.value, "expected": str(expected_amount_base_units)},
        )
    if same_address(tx.to, ZERO_ADDRESS):
        raise ZeroAddressRecipient("txData.to is the zero address", details={"to": tx.to})
    if tx.chain_id is not None and int(tx.chain_id) != int(expected_origin_chain_id):
        raise ChainMismatch(
            f"txData.chainId ({tx.chain_id}) does not match origin chain ({expected_origin_chain_id})",
            details={"chainId": tx.chain_id, "expected": expected_origin_chain_id},
        )


def validate_permit2_signature_request(
    req: Permit2TypedData, expected_token_address: str, expected_amount_base_units: str
) -> None:
    if not same_address(req.verifying_contract, PERMIT2_ADDRESS):
        raise VerifyingContractMismatch(
            f"verifyingContract mismatch: expected {PERMIT2_ADDRESS}, got {req.verifying_contract or 'none'}",
            "Do not sign. The signature would authorize a different spender.",
            {"verifyingContract": req.verifying_contract, "expected": PERMIT2_ADDRESS},
        )
    token = str(req.permitted.get("token", ""))
    if not same_address(token, expected_token_address):
        raise TokenMismatch(
            f"Permit2 token mismatch: expected {expected_token_address}, got {token}",
            details={"token": token, "expected": expected_token_address},
        )
    amount = str(req.permitted.get("amount", ""))
    if amount != str(expected_amount_base_units):
        raise AmountMismatch(
            f"Permit2 amount mismatch: expected {expected_amount_base_units}, got {amount}",
            details={"amount": amount, "expected": str(expected_amount_base_units)},
        )


def validate_approval_data(approval: ApprovalData, expected_token_address: str, expected_amount_base_units: str) -> None:
    if not same_address(approval.token_address, expected_token_address):
        raise TokenMismatch(
            f"Approval token mismatch: expected {expected_token_address}, got {approval.token_address}",
            details={"token": approval.token_address, "expected": expected_token_address},
        )
    if not same_address(approval.spender_address, PERMIT2_ADDRESS):
        raise SpenderMismatch(
            f"Approval spender mismatch: expected {PERMIT2_ADDRESS}, got {approval.spender_address}",
            "Do not approve. Only the Permit2 contract may be granted an allowance.",
            {"spender": approval.spender_address, "expected": PERMIT2_ADDRESS},
        )
    try:
        covers = int(approval.amount) >= int(expected_amount_base_units)
    except ValueError:
        covers = False
    if not covers:
        raise AmountMismatch(
            f"Approval amount ({approval.amount}) does not cover expected amount ({expected_amount_base_units})",
            details={"amount": approval.amount, "expected": str(expected_amount_base_units)},
        )


def check_payload(intent: SwapIntent, payload: SigningPayload, approval: ApprovalData | None = None) -> None:
    """Single checkpoint between network data and anything the wallet signs or sends."""
    if isinstance(payload, NativeTransaction):
        validate_native_transaction(payload, intent.input_amount_base_units, intent.origin_chain_id)
    elif isinstance(payload, Permit2TypedData):
        validate_permit2_signature_request(payload, intent.input_token_address, intent.input_amount_base_units)
    else:
        raise UnsupportedPayload(f"Unsupported payload type: {type(payload).__name__}")
    if approval is not None:
        validate_approval_data(approval, intent.input_token_address, intent.input_amount_base_units)
