"""Cross-chain USDC transfer over CCTP v2: burn, wait for attestation, mint.

``BridgeStateMachine.run`` drives one transfer strictly in state order and
yields a ``BridgeEvent`` for every state it enters, so callers decide how to
render progress. Phases never run concurrently and a failed phase is never
retried here: the transfer terminates in ``FAILED`` carrying the reason and the
last transaction hash needed for manual recovery.
"""

from __future__ import annotations

import json
import logging
import pathlib
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterator

from .amounts import format_units, parse_amount
from .chains import (
    CCTP_MAX_FEE_BASE_UNITS,
    FINALITY_THRESHOLD_FAST,
    USDC_DECIMALS,
    ZERO_BYTES32,
    ChainConfig,
)
from .errors import (
    ApprovalFailed,
    AttestationTimeout,
    BridgeError,
    BurnFailed,
    ClawkalashError,
    ConfigError,
    InsufficientFundsError,
    InvalidAmountError,
    MintFailed,
    TransportError,
    WalletStoreError,
)
from .secret_store import is_hex_address, write_private_json

logger = logging.getLogger(__name__)

ATTESTATION_POLL_INTERVAL_SEC = 5
ATTESTATION_MAX_ATTEMPTS = 60
# Approve a multiple of the amount so later transfers can skip the approval.
APPROVAL_MULTIPLIER = 10

APPROVE_SIGNATURE = "approve(address,uint256)"
DEPOSIT_FOR_BURN_SIGNATURE = "depositForBurn(uint256,uint32,bytes32,address,bytes32,uint256,uint32)"
RECEIVE_MESSAGE_SIGNATURE = "receiveMessage(bytes,bytes)"


class BridgeState(str, Enum):
    CHECKING_BALANCE = "checking_balance"
    APPROVING = "approving"
    BURNING = "burning"
    AWAITING_ATTESTATION = "awaiting_attestation"
    MINTING = "minting"
    COMPLETE = "complete"
    FAILED = "failed"


class FailureReason(str, Enum):
    INSUFFICIENT_FUNDS = "insufficient_funds"
    APPROVAL_FAILED = "approval_failed"
    BURN_FAILED = "burn_failed"
    ATTESTATION_TIMEOUT = "attestation_timeout"
    MINT_FAILED = "mint_failed"
    TRANSPORT_ERROR = "transport_error"


_FAILURE_ERRORS: dict[FailureReason, type[ClawkalashError]] = {
    FailureReason.INSUFFICIENT_FUNDS: InsufficientFundsError,
    FailureReason.APPROVAL_FAILED: ApprovalFailed,
    FailureReason.BURN_FAILED: BurnFailed,
    FailureReason.ATTESTATION_TIMEOUT: AttestationTimeout,
    FailureReason.MINT_FAILED: MintFailed,
    FailureReason.TRANSPORT_ERROR: TransportError,
}

_PHASE_ORDER = (
    BridgeState.CHECKING_BALANCE,
    BridgeState.APPROVING,
    BridgeState.BURNING,
    BridgeState.AWAITING_ATTESTATION,
    BridgeState.MINTING,
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def address_to_bytes32(address: str) -> str:
    if not is_hex_address(address):
        raise ClawkalashError(f"Invalid recipient address '{address}'.", code="invalid_address")
    return "0x" + "0" * 24 + address[2:].lower()


@dataclass
class BridgeTransfer:
    source_chain: str
    dest_chain: str
    amount_base_units: int
    recipient_address: str
    state: BridgeState = BridgeState.CHECKING_BALANCE
    approval_tx_hash: str | None = None
    burn_tx_hash: str | None = None
    attestation_message: str | None = None
    attestation_signature: str | None = None
    mint_tx_hash: str | None = None
    failure_reason: FailureReason | None = None
    failure_message: str | None = None
    updated_at: str = field(default_factory=utc_now)

    @property
    def net_amount_base_units(self) -> int:
        return self.amount_base_units - CCTP_MAX_FEE_BASE_UNITS

    @property
    def last_tx_hash(self) -> str | None:
        return self.mint_tx_hash or self.burn_tx_hash or self.approval_tx_hash

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceChain": self.source_chain,
            "destChain": self.dest_chain,
            "amountBaseUnits": str(self.amount_base_units),
            "recipientAddress": self.recipient_address,
            "state": self.state.value,
            "approvalTxHash": self.approval_tx_hash,
            "burnTxHash": self.burn_tx_hash,
            "attestationMessage": self.attestation_message,
            "attestationSignature": self.attestation_signature,
            "mintTxHash": self.mint_tx_hash,
            "failureReason": self.failure_reason.value if self.failure_reason else None,
            "failureMessage": self.failure_message,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BridgeTransfer":
        try:
            reason = data.get("failureReason")
            return cls(
                source_chain=str(data["sourceChain"]),
                dest_chain=str(data["destChain"]),
                amount_base_units=int(data["amountBaseUnits"]),
                recipient_address=str(data["recipientAddress"]),
                state=BridgeState(data["state"]),
                approval_tx_hash=data.get("approvalTxHash"),
                burn_tx_hash=data.get("burnTxHash"),
                attestation_message=data.get("attestationMessage"),
                attestation_signature=data.get("attestationSignature"),
                mint_tx_hash=data.get("mintTxHash"),
                failure_reason=FailureReason(reason) if reason else None,
                failure_message=data.get("failureMessage"),
                updated_at=str(data.get("updatedAt") or utc_now()),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise WalletStoreError(f"Transfer record is invalid: {exc}") from exc


@dataclass(frozen=True)
class BridgeEvent:
    state: BridgeState
    message: str
    burn_tx_hash: str | None = None
    mint_tx_hash: str | None = None
    reason: FailureReason | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"state": self.state.value, "message": self.message}
        if self.burn_tx_hash:
            payload["burnTxHash"] = self.burn_tx_hash
        if self.mint_tx_hash:
            payload["mintTxHash"] = self.mint_tx_hash
        if self.reason:
            payload["reason"] = self.reason.value
        if self.details:
            payload["details"] = self.details
        return payload


class TransferJournal:
    """Persists in-flight transfers keyed by burn transaction hash."""

    def __init__(self, directory: pathlib.Path):
        self.directory = directory

    def path_for(self, burn_tx_hash: str) -> pathlib.Path:
        if not re.fullmatch(r"0x[a-fA-F0-9]{64}", burn_tx_hash or ""):
            raise WalletStoreError(f"Invalid burn transaction hash '{burn_tx_hash}'.", code="invalid_input")
        return self.directory / f"{burn_tx_hash.lower()}.json"

    def save(self, transfer: BridgeTransfer) -> None:
        if not transfer.burn_tx_hash:
            return
        transfer.updated_at = utc_now()
        write_private_json(self.path_for(transfer.burn_tx_hash), transfer.to_dict())

    def load(self, burn_tx_hash: str) -> BridgeTransfer:
        path = self.path_for(burn_tx_hash)
        if not path.exists():
            raise WalletStoreError(
                f"No journaled transfer for burn transaction {burn_tx_hash}.",
                "Check the burn hash or the CLAWKALASH_HOME directory.",
                code="transfer_not_found",
            )
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise WalletStoreError(f"Invalid JSON in '{path}': {exc}") from exc
        if not isinstance(data, dict):
            raise WalletStoreError(f"Transfer record '{path}' must be a JSON object.")
        return BridgeTransfer.from_dict(data)

    def list_transfers(self) -> list[BridgeTransfer]:
        if not self.directory.is_dir():
            return []
        return [self.load(path.stem) for path in sorted(self.directory.glob("0x*.json"))]


def _check_route(source: ChainConfig, dest: ChainConfig) -> None:
    if source.key == dest.key:
        raise ConfigError("Source and destination chains must differ.", code="invalid_route")
    if source.network != dest.network:
        raise ConfigError(
            f"Cannot bridge between {source.network} chain '{source.key}' and {dest.network} chain '{dest.key}'.",
            code="invalid_route",
        )


def new_transfer(source: ChainConfig, dest: ChainConfig, amount: str, recipient: str) -> BridgeTransfer:
    _check_route(source, dest)
    amount_base_units = int(parse_amount(amount, USDC_DECIMALS))
    if amount_base_units <= CCTP_MAX_FEE_BASE_UNITS:
        raise InvalidAmountError(
            f"Amount must exceed the max relayer fee of {format_units(CCTP_MAX_FEE_BASE_UNITS, USDC_DECIMALS)} USDC.",
            details={"amountBaseUnits": str(amount_base_units), "maxFeeBaseUnits": str(CCTP_MAX_FEE_BASE_UNITS)},
        )
    address_to_bytes32(recipient)
    return BridgeTransfer(
        source_chain=source.key,
        dest_chain=dest.key,
        amount_base_units=amount_base_units,
        recipient_address=recipient,
    )


def quote_transfer(source: ChainConfig, dest: ChainConfig, amount: str) -> dict[str, Any]:
    _check_route(source, dest)
    amount_base_units = int(parse_amount(amount, USDC_DECIMALS))
    received = max(amount_base_units - CCTP_MAX_FEE_BASE_UNITS, 0)
    return {
        "sourceChain": source.name,
        "destChain": dest.name,
        "amount": format_units(amount_base_units, USDC_DECIMALS),
        "amountBaseUnits": str(amount_base_units),
        "maxFee": format_units(CCTP_MAX_FEE_BASE_UNITS, USDC_DECIMALS),
        "estimatedReceived": format_units(received, USDC_DECIMALS),
        "estimatedTime": "1-2 minutes (Fast Transfer)",
    }


def rewind_for_resume(transfer: BridgeTransfer) -> BridgeTransfer:
    """Point a journaled transfer back at the first phase it still needs."""
    if transfer.state == BridgeState.COMPLETE:
        raise WalletStoreError("Transfer is already complete.", code="transfer_complete")
    if transfer.attestation_message and transfer.attestation_signature:
        transfer.state = BridgeState.MINTING
    elif transfer.burn_tx_hash:
        transfer.state = BridgeState.AWAITING_ATTESTATION
    else:
        raise WalletStoreError("Transfer has no confirmed burn to resume from.", code="not_resumable")
    transfer.failure_reason = None
    transfer.failure_message = None
    return transfer


class _PhaseFailure(Exception):
    def __init__(self, reason: FailureReason, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.reason = reason
        self.details = details or {}


class BridgeStateMachine:
    """Drives a single transfer against two chain clients and one attestation client.

    Chain clients expose ``address``, ``token_balance``, ``token_allowance``,
    ``encode_call``, ``send_transaction`` and ``wait_for_receipt``; the
    attestation client exposes ``fetch_messages(domain, burn_tx_hash)``.
    ``sleep`` is the only clock the attestation wait uses.
    """

    def __init__(
        self,
        transfer: BridgeTransfer,
        source: ChainConfig,
        dest: ChainConfig,
        source_client: Any,
        dest_client: Any,
        attestation_client: Any,
        *,
        sleep: Callable[[float], None] = time.sleep,
        journal: TransferJournal | None = None,
        poll_interval_sec: float = ATTESTATION_POLL_INTERVAL_SEC,
        max_attestation_attempts: int = ATTESTATION_MAX_ATTEMPTS,
    ):
        if transfer.source_chain != source.key or transfer.dest_chain != dest.key:
            raise ConfigError("Transfer chains do not match the supplied chain configs.", code="invalid_route")
        _check_route(source, dest)
        self.transfer = transfer
        self.source = source
        self.dest = dest
        self.source_client = source_client
        self.dest_client = dest_client
        self.attestation_client = attestation_client
        self.sleep = sleep
        self.journal = journal
        self.poll_interval_sec = poll_interval_sec
        self.max_attestation_attempts = max_attestation_attempts

    def run(self) -> Iterator[BridgeEvent]:
        transfer = self.transfer
        if transfer.state not in _PHASE_ORDER:
            return
        phases: dict[BridgeState, Callable[[], None]] = {
            BridgeState.CHECKING_BALANCE: self._check_balance,
            BridgeState.APPROVING: self._approve,
            BridgeState.BURNING: self._burn,
            BridgeState.AWAITING_ATTESTATION: self._await_attestation,
            BridgeState.MINTING: self._mint,
        }
        start = _PHASE_ORDER.index(transfer.state)
        for state in _PHASE_ORDER[start:]:
            yield self._enter(state)
            try:
                phases[state]()
            except _PhaseFailure as failure:
                yield self._fail(failure)
                return

        transfer.state = BridgeState.COMPLETE
        self._checkpoint()
        logger.info(f"Bridge complete: burn {transfer.burn_tx_hash}, mint {transfer.mint_tx_hash}")
        yield BridgeEvent(
            state=BridgeState.COMPLETE,
            message="Bridge complete.",
            burn_tx_hash=transfer.burn_tx_hash,
            mint_tx_hash=transfer.mint_tx_hash,
            details={
                "amountReceived": format_units(transfer.net_amount_base_units, USDC_DECIMALS),
                "amountReceivedBaseUnits": str(transfer.net_amount_base_units),
            },
        )

    def execute(self) -> BridgeTransfer:
        """Run to a terminal state; raise the phase's ``BridgeError`` on failure."""
        for _ in self.run():
            pass
        error = self.failure_error()
        if error is not None:
            raise error
        return self.transfer

    def failure_error(self) -> ClawkalashError | None:
        transfer = self.transfer
        if transfer.state != BridgeState.FAILED:
            return None
        reason = transfer.failure_reason or FailureReason.TRANSPORT_ERROR
        error_cls = _FAILURE_ERRORS.get(reason, BridgeError)
        return error_cls(
            transfer.failure_message or f"Bridge failed: {reason.value}",
            _action_hint(transfer),
            self._failure_details(),
        )

    # Phases

    def _enter(self, state: BridgeState) -> BridgeEvent:
        self.transfer.state = state
        self.transfer.updated_at = utc_now()
        logger.debug(f"Bridge entering {state.value}")
        return BridgeEvent(
            state=state,
            message=_STATE_MESSAGES[state],
            burn_tx_hash=self.transfer.burn_tx_hash,
            mint_tx_hash=self.transfer.mint_tx_hash,
        )

    def _fail(self, failure: _PhaseFailure) -> BridgeEvent:
        transfer = self.transfer
        transfer.state = BridgeState.FAILED
        transfer.failure_reason = failure.reason
        transfer.failure_message = str(failure)
        self._checkpoint()
        logger.error(f"Bridge failed ({failure.reason.value}): {failure}")
        return BridgeEvent(
            state=BridgeState.FAILED,
            message=str(failure),
            burn_tx_hash=transfer.burn_tx_hash,
            mint_tx_hash=transfer.mint_tx_hash,
            reason=failure.reason,
            details={**failure.details, **self._failure_details()},
        )

    def _failure_details(self) -> dict[str, Any]:
        transfer = self.transfer
        details: dict[str, Any] = {"sourceChain": transfer.source_chain, "destChain": transfer.dest_chain}
        if transfer.failure_reason:
            details["reason"] = transfer.failure_reason.value
        if transfer.approval_tx_hash:
            details["approvalTxHash"] = transfer.approval_tx_hash
        if transfer.burn_tx_hash:
            details["burnTxHash"] = transfer.burn_tx_hash
        if transfer.mint_tx_hash:
            details["mintTxHash"] = transfer.mint_tx_hash
        if transfer.last_tx_hash:
            details["lastTxHash"] = transfer.last_tx_hash
        return details

    def _checkpoint(self) -> None:
        if self.journal is not None:
            self.journal.save(self.transfer)

    def _check_balance(self) -> None:
        amount = self.transfer.amount_base_units
        try:
            balance = int(self.source_client.token_balance(self.source.usdc, self.source_client.address))
        except ClawkalashError as exc:
            raise _PhaseFailure(FailureReason.TRANSPORT_ERROR, f"Unable to read USDC balance: {exc}") from exc
        if balance < amount:
            raise _PhaseFailure(
                FailureReason.INSUFFICIENT_FUNDS,
                f"Insufficient USDC. Have: {format_units(balance, USDC_DECIMALS)}, Need: {format_units(amount, USDC_DECIMALS)}",
                {"balanceBaseUnits": str(balance), "amountBaseUnits": str(amount)},
            )

    def _approve(self) -> None:
        amount = self.transfer.amount_base_units
        spender = self.source.contracts.token_messenger
        try:
            allowance = int(self.source_client.token_allowance(self.source.usdc, self.source_client.address, spender))
            if allowance >= amount:
                logger.info("Allowance already covers transfer; skipping approval")
                return
            data = self.source_client.encode_call(APPROVE_SIGNATURE, [spender, str(amount * APPROVAL_MULTIPLIER)])
            tx_hash = self.source_client.send_transaction(self.source.usdc, data)
            self.transfer.approval_tx_hash = tx_hash
            self.source_client.wait_for_receipt(tx_hash)
        except ClawkalashError as exc:
            raise _PhaseFailure(FailureReason.APPROVAL_FAILED, f"USDC approval failed: {exc}") from exc

    def _burn(self) -> None:
        transfer = self.transfer
        try:
            data = self.source_client.encode_call(
                DEPOSIT_FOR_BURN_SIGNATURE,
                [
                    str(transfer.amount_base_units),
                    str(self.dest.cctp_domain),
                    address_to_bytes32(transfer.recipient_address),
                    self.source.usdc,
                    ZERO_BYTES32,
                    str(CCTP_MAX_FEE_BASE_UNITS),
                    str(FINALITY_THRESHOLD_FAST),
                ],
            )
            tx_hash = self.source_client.send_transaction(self.source.contracts.token_messenger, data)
            transfer.burn_tx_hash = tx_hash
            self.source_client.wait_for_receipt(tx_hash)
        except ClawkalashError as exc:
            raise _PhaseFailure(FailureReason.BURN_FAILED, f"USDC burn failed: {exc}") from exc
        self._checkpoint()

    def _await_attestation(self) -> None:
        transfer = self.transfer
        burn_tx_hash = transfer.burn_tx_hash or ""
        for attempt in range(1, self.max_attestation_attempts + 1):
            try:
                messages = self.attestation_client.fetch_messages(self.source.cctp_domain, burn_tx_hash)
            except ClawkalashError as exc:
                logger.debug(f"Attestation poll {attempt} failed: {exc}")
                messages = []
            if messages and messages[0].get("status") == "complete":
                transfer.attestation_message = str(messages[0].get("message"))
                transfer.attestation_signature = str(messages[0].get("attestation"))
                self._checkpoint()
                return
            if attempt % 6 == 0:
                logger.info(f"Still waiting for attestation ({int(attempt * self.poll_interval_sec)}s)")
            self.sleep(self.poll_interval_sec)

        total = int(self.max_attestation_attempts * self.poll_interval_sec)
        raise _PhaseFailure(
            FailureReason.ATTESTATION_TIMEOUT,
            f"Attestation timeout after {total}s. TX: {burn_tx_hash}",
            {"attempts": self.max_attestation_attempts},
        )

    def _mint(self) -> None:
        transfer = self.transfer
        try:
            data = self.dest_client.encode_call(
                RECEIVE_MESSAGE_SIGNATURE,
                [str(transfer.attestation_message), str(transfer.attestation_signature)],
            )
            tx_hash = self.dest_client.send_transaction(self.dest.contracts.message_transmitter, data)
            transfer.mint_tx_hash = tx_hash
            self.dest_client.wait_for_receipt(tx_hash)
        except ClawkalashError as exc:
            raise _PhaseFailure(FailureReason.MINT_FAILED, f"USDC mint failed: {exc}") from exc


_STATE_MESSAGES = {
    BridgeState.CHECKING_BALANCE: "Checking USDC balance.",
    BridgeState.APPROVING: "Approving USDC.",
    BridgeState.BURNING: "Burning USDC on source chain.",
    BridgeState.AWAITING_ATTESTATION: "Waiting for attestation.",
    BridgeState.MINTING: "Minting USDC on destination chain.",
}


def _action_hint(transfer: BridgeTransfer) -> str:
    reason = transfer.failure_reason
    if reason == FailureReason.INSUFFICIENT_FUNDS:
        return "Fund the wallet with USDC on the source chain and retry."
    if transfer.burn_tx_hash:
        # A broadcast burn may have landed; restarting could burn twice.
        return f"Burn was broadcast. Resume with: clawkalash-agent bridge resume --burn-tx {transfer.burn_tx_hash} --json."
    return "Check RPC connectivity and wallet gas balance, then restart the transfer."
