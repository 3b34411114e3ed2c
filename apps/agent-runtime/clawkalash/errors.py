"""Exception taxonomy for the ClawKalash runtime.

Every runtime failure carries a stable ``code``, an optional ``action_hint`` and
a ``details`` mapping so the CLI can render it as a JSON failure envelope.
"""

from __future__ import annotations

from typing import Any


class ClawkalashError(Exception):
    """Base class for runtime failures."""

    code = "runtime_error"

    def __init__(
        self,
        message: str,
        action_hint: str | None = None,
        details: dict[str, Any] | None = None,
        code: str | None = None,
    ):
        super().__init__(message)
        if code:
            self.code = code
        self.action_hint = action_hint
        self.details = details or {}


class ConfigError(ClawkalashError):
    """Environment configuration is invalid."""

    code = "invalid_env"


class WalletStoreError(ClawkalashError):
    """Wallet store is unavailable or invalid."""

    code = "wallet_store_error"


class WalletSecurityError(ClawkalashError):
    """Wallet security checks failed."""

    code = "unsafe_permissions"


class WalletPassphraseError(ClawkalashError):
    """Wallet passphrase input is unavailable or invalid."""

    code = "non_interactive"


class AuthenticationError(ClawkalashError):
    """Wrong password or tampered ciphertext."""

    code = "authentication_failed"


class AmountError(ClawkalashError):
    code = "invalid_amount"


class PrecisionError(AmountError):
    """Amount has more fractional digits than the token supports."""

    code = "precision_error"


class InvalidAmountError(AmountError):
    """Amount is not a decimal number."""

    code = "invalid_amount"


class ValidationError(ClawkalashError):
    """An aggregator payload does not match the user's intent.

    Never retried and never downgraded to a warning.
    """

    code = "validation_failed"


class AmountMismatch(ValidationError):
    code = "amount_mismatch"


class ZeroAddressRecipient(ValidationError):
    code = "zero_address_recipient"


class ChainMismatch(ValidationError):
    code = "chain_mismatch"


class VerifyingContractMismatch(ValidationError):
    code = "verifying_contract_mismatch"


class TokenMismatch(ValidationError):
    code = "token_mismatch"


class SpenderMismatch(ValidationError):
    code = "spender_mismatch"


class UnsupportedPayload(ValidationError):
    code = "unsupported_payload"


class TransportError(ClawkalashError):
    """RPC, subprocess or HTTP transport failed."""

    code = "transport_error"


class SubprocessTimeout(TransportError):
    """A subprocess operation timed out (cast call/receipt/send/etc)."""

    code = "timeout"

    def __init__(self, kind: str, timeout_sec: int, cmd: list[str]):
        # Never echo the command line: it may carry --private-key or --mnemonic.
        super().__init__(f"Timed out after {timeout_sec}s running cast {cmd[1] if len(cmd) > 1 else ''}".rstrip())
        self.kind = kind
        self.timeout_sec = timeout_sec


class AggregatorError(TransportError):
    """The swap aggregator answered with an unsuccessful payload."""

    code = "aggregator_error"


class BridgeError(ClawkalashError):
    """A bridge transfer terminated in the failed state."""

    code = "bridge_failed"


class InsufficientFundsError(BridgeError):
    code = "insufficient_funds"


class ApprovalFailed(BridgeError):
    code = "approval_failed"


class BurnFailed(BridgeError):
    code = "burn_failed"


class AttestationTimeout(BridgeError):
    code = "attestation_timeout"


class MintFailed(BridgeError):
    code = "mint_failed"
