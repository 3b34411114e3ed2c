"""Chain RPC adapter built on Foundry's ``cast`` binary.

``CastChainClient`` is the chain collaborator the bridge state machine and the
swap command consume: ERC-20 reads, calldata encoding, transaction send with
nonce/gas retry, receipt waits and typed-data signing. Every call blocks until
cast returns or its own timeout fires.
"""

from __future__ import annotations

import json
import logging
import os
import pathlib
import re
import shutil
import subprocess
import time
from dataclasses import dataclass
from typing import Any

from . import config
from .errors import SubprocessTimeout, TransportError, WalletStoreError
from .secret_store import derive_address, is_hex_address, is_mnemonic, normalize_private_key

logger = logging.getLogger(__name__)


def _run_subprocess(cmd: list[str], *, timeout_sec: int, kind: str) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(cmd, text=True, capture_output=True, timeout=timeout_sec)
    except subprocess.TimeoutExpired as exc:
        raise SubprocessTimeout(kind=kind, timeout_sec=timeout_sec, cmd=cmd) from exc


def _find_cast_bin() -> str | None:
    # Service environments often run with a minimal PATH; Foundry installs to
    # ~/.foundry/bin, so fall back to that location when PATH has no cast.
    candidates: list[str] = []
    explicit = (os.environ.get("CLAWKALASH_CAST_BIN") or "").strip()
    if explicit:
        candidates.append(explicit)

    foundry_bin = (os.environ.get("FOUNDRY_BIN") or "").strip()
    if foundry_bin:
        candidates.append(str(pathlib.Path(foundry_bin) / "cast"))

    which_cast = shutil.which("cast")
    if which_cast:
        candidates.append(which_cast)

    candidates.append(str(pathlib.Path.home() / ".foundry" / "bin" / "cast"))

    for entry in candidates:
        path = pathlib.Path(entry).expanduser()
        if path.is_file() and os.access(path, os.X_OK):
            return str(path)
    return None


def require_cast_bin() -> str:
    cast_bin = _find_cast_bin()
    if not cast_bin:
        raise TransportError("Missing dependency: cast.", "Install Foundry (https://getfoundry.sh) or set CLAWKALASH_CAST_BIN.", code="missing_dependency")
    return cast_bin


def _proc_error(proc: subprocess.CompletedProcess[str], fallback: str) -> str:
    stderr = (proc.stderr or "").strip()
    stdout = (proc.stdout or "").strip()
    return stderr or stdout or fallback


def parse_uint_text(value: str) -> int:
    raw = value.strip()
    if re.fullmatch(r"[0-9]+", raw):
        return int(raw)
    if re.fullmatch(r"0x[a-fA-F0-9]+", raw):
        return int(raw, 16)
    # cast outputs sometimes include a scientific-notation hint in brackets, e.g.
    # "20000000000000000000000 [2e22]". Accept the leading integer/hex portion.
    prefix = re.match(r"^(0x[a-fA-F0-9]+|[0-9]+)", raw)
    if prefix:
        token = prefix.group(1)
        if token.startswith("0x"):
            return int(token, 16)
        return int(token)
    raise TransportError(f"Unable to parse uint value: '{value}'.")


def extract_tx_hash(output: str) -> str:
    trimmed = (output or "").strip()
    if not trimmed:
        raise TransportError("cast send returned empty output.")
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        parsed = None

    candidates: list[Any] = []
    if isinstance(parsed, dict):
        candidates.extend([parsed.get("transactionHash"), parsed.get("txHash"), parsed.get("hash")])
    elif isinstance(parsed, list):
        for item in parsed:
            if isinstance(item, dict):
                candidates.extend([item.get("transactionHash"), item.get("txHash"), item.get("hash")])

    for value in candidates:
        if isinstance(value, str) and re.fullmatch(r"0x[a-fA-F0-9]{64}", value):
            return value

    match = re.search(r"0x[a-fA-F0-9]{64}", trimmed)
    if match:
        return match.group(0)
    raise TransportError("cast send output did not include a transaction hash.")


def _retryable_send_error(stderr: str) -> bool:
    normalized = stderr.lower()
    retryable_fragments = (
        "replacement transaction underpriced",
        "nonce too low",
        "already known",
        "temporarily underpriced",
        "transaction underpriced",
    )
    return any(fragment in normalized for fragment in retryable_fragments)


def _parse_next_nonce_from_error(stderr: str) -> int | None:
    # Example: "nonce too low: next nonce 5, tx nonce 4"
    match = re.search(r"nonce too low: next nonce ([0-9]+), tx nonce ([0-9]+)", stderr.lower())
    if not match:
        return None
    return int(match.group(1))


def _tx_gas_price_gwei(attempt_index: int) -> int | None:
    base = config.tx_gas_price_gwei()
    if base is None:
        return None
    # Exponential escalation clears "replacement transaction underpriced" when
    # another pending tx already occupies the nonce with a higher gas price.
    return base + ((2**attempt_index - 1) * config.tx_gas_price_bump_gwei())


@dataclass(frozen=True)
class Signer:
    """The single wallet identity cast signs with."""

    address: str
    private_key: str | None = None
    mnemonic: str | None = None

    def cast_args(self) -> list[str]:
        if self.private_key:
            return ["--private-key", self.private_key]
        if self.mnemonic:
            return ["--mnemonic", self.mnemonic]
        raise WalletStoreError("Signer has no secret material.")

    def __repr__(self) -> str:
        return f"Signer(address={self.address!r})"


def mnemonic_address(mnemonic: str) -> str:
    cast_bin = require_cast_bin()
    proc = _run_subprocess(
        [cast_bin, "wallet", "address", "--mnemonic", mnemonic],
        timeout_sec=config.cast_call_timeout_sec(),
        kind="cast_wallet",
    )
    if proc.returncode != 0:
        raise WalletStoreError("cast wallet address failed for mnemonic.")
    address = (proc.stdout or "").strip().splitlines()[-1:] or [""]
    if not is_hex_address(address[0].strip()):
        raise WalletStoreError("cast wallet address returned malformed output.")
    return address[0].strip()


def signer_from_secret(secret: str) -> Signer:
    private_key = normalize_private_key(secret)
    if private_key is not None:
        return Signer(address=derive_address(private_key), private_key="0x" + private_key)
    if is_mnemonic(secret):
        phrase = " ".join(secret.split())
        return Signer(address=mnemonic_address(phrase), mnemonic=phrase)
    raise WalletStoreError(
        "Secret is neither a 32-byte hex private key nor a BIP-39 mnemonic.",
        "Provide a hex private key (optional 0x) or a 12-24 word mnemonic.",
        code="invalid_secret",
    )


class CastChainClient:
    """Reads and writes one chain through cast, signing as one wallet."""

    def __init__(self, rpc_url: str, signer: Signer | None = None, cast_bin: str | None = None):
        self.rpc_url = rpc_url
        self.signer = signer
        self._cast_bin = cast_bin

    @property
    def cast_bin(self) -> str:
        if self._cast_bin is None:
            self._cast_bin = require_cast_bin()
        return self._cast_bin

    @property
    def address(self) -> str:
        if self.signer is None:
            raise WalletStoreError("No signer configured for this chain client.")
        return self.signer.address

    def _call_uint(self, to: str, signature: str, args: list[str]) -> int:
        proc = _run_subprocess(
            [self.cast_bin, "call", to, signature, *args, "--rpc-url", self.rpc_url],
            timeout_sec=config.cast_call_timeout_sec(),
            kind="cast_call",
        )
        if proc.returncode != 0:
            raise TransportError(_proc_error(proc, f"cast call {signature} failed."))
        output = (proc.stdout or "").strip().splitlines()
        return parse_uint_text(output[-1] if output else "")

    def token_balance(self, token: str, owner: str) -> int:
        return self._call_uint(token, "balanceOf(address)(uint256)", [owner])

    def token_allowance(self, token: str, owner: str, spender: str) -> int:
        return self._call_uint(token, "allowance(address,address)(uint256)", [owner, spender])

    def native_balance(self, owner: str) -> int:
        proc = _run_subprocess(
            [self.cast_bin, "balance", owner, "--rpc-url", self.rpc_url],
            timeout_sec=config.cast_call_timeout_sec(),
            kind="cast_call",
        )
        if proc.returncode != 0:
            raise TransportError(_proc_error(proc, "cast balance failed."))
        output = (proc.stdout or "").strip().splitlines()
        return parse_uint_text(output[-1] if output else "")

    def encode_call(self, signature: str, args: list[str]) -> str:
        proc = _run_subprocess(
            [self.cast_bin, "calldata", signature, *args],
            timeout_sec=config.cast_call_timeout_sec(),
            kind="cast_call",
        )
        if proc.returncode != 0:
            raise TransportError(_proc_error(proc, f"cast calldata failed for {signature}."))
        data = (proc.stdout or "").strip()
        if not re.fullmatch(r"0x[a-fA-F0-9]+", data):
            raise TransportError(f"cast calldata returned malformed output for {signature}.")
        return data

    def _nonce(self, block_tag: str) -> int | None:
        proc = _run_subprocess(
            [self.cast_bin, "nonce", "--rpc-url", self.rpc_url, self.address, "--block", block_tag],
            timeout_sec=config.cast_call_timeout_sec(),
            kind="cast_call",
        )
        if proc.returncode != 0:
            return None
        try:
            return parse_uint_text((proc.stdout or "").strip())
        except TransportError:
            return None

    def send_transaction(self, to: str, data: str, value: str | int | None = None) -> str:
        if self.signer is None:
            raise WalletStoreError("cast send requires a signer.")
        if not is_hex_address(to):
            raise TransportError("cast send requires a hex destination address.")
        if not re.fullmatch(r"0x[a-fA-F0-9]*", data or ""):
            raise TransportError("cast send requires hex calldata.")

        attempts = config.tx_send_max_attempts()
        last_err = "cast send failed."
        nonce_override: int | None = None
        for attempt in range(attempts):
            if nonce_override is not None:
                nonce: int | None = nonce_override
            else:
                nonce_candidates = [n for n in (self._nonce("pending"), self._nonce("latest")) if n is not None]
                nonce = max(nonce_candidates) if nonce_candidates else None

            send_cmd = [self.cast_bin, "send", "--json", "--rpc-url", self.rpc_url, *self.signer.cast_args()]
            gas_price = _tx_gas_price_gwei(attempt)
            if gas_price is not None:
                send_cmd.extend(["--gas-price", f"{gas_price}gwei"])
            if nonce is not None:
                send_cmd.extend(["--nonce", str(nonce)])
            if value is not None and int(value) > 0:
                send_cmd.extend(["--value", str(int(value))])
            send_cmd.extend(["--from", self.signer.address, to, data])

            proc = _run_subprocess(send_cmd, timeout_sec=config.cast_send_timeout_sec(), kind="cast_send")
            if proc.returncode == 0:
                tx_hash = extract_tx_hash(proc.stdout)
                logger.info(f"Sent transaction {tx_hash} to {to}")
                return tx_hash

            last_err = _proc_error(proc, "cast send failed.")
            next_nonce = _parse_next_nonce_from_error(last_err)
            if attempt < (attempts - 1) and next_nonce is not None:
                nonce_override = next_nonce
                time.sleep(0.25)
                continue
            if attempt < (attempts - 1) and _retryable_send_error(last_err):
                logger.warning(f"Retrying cast send after: {last_err}")
                time.sleep(0.25)
                continue
            if attempt < (attempts - 1):
                raise TransportError(last_err)

        raise TransportError(f"{last_err} (after {attempts} attempts)")

    def wait_for_receipt(self, tx_hash: str) -> dict[str, Any]:
        proc = _run_subprocess(
            [self.cast_bin, "receipt", "--json", "--rpc-url", self.rpc_url, tx_hash],
            timeout_sec=config.cast_receipt_timeout_sec(),
            kind="cast_receipt",
        )
        if proc.returncode != 0:
            raise TransportError(_proc_error(proc, "cast receipt failed."), details={"txHash": tx_hash})
        try:
            payload = json.loads((proc.stdout or "{}").strip() or "{}")
        except json.JSONDecodeError as exc:
            raise TransportError("cast receipt returned malformed JSON.", details={"txHash": tx_hash}) from exc
        status = str(payload.get("status", "0x0")).lower()
        if status not in {"0x1", "1"}:
            raise TransportError(f"On-chain receipt indicates failure status '{status}'.", details={"txHash": tx_hash})
        return payload

    def sign_typed_data(self, typed_data: dict[str, Any]) -> str:
        if self.signer is None:
            raise WalletStoreError("Typed-data signing requires a signer.")
        proc = _run_subprocess(
            [
                self.cast_bin,
                "wallet",
                "sign",
                *self.signer.cast_args(),
                "--data",
                json.dumps(typed_data, separators=(",", ":")),
            ],
            timeout_sec=config.cast_call_timeout_sec(),
            kind="cast_sign",
        )
        if proc.returncode != 0:
            raise TransportError(_proc_error(proc, "cast wallet sign failed."))
        signature = (proc.stdout or "").strip().splitlines()[-1:] or [""]
        if not re.fullmatch(r"0x[a-fA-F0-9]{130}", signature[0].strip()):
            raise TransportError("cast wallet sign returned malformed signature.")
        return signature[0].strip()
