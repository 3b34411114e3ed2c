"""Encryption at rest for the signing secret (private key or mnemonic).

Key derivation is Argon2id with fixed cost parameters; encryption is
AES-256-GCM, so a wrong passphrase and a tampered record fail identically and
never yield plaintext.
"""

from __future__ import annotations

import json
import logging
import os
import pathlib
import re
import secrets
import stat
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from argon2.low_level import Type, hash_secret_raw
from Crypto.Hash import keccak
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .errors import AuthenticationError, WalletSecurityError, WalletStoreError

logger = logging.getLogger(__name__)

WALLET_STORE_VERSION = 1
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536
ARGON2_PARALLELISM = 1
ARGON2_HASH_LEN = 32
SALT_BYTES = 16
NONCE_BYTES = 12
GCM_TAG_BYTES = 16

KIND_PRIVATE_KEY = "private_key"
KIND_MNEMONIC = "mnemonic"


@dataclass(frozen=True)
class EncryptedSecret:
    ciphertext: str
    iv: str
    salt: str

    def to_dict(self) -> dict[str, str]:
        return {"ciphertext": self.ciphertext, "iv": self.iv, "salt": self.salt}


def _derive_aes_key(password: str, salt: bytes) -> bytes:
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=ARGON2_HASH_LEN,
        type=Type.ID,
    )


def encrypt(secret: str, password: str) -> EncryptedSecret:
    salt = secrets.token_bytes(SALT_BYTES)
    nonce = secrets.token_bytes(NONCE_BYTES)
    key = _derive_aes_key(password, salt)
    ciphertext = AESGCM(key).encrypt(nonce, secret.encode("utf-8"), None)
    return EncryptedSecret(ciphertext=ciphertext.hex(), iv=nonce.hex(), salt=salt.hex())


_TAMPERED_MESSAGE = "Unable to decrypt wallet: wrong passphrase or tampered wallet file."
_TAMPERED_HINT = "Check CLAWKALASH_WALLET_PASSPHRASE and the wallet file integrity."


def _unhex(value: str, field: str) -> bytes:
    text = str(value or "").strip()
    if text.startswith("0x"):
        text = text[2:]
    try:
        return bytes.fromhex(text)
    except ValueError as exc:
        raise AuthenticationError(_TAMPERED_MESSAGE, _TAMPERED_HINT, {"field": field}) from exc


def decrypt(ciphertext: str, iv: str, salt: str, password: str) -> str:
    """Decrypt a secret; any mismatch in the stored bytes is reported as ``AuthenticationError``."""
    ciphertext_bytes = _unhex(ciphertext, "ciphertext")
    nonce = _unhex(iv, "iv")
    salt_bytes = _unhex(salt, "salt")
    if len(salt_bytes) != SALT_BYTES or len(nonce) != NONCE_BYTES or len(ciphertext_bytes) < GCM_TAG_BYTES:
        raise AuthenticationError(_TAMPERED_MESSAGE, _TAMPERED_HINT, {"field": "lengths"})

    key = _derive_aes_key(password, salt_bytes)
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext_bytes, None)
    except InvalidTag as exc:
        raise AuthenticationError(_TAMPERED_MESSAGE, _TAMPERED_HINT) from exc
    return plaintext.decode("utf-8")


def is_hex_address(value: str) -> bool:
    return bool(re.fullmatch(r"0x[a-fA-F0-9]{40}", value or ""))


def normalize_private_key(value: str) -> str | None:
    stripped = value.strip()
    if stripped.startswith("0x"):
        stripped = stripped[2:]
    if re.fullmatch(r"[a-fA-F0-9]{64}", stripped):
        return stripped.lower()
    return None


def is_mnemonic(value: str) -> bool:
    words = value.strip().split()
    return len(words) in (12, 15, 18, 21, 24) and all(re.fullmatch(r"[a-z]+", word) for word in words)


def generate_private_key() -> str:
    while True:
        candidate = secrets.token_bytes(32)
        value = int.from_bytes(candidate, byteorder="big")
        # Reject the (astronomically unlikely) out-of-range scalars.
        if 0 < value < 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141:
            return candidate.hex()


def derive_address(private_key_hex: str) -> str:
    normalized = normalize_private_key(private_key_hex)
    if normalized is None:
        raise WalletStoreError("Private key must be 32 bytes of hex.")
    private_value = int.from_bytes(bytes.fromhex(normalized), byteorder="big")
    # cryptography validates private key range for secp256k1.
    private_key = ec.derive_private_key(private_value, ec.SECP256K1())
    public_key_bytes = private_key.public_key().public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    digest = keccak.new(digest_bits=256)
    digest.update(public_key_bytes[1:])
    return "0x" + digest.digest()[-20:].hex()


# Storage layer


def _is_secure_permissions(path: pathlib.Path, expected_mode: int) -> bool:
    if os.name == "nt":
        return True
    mode = stat.S_IMODE(path.stat().st_mode)
    return mode == expected_mode


def assert_secure_permissions(path: pathlib.Path, expected_mode: int, kind: str) -> None:
    if not path.exists():
        return
    if not _is_secure_permissions(path, expected_mode):
        raise WalletSecurityError(
            f"Unsafe {kind} permissions for '{path}'. Expected {oct(expected_mode)} owner-only permissions.",
            f"Run: chmod {oct(expected_mode)[2:]} '{path}'",
            {"path": str(path)},
        )


def ensure_private_dir(path: pathlib.Path) -> None:
    path.mkdir(mode=0o700, parents=True, exist_ok=True)
    if os.name != "nt":
        os.chmod(path, 0o700)


def write_private_json(path: pathlib.Path, payload: dict[str, Any]) -> None:
    ensure_private_dir(path.parent)
    # Create owner-only from the start; chmod again in case the file pre-existed.
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, indent=2))
    if os.name != "nt":
        os.chmod(path, 0o600)


def build_wallet_record(secret: str, password: str, address: str, kind: str) -> dict[str, Any]:
    encrypted = encrypt(secret, password)
    return {
        "version": WALLET_STORE_VERSION,
        "address": address,
        "kind": kind,
        "enc": "aes-256-gcm",
        "kdf": "argon2id",
        "kdfParams": {
            "timeCost": ARGON2_TIME_COST,
            "memoryCost": ARGON2_MEMORY_COST,
            "parallelism": ARGON2_PARALLELISM,
            "hashLen": ARGON2_HASH_LEN,
        },
        **encrypted.to_dict(),
        "createdAt": datetime.now(timezone.utc).isoformat(),
    }


def save_wallet(path: pathlib.Path, secret: str, password: str, address: str, kind: str) -> dict[str, Any]:
    record = build_wallet_record(secret, password, address, kind)
    write_private_json(path, record)
    logger.info(f"Wallet saved to {path} for {address}")
    return record


def validate_wallet_record(record: Any) -> None:
    if not isinstance(record, dict):
        raise WalletStoreError("Wallet file must be a JSON object.")
    version = record.get("version")
    if version != WALLET_STORE_VERSION:
        raise WalletStoreError(f"Unsupported wallet store version: {version}")
    missing = [k for k in ("address", "kind", "enc", "kdf", "kdfParams", "ciphertext", "iv", "salt") if k not in record]
    if missing:
        raise WalletStoreError(f"Wallet file missing fields: {', '.join(missing)}")
    if record.get("enc") != "aes-256-gcm" or record.get("kdf") != "argon2id":
        raise WalletStoreError("Wallet file crypto algorithm metadata is invalid.")
    if not is_hex_address(str(record.get("address"))):
        raise WalletStoreError("Wallet file address is missing or invalid.")
    if record.get("kind") not in (KIND_PRIVATE_KEY, KIND_MNEMONIC):
        raise WalletStoreError("Wallet file kind must be private_key or mnemonic.")


def load_wallet(path: pathlib.Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    assert_secure_permissions(path, 0o600, "wallet file")
    try:
        record = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise WalletStoreError(f"Invalid JSON in '{path}': {exc}") from exc
    validate_wallet_record(record)
    return record


def unlock_wallet(record: dict[str, Any], password: str) -> str:
    return decrypt(str(record["ciphertext"]), str(record["iv"]), str(record["salt"]), password)
