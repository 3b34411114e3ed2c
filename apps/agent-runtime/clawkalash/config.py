"""Environment-driven runtime settings."""

from __future__ import annotations

import os
import pathlib
import re

from .errors import ConfigError

REPO_ROOT = pathlib.Path(__file__).resolve().parents[3]

DEFAULT_BUNGEE_API = "https://public-backend.bungee.exchange"
DEFAULT_CAST_CALL_TIMEOUT_SEC = 30
DEFAULT_CAST_SEND_TIMEOUT_SEC = 30
DEFAULT_CAST_RECEIPT_TIMEOUT_SEC = 90
DEFAULT_HTTP_TIMEOUT_SEC = 20
DEFAULT_TX_SEND_MAX_ATTEMPTS = 5
DEFAULT_TX_GAS_PRICE_BUMP_GWEI = 1
LOG_FORMATS = ("json", "console")


def app_dir() -> pathlib.Path:
    raw = (os.environ.get("CLAWKALASH_HOME") or "").strip()
    if raw:
        return pathlib.Path(raw).expanduser()
    return pathlib.Path.home() / ".clawkalash"


def wallet_path() -> pathlib.Path:
    raw = (os.environ.get("CLAWKALASH_WALLET_PATH") or "").strip()
    if raw:
        return pathlib.Path(raw).expanduser()
    return app_dir() / "wallet.json"


def transfers_dir() -> pathlib.Path:
    return app_dir() / "transfers"


def chain_config_dir() -> pathlib.Path:
    raw = (os.environ.get("CLAWKALASH_CHAIN_CONFIG_DIR") or "").strip()
    if raw:
        return pathlib.Path(raw).expanduser()
    return REPO_ROOT / "config" / "chains"


def bungee_api_base() -> str:
    raw = (os.environ.get("CLAWKALASH_BUNGEE_API") or "").strip()
    return (raw or DEFAULT_BUNGEE_API).rstrip("/")


def log_level() -> str:
    return (os.environ.get("CLAWKALASH_LOG_LEVEL") or "WARNING").strip().upper()


def log_format() -> str:
    raw = (os.environ.get("CLAWKALASH_LOG_FORMAT") or "json").strip().lower()
    if raw not in LOG_FORMATS:
        raise ConfigError(
            f"Invalid CLAWKALASH_LOG_FORMAT '{raw}'.",
            f"Use one of: {', '.join(LOG_FORMATS)}.",
        )
    return raw


def env_positive_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    if not re.fullmatch(r"[0-9]+", raw):
        raise ConfigError(f"{name} must be an integer >= 1.")
    value = int(raw)
    if value < 1:
        raise ConfigError(f"{name} must be >= 1.")
    return value


def cast_call_timeout_sec() -> int:
    return env_positive_int("CLAWKALASH_CAST_CALL_TIMEOUT_SEC", DEFAULT_CAST_CALL_TIMEOUT_SEC)


def cast_send_timeout_sec() -> int:
    return env_positive_int("CLAWKALASH_CAST_SEND_TIMEOUT_SEC", DEFAULT_CAST_SEND_TIMEOUT_SEC)


def cast_receipt_timeout_sec() -> int:
    return env_positive_int("CLAWKALASH_CAST_RECEIPT_TIMEOUT_SEC", DEFAULT_CAST_RECEIPT_TIMEOUT_SEC)


def http_timeout_sec() -> int:
    return env_positive_int("CLAWKALASH_HTTP_TIMEOUT_SEC", DEFAULT_HTTP_TIMEOUT_SEC)


def tx_send_max_attempts() -> int:
    return env_positive_int("CLAWKALASH_TX_SEND_MAX_ATTEMPTS", DEFAULT_TX_SEND_MAX_ATTEMPTS)


def tx_gas_price_bump_gwei() -> int:
    return env_positive_int("CLAWKALASH_TX_GAS_PRICE_BUMP_GWEI", DEFAULT_TX_GAS_PRICE_BUMP_GWEI)


def tx_gas_price_gwei() -> int | None:
    """Base gas price override; ``None`` lets cast price transactions itself."""
    raw = (os.environ.get("CLAWKALASH_TX_GAS_PRICE_GWEI") or "").strip()
    if not raw:
        return None
    return env_positive_int("CLAWKALASH_TX_GAS_PRICE_GWEI", 1)


def wallet_passphrase_from_env() -> str | None:
    value = os.environ.get("CLAWKALASH_WALLET_PASSPHRASE")
    if isinstance(value, str) and value.strip():
        return value
    return None


def wallet_import_secret_from_env() -> str | None:
    value = (os.environ.get("CLAWKALASH_WALLET_IMPORT_SECRET") or "").strip()
    return value or None
