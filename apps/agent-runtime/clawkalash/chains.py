"""Chain configuration, canonical contract constants and the chain metadata cache."""

from __future__ import annotations

import json
import pathlib
import re
from dataclasses import dataclass
from typing import Any, Iterable

from . import config
from .errors import ConfigError

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
ZERO_BYTES32 = "0x" + "00" * 32
PERMIT2_ADDRESS = "0x000000000022D473030F116dDEE9F6B43aC78BA3"
NATIVE_TOKEN_ADDRESS = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"

USDC_DECIMALS = 6
# 0.1 USDC ceiling on the relayer fee the protocol may deduct from a burn.
CCTP_MAX_FEE_BASE_UNITS = 100000
FINALITY_THRESHOLD_FAST = 1000
FINALITY_THRESHOLD_STANDARD = 2000

NETWORK_TESTNET = "testnet"
NETWORK_MAINNET = "mainnet"


@dataclass(frozen=True)
class CctpContracts:
    token_messenger: str
    message_transmitter: str
    attestation_api: str


CCTP_CONTRACTS: dict[str, CctpContracts] = {
    NETWORK_TESTNET: CctpContracts(
        token_messenger="0x8FE6B999Dc680CcFDD5Bf7EB0974218be2542DAA",
        message_transmitter="0xE737e5cEBEEBa77EFE34D4aa090756590b1CE275",
        attestation_api="https://iris-api-sandbox.circle.com",
    ),
    NETWORK_MAINNET: CctpContracts(
        token_messenger="0x28b5a0e9C621a5BadaA536219b3a228C8168cf5d",
        message_transmitter="0x81D40F21F12A8F0E3252Bccb954D722d4c464B64",
        attestation_api="https://iris-api.circle.com",
    ),
}


def is_native_token(address: str) -> bool:
    return address.lower() == NATIVE_TOKEN_ADDRESS.lower()


def same_address(left: str, right: str) -> bool:
    return str(left).lower() == str(right).lower()


@dataclass(frozen=True)
class ChainConfig:
    key: str
    name: str
    chain_id: int
    cctp_domain: int
    network: str
    usdc: str
    rpc_urls: tuple[str, ...]

    @property
    def rpc_url(self) -> str:
        return self.rpc_urls[0]

    @property
    def contracts(self) -> CctpContracts:
        return CCTP_CONTRACTS[self.network]


def normalize_chain_key(name: str) -> str:
    return re.sub(r"[\s\-]+", "_", str(name).strip().lower())


def available_chain_keys() -> list[str]:
    directory = config.chain_config_dir()
    if not directory.is_dir():
        return []
    return sorted(path.stem for path in directory.glob("*.json"))


def _read_chain_file(path: pathlib.Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in '{path}': {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Chain config '{path}' must be a JSON object.")
    return data


def load_chain_config(name: str) -> ChainConfig:
    key = normalize_chain_key(name)
    path = config.chain_config_dir() / f"{key}.json"
    if not re.fullmatch(r"[a-z0-9_]+", key) or not path.exists():
        raise ConfigError(
            f"Unsupported chain: {name}.",
            f"Supported: {', '.join(available_chain_keys())}",
            {"chain": name},
            code="unsupported_chain",
        )
    data = _read_chain_file(path)

    rpc = data.get("rpc")
    if not isinstance(rpc, dict):
        raise ConfigError(f"Chain config for '{key}' is missing rpc object.")
    rpc_urls = tuple(
        candidate.strip()
        for candidate in (rpc.get("primary"), rpc.get("fallback"))
        if isinstance(candidate, str) and candidate.strip()
    )
    if not rpc_urls:
        raise ConfigError(f"Chain config for '{key}' has no usable rpc URL.")

    network = data.get("network")
    if network not in CCTP_CONTRACTS:
        raise ConfigError(f"Chain config for '{key}' has invalid network '{network}'.")
    usdc = data.get("usdc")
    if not isinstance(usdc, str) or not re.fullmatch(r"0x[a-fA-F0-9]{40}", usdc):
        raise ConfigError(f"Chain config for '{key}' has invalid usdc address.")
    try:
        chain_id = int(data["chainId"])
        domain = int(data["cctpDomain"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigError(f"Chain config for '{key}' needs integer chainId and cctpDomain.") from exc

    return ChainConfig(
        key=key,
        name=str(data.get("name") or key),
        chain_id=chain_id,
        cctp_domain=domain,
        network=network,
        usdc=usdc,
        rpc_urls=rpc_urls,
    )


def find_chain_by_id(chain_id: int) -> ChainConfig:
    for key in available_chain_keys():
        chain = load_chain_config(key)
        if chain.chain_id == int(chain_id):
            return chain
    raise ConfigError(
        f"No local chain config for chain id {chain_id}.",
        "Pass --rpc-url or add a config/chains entry.",
        {"chainId": chain_id},
        code="unsupported_chain",
    )


class ChainCache:
    """Aggregator chain metadata, populated explicitly and passed by reference."""

    def __init__(self) -> None:
        self._chains: dict[int, dict[str, Any]] | None = None

    @property
    def is_populated(self) -> bool:
        return self._chains is not None

    def populate(self, entries: Iterable[dict[str, Any]]) -> None:
        chains: dict[int, dict[str, Any]] = {}
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            try:
                chains[int(entry["chainId"])] = entry
            except (KeyError, TypeError, ValueError):
                continue
        self._chains = chains

    def invalidate(self) -> None:
        self._chains = None

    def get(self, chain_id: int) -> dict[str, Any] | None:
        return (self._chains or {}).get(int(chain_id))

    def entries(self) -> list[dict[str, Any]]:
        return list((self._chains or {}).values())

    def name(self, chain_id: int) -> str:
        entry = self.get(chain_id)
        if entry and entry.get("name"):
            return str(entry["name"])
        return f"Chain {chain_id}"

    def native_currency(self, chain_id: int) -> dict[str, Any]:
        entry = self.get(chain_id)
        currency = entry.get("currency") if entry else None
        if isinstance(currency, dict) and "decimals" in currency:
            return {
                "name": currency.get("name", "Unknown"),
                "symbol": currency.get("symbol", "ETH"),
                "decimals": int(currency["decimals"]),
            }
        return {"name": "Unknown", "symbol": "ETH", "decimals": 18}
