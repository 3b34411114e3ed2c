import json
import pathlib
import sys
import tempfile
import unittest
from unittest import mock

RUNTIME_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(RUNTIME_ROOT) not in sys.path:
    sys.path.insert(0, str(RUNTIME_ROOT))

from clawkalash import chains, config  # noqa: E402
from clawkalash.errors import ConfigError  # noqa: E402


class ChainConfigTests(unittest.TestCase):
    def test_load_bundled_chain(self) -> None:
        chain = chains.load_chain_config("Base Sepolia")
        self.assertEqual(chain.key, "base_sepolia")
        self.assertEqual(chain.chain_id, 84532)
        self.assertEqual(chain.cctp_domain, 6)
        self.assertEqual(chain.rpc_url, "https://base-sepolia-rpc.publicnode.com")
        self.assertEqual(chain.contracts.token_messenger, "0x8FE6B999Dc680CcFDD5Bf7EB0974218be2542DAA")
        self.assertEqual(chain.contracts.attestation_api, "https://iris-api-sandbox.circle.com")

    def test_mainnet_contracts(self) -> None:
        chain = chains.load_chain_config("arbitrum")
        self.assertEqual(chain.network, chains.NETWORK_MAINNET)
        self.assertEqual(chain.contracts.message_transmitter, "0x81D40F21F12A8F0E3252Bccb954D722d4c464B64")
        self.assertEqual(chain.contracts.attestation_api, "https://iris-api.circle.com")

    def test_every_bundled_chain_loads(self) -> None:
        keys = chains.available_chain_keys()
        self.assertIn("ethereum_sepolia", keys)
        for key in keys:
            with self.subTest(key=key):
                chains.load_chain_config(key)

    def test_unknown_chain(self) -> None:
        with self.assertRaises(ConfigError) as ctx:
            chains.load_chain_config("solana")
        self.assertEqual(ctx.exception.code, "unsupported_chain")
        with self.assertRaises(ConfigError):
            chains.load_chain_config("../secrets")

    def test_find_chain_by_id(self) -> None:
        self.assertEqual(chains.find_chain_by_id(42161).key, "arbitrum")
        with self.assertRaises(ConfigError):
            chains.find_chain_by_id(137)

    def test_custom_config_dir(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            (pathlib.Path(tmp) / "devnet.json").write_text(
                json.dumps(
                    {
                        "name": "Devnet",
                        "chainId": 31337,
                        "cctpDomain": 9,
                        "network": "testnet",
                        "usdc": "0x" + "12" * 20,
                        "rpc": {"primary": "", "fallback": "http://127.0.0.1:8545"},
                    }
                ),
                encoding="utf-8",
            )
            with mock.patch.dict(config.os.environ, {"CLAWKALASH_CHAIN_CONFIG_DIR": tmp}, clear=False):
                chain = chains.load_chain_config("devnet")
                self.assertEqual(chains.available_chain_keys(), ["devnet"])
        self.assertEqual(chain.rpc_url, "http://127.0.0.1:8545")

    def test_invalid_network_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            (pathlib.Path(tmp) / "bad.json").write_text(
                json.dumps({"chainId": 1, "cctpDomain": 0, "network": "devnet", "usdc": "0x" + "12" * 20, "rpc": {"primary": "http://x"}}),
                encoding="utf-8",
            )
            with mock.patch.dict(config.os.environ, {"CLAWKALASH_CHAIN_CONFIG_DIR": tmp}, clear=False):
                with self.assertRaises(ConfigError):
                    chains.load_chain_config("bad")


class ChainCacheTests(unittest.TestCase):
    def test_unpopulated_cache_falls_back(self) -> None:
        cache = chains.ChainCache()
        self.assertFalse(cache.is_populated)
        self.assertEqual(cache.name(10), "Chain 10")
        self.assertEqual(cache.native_currency(10)["decimals"], 18)

    def test_populate_and_invalidate(self) -> None:
        cache = chains.ChainCache()
        cache.populate(
            [
                {"chainId": 137, "name": "Polygon", "currency": {"name": "POL", "symbol": "POL", "decimals": 18}},
                {"name": "missing id"},
                "junk",
            ]
        )
        self.assertTrue(cache.is_populated)
        self.assertEqual(len(cache.entries()), 1)
        self.assertEqual(cache.native_currency(137)["symbol"], "POL")
        cache.invalidate()
        self.assertEqual(cache.entries(), [])
        self.assertEqual(cache.name(137), "Chain 137")


class ConfigTests(unittest.TestCase):
    def test_invalid_numeric_env_raises(self) -> None:
        with mock.patch.dict(config.os.environ, {"CLAWKALASH_CAST_CALL_TIMEOUT_SEC": "soon"}, clear=False):
            with self.assertRaises(ConfigError):
                config.cast_call_timeout_sec()

    def test_defaults(self) -> None:
        with mock.patch.dict(config.os.environ, {}, clear=True):
            self.assertEqual(config.cast_receipt_timeout_sec(), 90)
            self.assertEqual(config.tx_send_max_attempts(), 5)
            self.assertIsNone(config.tx_gas_price_gwei())
            self.assertEqual(config.bungee_api_base(), config.DEFAULT_BUNGEE_API)


if __name__ == "__main__":
    unittest.main()
