#!/usr/bin/env python3
"""ClawKalash agent runtime CLI.

Every command prints JSON envelopes on stdout, one object per line. Logs go to
stderr. Exit code 0 on success, 1 on runtime failure, 2 on usage errors.
"""

from __future__ import annotations

import argparse
import getpass
import json
import sys
from typing import Any

from . import config
from .aggregator import BungeeClient, SwapQuote
from .amounts import format_units, parse_amount
from .attestation import IrisAttestationClient
from .bridge import (
    BridgeEvent,
    BridgeState,
    BridgeStateMachine,
    BridgeTransfer,
    TransferJournal,
    new_transfer,
    quote_transfer,
    rewind_for_resume,
)
from .chains import (
    PERMIT2_ADDRESS,
    USDC_DECIMALS,
    ChainCache,
    available_chain_keys,
    find_chain_by_id,
    is_native_token,
    load_chain_config,
)
from .errors import (
    AmountError,
    ClawkalashError,
    ConfigError,
    WalletPassphraseError,
    WalletSecurityError,
    WalletStoreError,
)
from .guard import NativeTransaction, Permit2TypedData, SwapIntent
from .logging_config import setup_logging
from .rpc import CastChainClient, Signer, mnemonic_address, signer_from_secret
from .secret_store import (
    KIND_MNEMONIC,
    KIND_PRIVATE_KEY,
    assert_secure_permissions,
    derive_address,
    generate_private_key,
    is_hex_address,
    load_wallet,
    normalize_private_key,
    save_wallet,
    unlock_wallet,
)

_USAGE_ERRORS = (AmountError, ConfigError, WalletPassphraseError)


def emit(payload: dict) -> int:
    print(json.dumps(payload, separators=(",", ":")), flush=True)
    return 0


def ok(message: str, **extra: object) -> int:
    payload = {"ok": True, "code": "ok", "message": message}
    payload.update(extra)
    return emit(payload)


def fail(code: str, message: str, action_hint: str | None = None, details: dict | None = None, exit_code: int = 1) -> int:
    payload: dict[str, object] = {"ok": False, "code": code, "message": message}
    if action_hint:
        payload["actionHint"] = action_hint
    if details:
        payload["details"] = details
    emit(payload)
    return exit_code


def fail_error(exc: ClawkalashError, details: dict | None = None) -> int:
    merged = {**(details or {}), **exc.details}
    exit_code = 2 if isinstance(exc, _USAGE_ERRORS) else 1
    return fail(exc.code, str(exc), exc.action_hint, merged, exit_code=exit_code)


def require_json_flag(args: argparse.Namespace) -> int | None:
    if getattr(args, "json", False):
        return None
    return fail("missing_flag", "This command requires --json output mode.", "Re-run with --json.", exit_code=2)


# Passphrase and secret input


def _interactive_required() -> bool:
    return sys.stdin.isatty() and sys.stderr.isatty()


def _prompt_passphrase() -> str:
    first = getpass.getpass("Wallet passphrase: ").strip()
    second = getpass.getpass("Confirm wallet passphrase: ").strip()
    if not first:
        raise WalletPassphraseError("Passphrase cannot be empty.", code="invalid_input")
    if first != second:
        raise WalletPassphraseError("Passphrase confirmation mismatch.", code="invalid_input")
    return first


def _create_import_passphrase() -> str:
    env_passphrase = config.wallet_passphrase_from_env()
    if env_passphrase:
        return env_passphrase
    if not _interactive_required():
        raise WalletPassphraseError(
            "wallet create/import requires CLAWKALASH_WALLET_PASSPHRASE in non-interactive mode.",
            "Set CLAWKALASH_WALLET_PASSPHRASE or run with TTY attached.",
        )
    return _prompt_passphrase()


def _import_secret_input() -> str:
    env_secret = config.wallet_import_secret_from_env()
    if env_secret:
        return env_secret
    if not _interactive_required():
        raise WalletPassphraseError(
            "wallet import requires CLAWKALASH_WALLET_IMPORT_SECRET in non-interactive mode.",
            "Set CLAWKALASH_WALLET_IMPORT_SECRET or run with TTY attached.",
        )
    return getpass.getpass("Private key (hex, optional 0x) or mnemonic: ")


def _require_wallet_passphrase_for_signing() -> str:
    env_passphrase = config.wallet_passphrase_from_env()
    if env_passphrase:
        return env_passphrase
    if not _interactive_required():
        raise WalletPassphraseError(
            "Signing requires CLAWKALASH_WALLET_PASSPHRASE in non-interactive mode.",
            "Set CLAWKALASH_WALLET_PASSPHRASE or run with TTY attached.",
        )
    value = getpass.getpass("Wallet passphrase: ").strip()
    if not value:
        raise WalletPassphraseError("Passphrase cannot be empty.", code="invalid_input")
    return value


def _require_wallet_record() -> dict[str, Any]:
    record = load_wallet(config.wallet_path())
    if record is None:
        raise WalletStoreError(
            "No wallet configured.",
            "Run wallet create or wallet import first.",
            {"path": str(config.wallet_path())},
            code="wallet_missing",
        )
    return record


def _load_signer() -> Signer:
    record = _require_wallet_record()
    secret = unlock_wallet(record, _require_wallet_passphrase_for_signing())
    signer = signer_from_secret(secret)
    if signer.address.lower() != str(record["address"]).lower():
        raise WalletStoreError("Wallet encrypted payload does not match stored address.")
    return signer


# Wallet commands


def cmd_wallet_create(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk

    path = config.wallet_path()
    try:
        existing = load_wallet(path)
        if existing is not None:
            return fail(
                "wallet_exists",
                "Wallet already configured.",
                "Use wallet address/health, or point CLAWKALASH_WALLET_PATH elsewhere.",
                {"address": existing.get("address"), "path": str(path)},
            )
        passphrase = _create_import_passphrase()
        private_key_hex = generate_private_key()
        address = derive_address(private_key_hex)
        save_wallet(path, "0x" + private_key_hex, passphrase, address, KIND_PRIVATE_KEY)
        return ok("Wallet created.", address=address, path=str(path), created=True)
    except ClawkalashError as exc:
        return fail_error(exc)


def cmd_wallet_import(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk

    path = config.wallet_path()
    try:
        existing = load_wallet(path)
        if existing is not None:
            return fail(
                "wallet_exists",
                "Wallet already configured.",
                "Remove the existing wallet file before importing.",
                {"address": existing.get("address"), "path": str(path)},
            )
        secret = _import_secret_input().strip()
        signer = signer_from_secret(secret)
        if signer.private_key:
            kind, stored = KIND_PRIVATE_KEY, signer.private_key
        else:
            kind, stored = KIND_MNEMONIC, str(signer.mnemonic)
        passphrase = _create_import_passphrase()
        save_wallet(path, stored, passphrase, signer.address, kind)
        return ok("Wallet imported.", address=signer.address, kind=kind, path=str(path), imported=True)
    except ClawkalashError as exc:
        if exc.code == "invalid_secret":
            return fail(exc.code, str(exc), exc.action_hint, exit_code=2)
        return fail_error(exc)


def cmd_wallet_address(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    try:
        record = _require_wallet_record()
        return ok("Wallet address loaded.", address=record["address"], kind=record["kind"])
    except ClawkalashError as exc:
        return fail_error(exc)


def cmd_wallet_health(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk

    path = config.wallet_path()
    has_wallet = False
    address: str | None = None
    integrity_checked = False
    try:
        home = config.app_dir()
        if home.exists():
            assert_secure_permissions(home, 0o700, "directory")
        record = load_wallet(path)
        if record is not None:
            has_wallet = True
            address = str(record["address"])
            env_passphrase = config.wallet_passphrase_from_env()
            if env_passphrase:
                secret = unlock_wallet(record, env_passphrase)
                if record["kind"] == KIND_PRIVATE_KEY:
                    derived = derive_address(str(normalize_private_key(secret)))
                else:
                    derived = mnemonic_address(secret)
                if derived.lower() != address.lower():
                    raise WalletStoreError("Wallet encrypted payload does not match stored address.")
                integrity_checked = True
    except WalletSecurityError as exc:
        return fail(exc.code, str(exc), "Restrict permissions to owner-only (0700/0600) and retry.", exc.details)
    except ClawkalashError as exc:
        return fail_error(exc, {"path": str(path)})

    return ok(
        "Wallet health checked.",
        hasWallet=has_wallet,
        address=address,
        path=str(path),
        permissionSafe=True,
        integrityChecked=integrity_checked,
    )


# Chains


def cmd_chains(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    try:
        bridge_chains = []
        for key in available_chain_keys():
            chain = load_chain_config(key)
            bridge_chains.append(
                {"key": chain.key, "name": chain.name, "chainId": chain.chain_id, "network": chain.network}
            )
        cache = BungeeClient().fetch_supported_chains(ChainCache())
        swap_chains = [
            {"chainId": int(entry["chainId"]), "name": cache.name(int(entry["chainId"]))}
            for entry in cache.entries()
        ]
        return ok("Supported chains loaded.", bridgeChains=bridge_chains, swapChains=swap_chains)
    except ClawkalashError as exc:
        return fail_error(exc)


# Bridge commands


def cmd_bridge_quote(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    try:
        source = load_chain_config(args.from_chain)
        dest = load_chain_config(args.to_chain)
        return ok("Bridge quote built.", quote=quote_transfer(source, dest, args.amount))
    except ClawkalashError as exc:
        return fail_error(exc)


def cmd_bridge_balance(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    try:
        chain = load_chain_config(args.chain)
        owner = args.address or str(_require_wallet_record()["address"])
        if not is_hex_address(owner):
            return fail("invalid_input", f"Invalid address '{owner}'.", exit_code=2)
        balance = CastChainClient(chain.rpc_url).token_balance(chain.usdc, owner)
        return ok(
            "USDC balance loaded.",
            chain=chain.key,
            address=owner,
            balance=format_units(balance, USDC_DECIMALS),
            balanceBaseUnits=str(balance),
        )
    except ClawkalashError as exc:
        return fail_error(exc)


def _drive_transfer(transfer: BridgeTransfer, signer: Signer) -> int:
    source = load_chain_config(transfer.source_chain)
    dest = load_chain_config(transfer.dest_chain)
    machine = BridgeStateMachine(
        transfer,
        source,
        dest,
        CastChainClient(source.rpc_url, signer),
        CastChainClient(dest.rpc_url, signer),
        IrisAttestationClient(source.contracts.attestation_api),
        journal=TransferJournal(config.transfers_dir()),
    )
    for event in machine.run():
        if event.state not in (BridgeState.COMPLETE, BridgeState.FAILED):
            _emit_event(event)

    error = machine.failure_error()
    if error is not None:
        return fail_error(error)
    return ok("Bridge complete.", transfer=transfer.to_dict())


def _emit_event(event: BridgeEvent) -> None:
    emit({"ok": True, "code": "bridge_progress", "message": event.message, "event": event.to_dict()})


def cmd_bridge_run(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    try:
        source = load_chain_config(args.from_chain)
        dest = load_chain_config(args.to_chain)
        signer = _load_signer()
        recipient = args.recipient or signer.address
        transfer = new_transfer(source, dest, args.amount, recipient)
        return _drive_transfer(transfer, signer)
    except ClawkalashError as exc:
        return fail_error(exc)


def cmd_bridge_resume(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    try:
        transfer = rewind_for_resume(TransferJournal(config.transfers_dir()).load(args.burn_tx))
        return _drive_transfer(transfer, _load_signer())
    except ClawkalashError as exc:
        return fail_error(exc, {"burnTxHash": args.burn_tx})


def cmd_bridge_list(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    try:
        transfers = TransferJournal(config.transfers_dir()).list_transfers()
        return ok("Journaled transfers loaded.", transfers=[transfer.to_dict() for transfer in transfers])
    except ClawkalashError as exc:
        return fail_error(exc)


# Swap commands


def _resolve_swap_token(client: BungeeClient, token: str, chain_id: int, cache: ChainCache) -> dict[str, Any]:
    if is_native_token(token):
        currency = client.fetch_supported_chains(cache).native_currency(chain_id)
        return {"address": token, "symbol": currency["symbol"], "decimals": currency["decimals"]}
    return client.resolve_token(token, chain_id)


def _build_intent(args: argparse.Namespace, client: BungeeClient, user_address: str) -> tuple[SwapIntent, dict[str, Any]]:
    cache = ChainCache()
    input_token = _resolve_swap_token(client, args.input_token, args.from_chain_id, cache)
    if is_hex_address(args.output_token):
        output_address = args.output_token
    else:
        output_address = _resolve_swap_token(client, args.output_token, args.to_chain_id, cache)["address"]
    amount_base_units = parse_amount(args.amount, int(input_token["decimals"]))
    intent = SwapIntent(
        user_address=user_address,
        origin_chain_id=args.from_chain_id,
        destination_chain_id=args.to_chain_id,
        input_token_address=input_token["address"],
        output_token_address=output_address,
        input_amount_base_units=amount_base_units,
        receiver_address=args.receiver or "",
    )
    return intent, input_token


def _quote_summary(quote: SwapQuote) -> dict[str, Any]:
    summary: dict[str, Any] = {
        "quoteId": quote.quote_id,
        "requestType": quote.request_type,
        "inputAmount": quote.input_amount,
        "outputAmount": quote.output_amount,
        "requestHash": quote.request_hash,
    }
    if isinstance(quote.payload, Permit2TypedData):
        summary["payload"] = {"kind": "permit2", "verifyingContract": quote.payload.verifying_contract}
    else:
        summary["payload"] = {"kind": "native", "to": quote.payload.to, "value": quote.payload.value}
    if quote.approval is not None:
        summary["approval"] = {
            "tokenAddress": quote.approval.token_address,
            "spenderAddress": quote.approval.spender_address,
            "amount": quote.approval.amount,
        }
    return summary


def cmd_swap_quote(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    try:
        client = BungeeClient()
        user_address = args.user or str(_require_wallet_record()["address"])
        intent, _ = _build_intent(args, client, user_address)
        quote = client.get_quote(intent)
        quote.verify(intent)
        return ok("Swap quote verified.", quote=_quote_summary(quote), guardPassed=True)
    except ClawkalashError as exc:
        return fail_error(exc)


def _origin_client(args: argparse.Namespace, signer: Signer) -> CastChainClient:
    rpc_url = args.rpc_url or find_chain_by_id(args.from_chain_id).rpc_url
    return CastChainClient(rpc_url, signer)


def cmd_swap_execute(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    try:
        client = BungeeClient()
        signer = _load_signer()
        intent, input_token = _build_intent(args, client, signer.address)
        quote = client.get_quote(intent)
        # Nothing below runs unless the payload matches the intent.
        quote.verify(intent)
        chain_client = _origin_client(args, signer)

        if isinstance(quote.payload, Permit2TypedData):
            approval_tx_hash = None
            if quote.approval is not None:
                allowance = chain_client.token_allowance(input_token["address"], signer.address, PERMIT2_ADDRESS)
                if allowance < int(intent.input_amount_base_units):
                    data = chain_client.encode_call("approve(address,uint256)", [PERMIT2_ADDRESS, quote.approval.amount])
                    approval_tx_hash = chain_client.send_transaction(input_token["address"], data)
                    chain_client.wait_for_receipt(approval_tx_hash)
            signature = chain_client.sign_typed_data(quote.payload.to_eip712())
            request_hash = client.submit_permit2(quote, signature)
            return ok(
                "Swap submitted.",
                requestHash=request_hash,
                approvalTxHash=approval_tx_hash,
                quote=_quote_summary(quote),
            )

        tx: NativeTransaction = quote.payload
        tx_hash = chain_client.send_transaction(tx.to, tx.data, value=tx.value)
        chain_client.wait_for_receipt(tx_hash)
        return ok("Swap transaction confirmed.", txHash=tx_hash, requestHash=quote.request_hash, quote=_quote_summary(quote))
    except ClawkalashError as exc:
        return fail_error(exc)


def cmd_swap_status(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    try:
        status = BungeeClient().get_status(args.request_hash)
        return ok(
            "Swap status loaded.",
            requestHash=status.request_hash,
            statusCode=status.code,
            status=status.label,
            terminal=status.is_terminal,
            raw=status.raw,
        )
    except ClawkalashError as exc:
        return fail_error(exc)


def cmd_swap_tokens(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    try:
        client = BungeeClient()
        if args.chain_id is not None:
            return ok("Token resolved.", token=client.resolve_token(args.query, args.chain_id))
        return ok("Tokens found.", tokens=client.search_tokens(args.query))
    except ClawkalashError as exc:
        return fail_error(exc)


def cmd_swap_balances(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    try:
        owner = args.address or str(_require_wallet_record()["address"])
        return ok("Token balances loaded.", address=owner, tokens=BungeeClient().get_token_balances(owner))
    except ClawkalashError as exc:
        return fail_error(exc)


def _add_swap_intent_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--from-chain-id", type=int, required=True)
    parser.add_argument("--to-chain-id", type=int, required=True)
    parser.add_argument("--input-token", required=True)
    parser.add_argument("--output-token", required=True)
    parser.add_argument("--amount", required=True)
    parser.add_argument("--receiver")
    parser.add_argument("--json", action="store_true")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="clawkalash-agent", add_help=True)
    p.add_argument("--log-level")
    p.add_argument("--log-format", choices=config.LOG_FORMATS)
    sub = p.add_subparsers(dest="top")

    wallet = sub.add_parser("wallet")
    wallet_sub = wallet.add_subparsers(dest="wallet_cmd")
    for name, func in (
        ("create", cmd_wallet_create),
        ("import", cmd_wallet_import),
        ("address", cmd_wallet_address),
        ("health", cmd_wallet_health),
    ):
        cmd = wallet_sub.add_parser(name)
        cmd.add_argument("--json", action="store_true")
        cmd.set_defaults(func=func)

    chains = sub.add_parser("chains")
    chains.add_argument("--json", action="store_true")
    chains.set_defaults(func=cmd_chains)

    bridge = sub.add_parser("bridge")
    bridge_sub = bridge.add_subparsers(dest="bridge_cmd")
    bridge_quote = bridge_sub.add_parser("quote")
    bridge_quote.add_argument("--from", dest="from_chain", required=True)
    bridge_quote.add_argument("--to", dest="to_chain", required=True)
    bridge_quote.add_argument("--amount", required=True)
    bridge_quote.add_argument("--json", action="store_true")
    bridge_quote.set_defaults(func=cmd_bridge_quote)

    bridge_balance = bridge_sub.add_parser("balance")
    bridge_balance.add_argument("--chain", required=True)
    bridge_balance.add_argument("--address")
    bridge_balance.add_argument("--json", action="store_true")
    bridge_balance.set_defaults(func=cmd_bridge_balance)

    bridge_run = bridge_sub.add_parser("run")
    bridge_run.add_argument("--from", dest="from_chain", required=True)
    bridge_run.add_argument("--to", dest="to_chain", required=True)
    bridge_run.add_argument("--amount", required=True)
    bridge_run.add_argument("--recipient")
    bridge_run.add_argument("--json", action="store_true")
    bridge_run.set_defaults(func=cmd_bridge_run)

    bridge_resume = bridge_sub.add_parser("resume")
    bridge_resume.add_argument("--burn-tx", required=True)
    bridge_resume.add_argument("--json", action="store_true")
    bridge_resume.set_defaults(func=cmd_bridge_resume)

    bridge_list = bridge_sub.add_parser("list")
    bridge_list.add_argument("--json", action="store_true")
    bridge_list.set_defaults(func=cmd_bridge_list)

    swap = sub.add_parser("swap")
    swap_sub = swap.add_subparsers(dest="swap_cmd")
    swap_quote = swap_sub.add_parser("quote")
    _add_swap_intent_args(swap_quote)
    swap_quote.add_argument("--user")
    swap_quote.set_defaults(func=cmd_swap_quote)

    swap_exec = swap_sub.add_parser("execute")
    _add_swap_intent_args(swap_exec)
    swap_exec.add_argument("--rpc-url")
    swap_exec.set_defaults(func=cmd_swap_execute)

    swap_status = swap_sub.add_parser("status")
    swap_status.add_argument("--request-hash", required=True)
    swap_status.add_argument("--json", action="store_true")
    swap_status.set_defaults(func=cmd_swap_status)

    swap_tokens = swap_sub.add_parser("tokens")
    swap_tokens.add_argument("--query", required=True)
    swap_tokens.add_argument("--chain-id", type=int)
    swap_tokens.add_argument("--json", action="store_true")
    swap_tokens.set_defaults(func=cmd_swap_tokens)

    swap_balances = swap_sub.add_parser("balances")
    swap_balances.add_argument("--address")
    swap_balances.add_argument("--json", action="store_true")
    swap_balances.set_defaults(func=cmd_swap_balances)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 2
    try:
        setup_logging(args.log_level, args.log_format)
    except ConfigError as exc:
        return fail_error(exc)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
