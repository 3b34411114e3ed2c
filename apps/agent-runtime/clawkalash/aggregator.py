"""Bungee aggregator client.

Every route the aggregator returns is parsed into a known signing payload here,
but it is not trusted: callers pass ``SwapQuote.payload`` through
``guard.check_payload`` before signing or sending anything.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from . import config
from .chains import ChainCache
from .errors import AggregatorError, TransportError
from .guard import ApprovalData, SigningPayload, SwapIntent, check_payload, parse_approval_data, parse_signing_payload
from .http_json import build_url, request_json

logger = logging.getLogger(__name__)

FEE_TAKER_ADDRESS = "0x02Bc8c352b58d929Cc3D60545511872c85F30650"
FEE_BPS = "20"

RETRY_ATTEMPTS = 3
RETRY_DELAY_SEC = 1.0

STATUS_CODES = {
    1: "PENDING",
    2: "IN PROGRESS",
    3: "COMPLETED",
    4: "COMPLETED (partial)",
    5: "EXPIRED",
    6: "CANCELLED",
    7: "REFUNDED",
}
TERMINAL_STATUS_CODES = frozenset({3, 4, 5, 6, 7})

T = TypeVar("T")


@dataclass(frozen=True)
class SwapQuote:
    quote_id: str
    request_type: str
    payload: SigningPayload
    approval: ApprovalData | None
    input_amount: str
    output_amount: str
    request_hash: str | None = None
    user_op: str | None = None
    route: dict[str, Any] = field(default_factory=dict)

    def verify(self, intent: SwapIntent) -> None:
        check_payload(intent, self.payload, self.approval)


@dataclass(frozen=True)
class SwapStatus:
    request_hash: str
    code: int
    raw: dict[str, Any]

    @property
    def label(self) -> str:
        return STATUS_CODES.get(self.code, f"UNKNOWN ({self.code})")

    @property
    def is_terminal(self) -> bool:
        return self.code in TERMINAL_STATUS_CODES


def build_quote_params(intent: SwapIntent) -> dict[str, str]:
    return {
        "userAddress": intent.user_address,
        "receiverAddress": intent.receiver_address or intent.user_address,
        "originChainId": str(intent.origin_chain_id),
        "destinationChainId": str(intent.destination_chain_id),
        "inputToken": intent.input_token_address,
        "outputToken": intent.output_token_address,
        "inputAmount": str(intent.input_amount_base_units),
        "feeTakerAddress": FEE_TAKER_ADDRESS,
        "feeBps": FEE_BPS,
    }


def _error_message(body: dict[str, Any]) -> str:
    error = body.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return str(body.get("message") or "Unknown error")


class BungeeClient:
    def __init__(
        self,
        base_url: str | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        attempts: int = RETRY_ATTEMPTS,
        delay_sec: float = RETRY_DELAY_SEC,
    ):
        self.base_url = base_url or config.bungee_api_base()
        self.sleep = sleep
        self.attempts = attempts
        self.delay_sec = delay_sec

    def _with_retry(self, fn: Callable[[], T]) -> T:
        # Only transport failures are retried; guard rejections propagate at once.
        for attempt in range(self.attempts):
            try:
                return fn()
            except TransportError as exc:
                if attempt == self.attempts - 1:
                    raise
                logger.warning(f"Aggregator request failed (attempt {attempt + 1}/{self.attempts}): {exc}")
                self.sleep(self.delay_sec * (attempt + 1))
        raise AggregatorError("Retry loop exited without a result.")

    def _get_result(self, path: str, params: dict[str, Any] | None, what: str) -> tuple[Any, dict[str, str]]:
        url = build_url(self.base_url, path, params)
        status, body, headers = request_json("GET", url)
        server_req_id = headers.get("server-req-id") or headers.get("Server-Req-Id")
        if status < 200 or status >= 300 or not body.get("success"):
            raise AggregatorError(
                f"{what} error: {_error_message(body)}. server-req-id: {server_req_id}",
                details={"status": status, "serverReqId": server_req_id},
            )
        if body.get("result") is None:
            raise AggregatorError(
                f"No result in {what.lower()} response. server-req-id: {server_req_id}",
                details={"status": status, "serverReqId": server_req_id},
            )
        return body["result"], headers

    def fetch_quote_route(self, intent: SwapIntent) -> dict[str, Any]:
        def _fetch() -> dict[str, Any]:
            result, headers = self._get_result("/api/v1/bungee/quote", build_quote_params(intent), "Quote")
            route = result.get("autoRoute") if isinstance(result, dict) else None
            if not isinstance(route, dict):
                server_req_id = headers.get("server-req-id") or headers.get("Server-Req-Id")
                raise AggregatorError(f"No autoRoute available. server-req-id: {server_req_id}", code="no_route")
            return route

        return self._with_retry(_fetch)

    def get_quote(self, intent: SwapIntent) -> SwapQuote:
        route = self.fetch_quote_route(intent)
        payload = parse_signing_payload(route)
        approval = parse_approval_data(route.get("approvalData"))
        output = route.get("output")
        output_amount = output.get("amount") if isinstance(output, dict) else None
        quote = SwapQuote(
            quote_id=str(route.get("quoteId") or ""),
            request_type=str(route.get("requestType") or ""),
            payload=payload,
            approval=approval,
            input_amount=str(intent.input_amount_base_units),
            output_amount=str(output_amount or route.get("outputAmount") or "0"),
            request_hash=route.get("requestHash") or None,
            user_op=route.get("userOp") or None,
            route=route,
        )
        logger.info(f"Quote {quote.quote_id} ({type(payload).__name__}) outputs {quote.output_amount}")
        return quote

    def submit_permit2(self, quote: SwapQuote, signature: str) -> str:
        witness = getattr(quote.payload, "witness", None)
        if witness is None:
            raise AggregatorError("Quote has no Permit2 witness to submit.", code="invalid_quote")
        request_body = {
            "requestType": quote.request_type,
            "request": witness,
            "userSignature": signature,
            "quoteId": quote.quote_id,
        }
        url = build_url(self.base_url, "/api/v1/bungee/submit")

        def _submit() -> str:
            status, body, _ = request_json("POST", url, request_body)
            result = body.get("result")
            request_hash = result.get("requestHash") if isinstance(result, dict) else None
            if status < 200 or status >= 300 or not body.get("success") or not request_hash:
                raise AggregatorError(f"Submit error: {_error_message(body)}", details={"status": status})
            return str(request_hash)

        return self._with_retry(_submit)

    def get_status(self, request_hash: str) -> SwapStatus:
        result, _ = self._get_result("/api/v1/bungee/status", {"requestHash": request_hash}, "Status")
        entries = result if isinstance(result, list) else [result]
        first = entries[0] if entries and isinstance(entries[0], dict) else {}
        try:
            code = int(first.get("bungeeStatusCode", 0))
        except (TypeError, ValueError):
            code = 0
        return SwapStatus(request_hash=request_hash, code=code, raw=first)

    def search_tokens(self, query: str) -> list[dict[str, Any]]:
        result, _ = self._get_result("/api/v1/tokens/search", {"query": query}, "Token search")
        if not isinstance(result, list):
            return []
        return [item for item in result if isinstance(item, dict)]

    def resolve_token(self, query: str, chain_id: int) -> dict[str, Any]:
        for token in self.search_tokens(query):
            try:
                token_chain = int(token.get("chainId", -1))
            except (TypeError, ValueError):
                continue
            if token_chain == int(chain_id):
                return {
                    "address": str(token["address"]),
                    "symbol": str(token.get("symbol") or ""),
                    "decimals": int(token["decimals"]),
                }
        raise AggregatorError(f'Token "{query}" not found on chain {chain_id}', code="token_not_found")

    def get_token_balances(self, user_address: str) -> list[dict[str, Any]]:
        def _fetch() -> list[dict[str, Any]]:
            result, _ = self._get_result("/api/v1/tokens/list", {"userAddress": user_address}, "Token list")
            tokens: list[dict[str, Any]] = []
            for entries in (result.values() if isinstance(result, dict) else []):
                for token in entries or []:
                    if isinstance(token, dict) and float(token.get("balanceInUsd") or 0) > 0:
                        tokens.append(token)
            return sorted(tokens, key=lambda token: float(token.get("balanceInUsd") or 0), reverse=True)

        return self._with_retry(_fetch)

    def fetch_supported_chains(self, cache: ChainCache) -> ChainCache:
        """Populate ``cache`` once; later calls reuse it until ``invalidate``."""
        if cache.is_populated:
            return cache
        result, _ = self._get_result("/api/v1/supported-chains", None, "Supported chains")
        cache.populate(result if isinstance(result, list) else [])
        return cache
