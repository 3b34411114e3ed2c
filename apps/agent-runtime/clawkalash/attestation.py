"""Client for Circle's Iris attestation service (CCTP v2)."""

from __future__ import annotations

from typing import Any

from .errors import TransportError
from .http_json import build_url, request_json


class IrisAttestationClient:
    def __init__(self, base_url: str):
        self.base_url = base_url

    def fetch_messages(self, source_domain: int, burn_tx_hash: str) -> list[dict[str, Any]]:
        """Messages emitted by a burn, each with ``status``, ``message`` and ``attestation``.

        A 404 means the burn is not indexed yet and yields an empty list.
        """
        url = build_url(self.base_url, f"/v2/messages/{int(source_domain)}", {"transactionHash": burn_tx_hash})
        status, body, _ = request_json("GET", url)
        if status == 404:
            return []
        if status < 200 or status >= 300:
            raise TransportError(f"Attestation service returned HTTP {status}.", details={"status": status, "url": url})
        messages = body.get("messages")
        if not isinstance(messages, list):
            return []
        return [item for item in messages if isinstance(item, dict)]
