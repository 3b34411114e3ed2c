"""Minimal JSON-over-HTTP helper shared by the aggregator and attestation clients."""

from __future__ import annotations

import http.client
import json
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

from . import config
from .errors import TransportError

USER_AGENT = "clawkalash-agent/0.1"


def build_url(base: str, path: str, params: dict[str, Any] | None = None) -> str:
    url = f"{base.rstrip('/')}/{path.lstrip('/')}"
    if params:
        url = f"{url}?{urllib.parse.urlencode(params)}"
    return url


def request_json(
    method: str,
    url: str,
    payload: dict[str, Any] | None = None,
    timeout_sec: int | None = None,
) -> tuple[int, dict[str, Any], dict[str, str]]:
    """Return ``(status, body, headers)``; HTTP error statuses are returned, not raised."""
    headers: dict[str, str] = {"Accept": "application/json", "User-Agent": USER_AGENT}
    raw_data: bytes | None = None
    if payload is not None:
        raw_data = json.dumps(payload).encode("utf-8")
        headers["Content-Type"] = "application/json"

    request = urllib.request.Request(url=url, data=raw_data, headers=headers, method=method.upper())
    timeout = timeout_sec or config.http_timeout_sec()
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            body = response.read().decode("utf-8")
            parsed = json.loads(body) if body else {}
            if not isinstance(parsed, dict):
                raise TransportError("Endpoint returned non-object JSON payload.", details={"url": url})
            return int(response.status), parsed, dict(response.headers.items())
    except urllib.error.HTTPError as exc:
        try:
            body = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
        except (OSError, http.client.HTTPException) as read_exc:
            raise TransportError(f"Request failed: {read_exc}", details={"url": url, "status": exc.code}) from read_exc
        try:
            parsed = json.loads(body) if body else {}
            if not isinstance(parsed, dict):
                parsed = {"message": body}
        except json.JSONDecodeError:
            parsed = {"message": body or str(exc)}
        return int(exc.code), parsed, dict(exc.headers.items()) if exc.headers else {}
    except urllib.error.URLError as exc:
        raise TransportError(f"Request failed: {exc.reason}", details={"url": url}) from exc
    except (OSError, http.client.HTTPException, UnicodeDecodeError, json.JSONDecodeError) as exc:
        # urlopen does not wrap failures raised while reading the response.
        raise TransportError(f"Request failed: {exc}", details={"url": url}) from exc
