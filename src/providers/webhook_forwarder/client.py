from __future__ import annotations

import json
from typing import Any

import httpx

from src.domain.signatures import sign_payload


SIGNATURE_HEADER = "X-Webhook-Signature"
_TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class WebhookDeliveryError(Exception):
    """Delivery failure for a subscriber-registered webhook endpoint."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def category(self) -> str:
        if self.status_code is None:
            return "transient"
        if self.status_code in _TRANSIENT_STATUS_CODES:
            return "transient"
        if 400 <= self.status_code < 500:
            return "terminal"
        return "unknown"

    @property
    def retryable(self) -> bool:
        return self.category == "transient"


def serialize_envelope(envelope: dict[str, Any]) -> bytes:
    return json.dumps(envelope, separators=(",", ":"), default=str).encode("utf-8")


def build_headers(*, body: bytes, secret_key: str | None, user_agent: str) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "User-Agent": user_agent,
    }
    if secret_key:
        headers[SIGNATURE_HEADER] = sign_payload(body, secret_key)
    return headers


def _post(*, url: str, content: bytes, headers: dict[str, str], timeout_seconds: float) -> httpx.Response:
    with httpx.Client(timeout=timeout_seconds) as client:
        return client.post(url, content=content, headers=headers)


def deliver_envelope(
    *,
    url: str,
    envelope: dict[str, Any],
    secret_key: str | None,
    user_agent: str,
    timeout_seconds: float,
) -> int:
    body = serialize_envelope(envelope)
    headers = build_headers(body=body, secret_key=secret_key, user_agent=user_agent)
    try:
        response = _post(url=url, content=body, headers=headers, timeout_seconds=timeout_seconds)
    except httpx.TimeoutException as exc:
        raise WebhookDeliveryError(f"Timed out after {timeout_seconds}s: {exc}") from exc
    except httpx.HTTPError as exc:
        raise WebhookDeliveryError(f"Connectivity error: {exc}") from exc

    if not 200 <= response.status_code < 300:
        reason = getattr(response, "reason_phrase", "") or ""
        message = f"HTTP {response.status_code}: {reason}" if reason else f"HTTP {response.status_code}"
        raise WebhookDeliveryError(message, status_code=response.status_code)
    return response.status_code
