from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from datetime import datetime, timezone


class SignatureVerificationError(Exception):
    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 attached to forwarded webhooks as X-Webhook-Signature."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _decode_svix_secret(secret: str) -> bytes:
    material = secret.split("_", 1)[1] if secret.startswith("whsec_") else secret
    try:
        return base64.b64decode(material, validate=True)
    except (binascii.Error, ValueError):
        return material.encode("utf-8")


def _parse_svix_timestamp(raw_timestamp: str) -> datetime | None:
    text = str(raw_timestamp).strip()
    if not text.isdigit():
        return None
    try:
        return datetime.fromtimestamp(int(text), tz=timezone.utc)
    except (ValueError, OSError, OverflowError):
        return None


def compute_svix_signature(*, secret: str, svix_id: str, svix_timestamp: str, body: bytes) -> str:
    signed_content = f"{svix_id}.{svix_timestamp}.".encode("utf-8") + body
    digest = hmac.new(_decode_svix_secret(secret), signed_content, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_svix_signature(
    *,
    secret: str,
    body: bytes,
    svix_id: str | None,
    svix_timestamp: str | None,
    svix_signature: str | None,
    tolerance_seconds: int,
    now: datetime | None = None,
) -> None:
    if not svix_id or not svix_timestamp or not svix_signature:
        raise SignatureVerificationError("missing_headers", "Missing svix-id, svix-timestamp or svix-signature header")

    parsed_timestamp = _parse_svix_timestamp(svix_timestamp)
    if parsed_timestamp is None:
        raise SignatureVerificationError("invalid_timestamp", "Invalid svix-timestamp header format")

    current = now or datetime.now(timezone.utc)
    if tolerance_seconds > 0 and abs((current - parsed_timestamp).total_seconds()) > tolerance_seconds:
        raise SignatureVerificationError("stale_timestamp", "svix-timestamp is outside accepted tolerance window")

    expected = compute_svix_signature(
        secret=secret,
        svix_id=svix_id,
        svix_timestamp=svix_timestamp,
        body=body,
    )
    # Header carries space-separated "v1,<base64>" entries during secret rotation.
    for candidate in svix_signature.split():
        version, _, value = candidate.partition(",")
        if version == "v1" and hmac.compare_digest(expected, value):
            return
    raise SignatureVerificationError("invalid_signature", "Resend webhook signature verification failed")
