from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from src.observability import log_event


CanonicalEventType = Literal[
    "sent",
    "delivered",
    "opened",
    "clicked",
    "bounced",
    "complained",
    "failed",
    "delivery_delayed",
    "unsubscribed",
    "other",
]

# Fractional seconds directly before the UTC offset (or end of string).
_FRACTION_RE = re.compile(r"\.(\d+)(?=[+-]\d{2}:?\d{2}$|$)")

_RESEND_EVENT_TYPES: dict[str, CanonicalEventType] = {
    "email.sent": "sent",
    "email.delivered": "delivered",
    "email.opened": "opened",
    "email.clicked": "clicked",
    "email.bounced": "bounced",
    "email.complained": "complained",
    "email.failed": "failed",
    "email.delivery_delayed": "delivery_delayed",
    "email.unsubscribed": "unsubscribed",
}


class MalformedPayload(ValueError):
    """Raised when an inbound webhook body cannot be decoded."""


@dataclass(frozen=True)
class OpenMetadata:
    ip: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class LinkMetadata:
    url: str | None = None
    ip: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class CanonicalEvent:
    """Provider delivery event in the shape every pipeline stage consumes."""

    type: CanonicalEventType
    provider_event_type: str
    event_key: str
    occurred_at: datetime
    provider_message_id: str | None = None
    provider_batch_id: str | None = None
    recipient: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return self.type


@dataclass(frozen=True)
class OpenedEvent(CanonicalEvent):
    open: OpenMetadata = field(default_factory=OpenMetadata)


@dataclass(frozen=True)
class ClickedEvent(CanonicalEvent):
    link: LinkMetadata = field(default_factory=LinkMetadata)


@dataclass(frozen=True)
class OtherEvent(CanonicalEvent):
    @property
    def label(self) -> str:
        return f"other:{self.provider_event_type}"


def normalize_resend_event_type(value: Any) -> CanonicalEventType:
    if not value:
        return "other"
    return _RESEND_EVENT_TYPES.get(str(value).strip().lower(), "other")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp from a provider payload or a store row.

    Postgres trims trailing zeros from fractional seconds and
    datetime.fromisoformat before 3.11 only accepts 3 or 6 digits, so the
    fraction is padded or truncated to microseconds first. Naive values
    are taken as UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip().replace("Z", "+00:00")
        text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _first_str(*values: Any) -> str | None:
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def _extract_recipient(data: dict[str, Any]) -> str | None:
    to = data.get("to")
    if isinstance(to, list):
        return _first_str(*to)
    return _first_str(to, data.get("email"), data.get("recipient"))


def _sub_object(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def compute_event_key(item: dict[str, Any], *, svix_id: str | None, index: int | None) -> str:
    if svix_id:
        return f"svix:{svix_id}" if index is None else f"svix:{svix_id}:{index}"
    canonical = json.dumps(item, sort_keys=True, separators=(",", ":"), default=str)
    return f"sha256:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"


def normalize_resend_event(
    item: dict[str, Any],
    *,
    event_key: str,
    received_at: datetime,
) -> CanonicalEvent:
    raw_type = _first_str(item.get("type"), item.get("event"), item.get("event_type")) or "unknown"
    event_type = normalize_resend_event_type(raw_type)
    data = _sub_object(item, "data")
    click = _sub_object(data, "click")
    opened = _sub_object(data, "open")

    metadata_ts = click.get("timestamp") if event_type == "clicked" else opened.get("timestamp") if event_type == "opened" else None
    occurred_at = (
        parse_timestamp(metadata_ts)
        or parse_timestamp(data.get("created_at"))
        or parse_timestamp(item.get("created_at"))
        or received_at
    )
    common = {
        "type": event_type,
        "provider_event_type": raw_type,
        "event_key": event_key,
        "occurred_at": occurred_at,
        "provider_message_id": _first_str(data.get("email_id"), data.get("id")),
        "provider_batch_id": _first_str(data.get("broadcast_id")),
        "recipient": _extract_recipient(data),
        "data": data,
    }

    if event_type == "opened":
        return OpenedEvent(
            **common,
            open=OpenMetadata(
                ip=_first_str(opened.get("ipAddress"), opened.get("ip_address")),
                user_agent=_first_str(opened.get("userAgent"), opened.get("user_agent")),
            ),
        )
    if event_type == "clicked":
        return ClickedEvent(
            **common,
            link=LinkMetadata(
                url=_first_str(click.get("link"), click.get("url")),
                ip=_first_str(click.get("ipAddress"), click.get("ip_address")),
                user_agent=_first_str(click.get("userAgent"), click.get("user_agent")),
            ),
        )
    if event_type == "other":
        return OtherEvent(**common)
    return CanonicalEvent(**common)


def parse_webhook_body(
    raw_body: bytes,
    *,
    svix_id: str | None = None,
    received_at: datetime | None = None,
) -> list[CanonicalEvent]:
    """Decode a Resend webhook body into canonical events.

    Resend delivers one event object per request; the legacy forwarder shape
    posts an array of event objects. Anything that is not valid JSON, or is
    JSON but neither an object nor an array, raises MalformedPayload.
    """
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayload("Invalid JSON") from exc

    received = received_at or datetime.now(timezone.utc)
    if isinstance(payload, dict):
        key = compute_event_key(payload, svix_id=svix_id, index=None)
        return [normalize_resend_event(payload, event_key=key, received_at=received)]
    if not isinstance(payload, list):
        raise MalformedPayload("Webhook body must be a JSON object or array")

    events: list[CanonicalEvent] = []
    for index, item in enumerate(payload):
        if not isinstance(item, dict):
            log_event(
                "webhook_array_entry_skipped",
                level=logging.WARNING,
                index=index,
                entry_type=type(item).__name__,
            )
            continue
        key = compute_event_key(item, svix_id=svix_id, index=index)
        events.append(normalize_resend_event(item, event_key=key, received_at=received))
    return events
