from __future__ import annotations

import logging
from typing import Any

from src.domain.events import CanonicalEvent, ClickedEvent, OpenedEvent
from src.observability import incr_metric, log_event


OPEN_EVENTS_TABLE = "email_open_events"
CLICK_EVENTS_TABLE = "email_click_events"
UNKNOWN_LINK = "unknown"


def build_secondary_row(event: CanonicalEvent, broadcast_id: str | None) -> tuple[str, dict[str, Any]] | None:
    base = {
        "broadcast_id": broadcast_id,
        "resend_broadcast_id": event.provider_batch_id,
        "email_id": event.provider_message_id,
        "recipient_email": event.recipient,
    }
    if isinstance(event, ClickedEvent):
        return CLICK_EVENTS_TABLE, {
            **base,
            "clicked_link": event.link.url or UNKNOWN_LINK,
            "ip_address": event.link.ip,
            "user_agent": event.link.user_agent,
            "clicked_at": event.occurred_at.isoformat(),
        }
    if isinstance(event, OpenedEvent):
        return OPEN_EVENTS_TABLE, {
            **base,
            "ip_address": event.open.ip,
            "user_agent": event.open.user_agent,
            "opened_at": event.occurred_at.isoformat(),
        }
    return None


def record_secondary_event(
    db: Any,
    event: CanonicalEvent,
    *,
    broadcast_id: str | None,
    request_id: str | None = None,
) -> bool:
    """Append opens and clicks to the analytics tables. Best effort."""
    built = build_secondary_row(event, broadcast_id)
    if built is None:
        return False
    table_name, row = built
    try:
        db.table(table_name).insert(row).execute()
    except Exception as exc:
        incr_metric("webhook.secondary_event.insert_failed", table=table_name)
        log_event(
            "secondary_event_insert_failed",
            level=logging.WARNING,
            request_id=request_id,
            table=table_name,
            broadcast_id=broadcast_id,
            provider_message_id=event.provider_message_id,
            error=str(exc),
        )
        return False
    incr_metric("webhook.secondary_event.recorded", table=table_name)
    return True
