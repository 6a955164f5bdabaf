from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from src.domain.events import CanonicalEvent
from src.observability import incr_metric, log_event


SENDS_TABLE = "email_analytics_sends"
APPLY_BROADCAST_EVENT_FN = "apply_broadcast_event"

# Counter column per event type. success_count is capped at total_members
# inside apply_broadcast_event; the rest are plain increments.
BROADCAST_COUNTERS: dict[str, str] = {
    "delivered": "success_count",
    "opened": "opened_count",
    "clicked": "clicked_count",
    "bounced": "error_count",
    "complained": "complained_count",
    "failed": "failed_count",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def counter_for(event: CanonicalEvent) -> str | None:
    return BROADCAST_COUNTERS.get(event.type)


def apply_to_broadcast(
    db: Any,
    broadcast_id: str,
    event: CanonicalEvent,
    *,
    request_id: str | None = None,
) -> bool:
    """Apply one event to the broadcast aggregate.

    The increment runs server-side in a single UPDATE so concurrent webhooks
    for the same broadcast cannot lose updates. last_event/last_event_at are
    written on every call, including events with no counter.
    """
    counter = counter_for(event)
    try:
        db.rpc(
            APPLY_BROADCAST_EVENT_FN,
            {
                "p_broadcast_id": broadcast_id,
                "p_counter": counter,
                "p_last_event": event.label,
            },
        ).execute()
    except Exception as exc:
        incr_metric("webhook.broadcast.update_failed", event_type=event.label)
        log_event(
            "broadcast_counter_update_failed",
            level=logging.ERROR,
            request_id=request_id,
            broadcast_id=broadcast_id,
            event_type=event.label,
            counter=counter,
            error=str(exc),
        )
        return False

    incr_metric("webhook.broadcast.updated", event_type=event.label)
    log_event(
        "broadcast_counter_applied",
        request_id=request_id,
        broadcast_id=broadcast_id,
        event_type=event.label,
        counter=counter,
    )
    return True


def apply_to_send_record(
    db: Any,
    send_record: dict[str, Any],
    event: CanonicalEvent,
    *,
    request_id: str | None = None,
) -> bool:
    if event.type == "other":
        return False
    try:
        db.table(SENDS_TABLE).update(
            {"status": event.type, "updated_at": _now_iso()}
        ).eq("id", send_record["id"]).execute()
    except Exception as exc:
        log_event(
            "send_record_status_update_failed",
            level=logging.WARNING,
            request_id=request_id,
            send_record_id=send_record.get("id"),
            event_type=event.label,
            error=str(exc),
        )
        return False
    return True
