from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from src.domain.events import CanonicalEvent
from src.observability import incr_metric, log_event


SENDS_TABLE = "email_analytics_sends"
BROADCASTS_TABLE = "broadcast_jobs"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _first_row(result: Any) -> dict[str, Any] | None:
    return result.data[0] if result.data else None


def _backfill_message_id(
    db: Any,
    record: dict[str, Any],
    message_id: str,
    request_id: str | None,
) -> dict[str, Any]:
    try:
        # Only fill a null id; a concurrent backfill that already landed wins.
        db.table(SENDS_TABLE).update(
            {"resend_email_id": message_id, "updated_at": _now_iso()}
        ).eq("id", record["id"]).is_("resend_email_id", "null").execute()
    except Exception as exc:
        incr_metric("webhook.send_record.backfill_failed")
        log_event(
            "send_record_backfill_failed",
            level=logging.WARNING,
            request_id=request_id,
            send_record_id=record.get("id"),
            error=str(exc),
        )
        return record
    incr_metric("webhook.send_record.backfilled")
    log_event(
        "send_record_backfilled",
        request_id=request_id,
        send_record_id=record.get("id"),
        provider_message_id=message_id,
    )
    return {**record, "resend_email_id": message_id}


def _log_lookup_failure(event: CanonicalEvent, strategy: str, exc: Exception, request_id: str | None) -> None:
    incr_metric("webhook.send_record.lookup_failed", strategy=strategy)
    log_event(
        "send_record_lookup_failed",
        level=logging.WARNING,
        request_id=request_id,
        strategy=strategy,
        provider_message_id=event.provider_message_id,
        provider_batch_id=event.provider_batch_id,
        error=str(exc),
    )


def resolve_send_record(
    db: Any,
    event: CanonicalEvent,
    *,
    request_id: str | None = None,
) -> dict[str, Any] | None:
    """Map an event to its send record.

    Exact provider message id first, then (broadcast id, recipient). A record
    found through the fallback with no message id gets the event's id so the
    next event for the same send resolves on the first lookup. None means the
    send is not tracked here, which is a normal outcome.
    """
    if event.provider_message_id:
        try:
            by_message = (
                db.table(SENDS_TABLE)
                .select("*")
                .eq("resend_email_id", event.provider_message_id)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            _log_lookup_failure(event, "message_id", exc, request_id)
        else:
            record = _first_row(by_message)
            if record:
                incr_metric("webhook.send_record.resolved", strategy="message_id")
                return record

    if event.provider_batch_id and event.recipient:
        try:
            by_batch = (
                db.table(SENDS_TABLE)
                .select("*")
                .eq("resend_broadcast_id", event.provider_batch_id)
                .eq("recipient_email", event.recipient)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            _log_lookup_failure(event, "batch_recipient", exc, request_id)
            return None
        record = _first_row(by_batch)
        if record:
            incr_metric("webhook.send_record.resolved", strategy="batch_recipient")
            if not record.get("resend_email_id") and event.provider_message_id:
                record = _backfill_message_id(db, record, event.provider_message_id, request_id)
            return record

    incr_metric("webhook.send_record.not_found")
    log_event(
        "send_record_not_found",
        request_id=request_id,
        provider_message_id=event.provider_message_id,
        provider_batch_id=event.provider_batch_id,
        recipient=event.recipient,
    )
    return None


def resolve_broadcast(
    db: Any,
    provider_batch_id: str | None,
    *,
    request_id: str | None = None,
) -> dict[str, Any] | None:
    if not provider_batch_id:
        return None
    try:
        result = (
            db.table(BROADCASTS_TABLE)
            .select("id, user_id, resend_broadcast_id, total_members")
            .eq("resend_broadcast_id", provider_batch_id)
            .limit(1)
            .execute()
        )
    except Exception as exc:
        log_event(
            "broadcast_lookup_failed",
            level=logging.WARNING,
            request_id=request_id,
            provider_batch_id=provider_batch_id,
            error=str(exc),
        )
        return None
    broadcast = _first_row(result)
    if not broadcast:
        log_event(
            "broadcast_not_found",
            request_id=request_id,
            provider_batch_id=provider_batch_id,
        )
    return broadcast
