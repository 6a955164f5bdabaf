from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from src.domain.events import CanonicalEvent, parse_timestamp
from src.observability import incr_metric, log_event


LEDGER_TABLE = "inbound_webhook_events"
PROVIDER_SLUG = "resend"

# Effects that are not safe to repeat when a failed event is reprocessed.
STAGE_BROADCAST_COUNTER = "broadcast_counter"
STAGE_SECONDARY_EVENT = "secondary_event"
STAGE_FANOUT = "fanout"


@dataclass
class LedgerClaim:
    event_key: str
    completed_stages: set[str] = field(default_factory=set)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _is_unique_violation(exc: Exception) -> bool:
    # PostgREST surfaces 23505 as an APIError whose text mentions the constraint.
    text = str(exc).lower()
    return "duplicate" in text or "unique" in text or "23505" in text


def _is_stale(row: dict[str, Any], stale_after_seconds: int) -> bool:
    if stale_after_seconds <= 0:
        return False
    claimed_at = parse_timestamp(row.get("claimed_at"))
    if claimed_at is None:
        return True
    return _now() - claimed_at > timedelta(seconds=stale_after_seconds)


def _reclaimable(row: dict[str, Any] | None, stale_after_seconds: int) -> bool:
    if not row:
        return False
    if row.get("status") == "failed":
        return True
    # A claim that never reached processed/failed means the worker died mid-event.
    return row.get("status") == "received" and _is_stale(row, stale_after_seconds)


def claim_event(
    db: Any,
    event: CanonicalEvent,
    *,
    stale_after_seconds: int = 300,
    request_id: str | None = None,
) -> LedgerClaim | None:
    """Record the event key before any effect is applied.

    Returns None when an earlier delivery already owns the key. A row left
    `failed`, or stuck in `received` past `stale_after_seconds`, is taken
    over; its completed stages come back on the claim so they are not
    repeated.
    """
    try:
        db.table(LEDGER_TABLE).insert(
            {
                "provider_slug": PROVIDER_SLUG,
                "event_key": event.event_key,
                "event_type": event.label,
                "status": "received",
                "last_error": None,
                "payload": {"type": event.provider_event_type, "data": event.data},
                "completed_stages": [],
                "claimed_at": _now().isoformat(),
                "processed_at": None,
            }
        ).execute()
        return LedgerClaim(event_key=event.event_key)
    except Exception as exc:
        if not _is_unique_violation(exc):
            incr_metric("webhook.ledger.unavailable", provider_slug=PROVIDER_SLUG)
            log_event(
                "webhook_ledger_insert_failed",
                level=logging.WARNING,
                request_id=request_id,
                event_key=event.event_key,
                error=str(exc),
            )
            return LedgerClaim(event_key=event.event_key)

    try:
        existing = (
            db.table(LEDGER_TABLE)
            .select("id, status, claimed_at, completed_stages")
            .eq("provider_slug", PROVIDER_SLUG)
            .eq("event_key", event.event_key)
            .execute()
        )
        row = existing.data[0] if existing.data else None
        if _reclaimable(row, stale_after_seconds):
            # Conditional on the observed state so two retries cannot both take over.
            query = (
                db.table(LEDGER_TABLE)
                .update({"status": "received", "last_error": None, "claimed_at": _now().isoformat()})
                .eq("id", row["id"])
                .eq("status", row["status"])
            )
            if row.get("claimed_at") is None:
                query = query.is_("claimed_at", "null")
            else:
                query = query.eq("claimed_at", row["claimed_at"])
            reclaimed = query.execute()
            if reclaimed.data:
                incr_metric("webhook.events.reclaimed", provider_slug=PROVIDER_SLUG, previous_status=row["status"])
                log_event(
                    "webhook_event_reclaimed",
                    request_id=request_id,
                    event_key=event.event_key,
                    previous_status=row["status"],
                    completed_stages=sorted(row.get("completed_stages") or []),
                )
                return LedgerClaim(
                    event_key=event.event_key,
                    completed_stages=set(row.get("completed_stages") or []),
                )
    except Exception as exc:
        log_event(
            "webhook_ledger_lookup_failed",
            level=logging.WARNING,
            request_id=request_id,
            event_key=event.event_key,
            error=str(exc),
        )

    incr_metric("webhook.events.duplicate", provider_slug=PROVIDER_SLUG)
    log_event(
        "webhook_duplicate_ignored",
        request_id=request_id,
        event_key=event.event_key,
        event_type=event.label,
    )
    return None


def mark_stage_completed(
    db: Any,
    claim: LedgerClaim,
    stage: str,
    *,
    request_id: str | None = None,
) -> None:
    claim.completed_stages.add(stage)
    try:
        db.table(LEDGER_TABLE).update(
            {"completed_stages": sorted(claim.completed_stages)}
        ).eq("provider_slug", PROVIDER_SLUG).eq("event_key", claim.event_key).execute()
    except Exception as exc:
        log_event(
            "webhook_ledger_stage_update_failed",
            level=logging.WARNING,
            request_id=request_id,
            event_key=claim.event_key,
            stage=stage,
            error=str(exc),
        )


def _finish(db: Any, event_key: str, status: str, error: str | None, request_id: str | None) -> None:
    try:
        db.table(LEDGER_TABLE).update(
            {
                "status": status,
                "last_error": error,
                "processed_at": _now().isoformat(),
            }
        ).eq("provider_slug", PROVIDER_SLUG).eq("event_key", event_key).execute()
    except Exception as exc:
        log_event(
            "webhook_ledger_update_failed",
            level=logging.WARNING,
            request_id=request_id,
            event_key=event_key,
            status=status,
            error=str(exc),
        )


def mark_processed(db: Any, event_key: str, *, request_id: str | None = None) -> None:
    _finish(db, event_key, "processed", None, request_id)


def mark_failed(db: Any, event_key: str, error: str, *, request_id: str | None = None) -> None:
    _finish(db, event_key, "failed", error, request_id)
