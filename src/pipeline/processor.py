from __future__ import annotations

import logging
from typing import Any

from src.config import Settings
from src.domain.events import CanonicalEvent
from src.observability import incr_metric, log_event
from src.pipeline import counters, fanout, ledger, resolver, secondary_events


def apply_event(
    db: Any,
    event: CanonicalEvent,
    *,
    config: Settings,
    claim: ledger.LedgerClaim | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Run one canonical event through resolve, count, record and fan out.

    Each stage handles its own store failures, so a dropped counter update
    still lets the analytics insert and the fan-out run. When the event is a
    retry of a failed attempt, stages recorded on the claim as completed are
    skipped; resolution and the send-record status update are idempotent and
    always run.
    """
    claim = claim or ledger.LedgerClaim(event_key=event.event_key)
    skipped = sorted(claim.completed_stages)
    send_record = resolver.resolve_send_record(db, event, request_id=request_id)
    if send_record:
        counters.apply_to_send_record(db, send_record, event, request_id=request_id)

    batch_id = event.provider_batch_id or (send_record or {}).get("resend_broadcast_id")
    broadcast = resolver.resolve_broadcast(db, batch_id, request_id=request_id)
    broadcast_updated = False
    if broadcast and ledger.STAGE_BROADCAST_COUNTER not in claim.completed_stages:
        broadcast_updated = counters.apply_to_broadcast(db, broadcast["id"], event, request_id=request_id)
        if broadcast_updated:
            ledger.mark_stage_completed(db, claim, ledger.STAGE_BROADCAST_COUNTER, request_id=request_id)

    analytics_recorded = False
    if ledger.STAGE_SECONDARY_EVENT not in claim.completed_stages:
        analytics_recorded = secondary_events.record_secondary_event(
            db,
            event,
            broadcast_id=broadcast["id"] if broadcast else None,
            request_id=request_id,
        )
        if analytics_recorded:
            ledger.mark_stage_completed(db, claim, ledger.STAGE_SECONDARY_EVENT, request_id=request_id)

    owner_user_id = fanout.resolve_owner_user_id(db, event, broadcast, request_id=request_id)
    deliveries: list[fanout.DeliveryOutcome] = []
    if owner_user_id and ledger.STAGE_FANOUT not in claim.completed_stages:
        deliveries = fanout.dispatch(
            db,
            event,
            owner_user_id,
            timeout_seconds=config.webhook_forward_timeout_seconds,
            max_workers=config.webhook_forward_max_concurrent_workers,
            user_agent=config.webhook_forward_user_agent,
            request_id=request_id,
        )
        ledger.mark_stage_completed(db, claim, ledger.STAGE_FANOUT, request_id=request_id)

    return {
        "event_key": event.event_key,
        "event_type": event.label,
        "send_record_id": send_record.get("id") if send_record else None,
        "broadcast_id": broadcast["id"] if broadcast else None,
        "broadcast_updated": broadcast_updated,
        "analytics_recorded": analytics_recorded,
        "owner_user_id": owner_user_id,
        "deliveries": len(deliveries),
        "skipped_stages": skipped,
    }


def process_events(
    db: Any,
    events: list[CanonicalEvent],
    *,
    config: Settings,
    request_id: str | None = None,
) -> list[dict[str, Any]]:
    results: list[dict[str, Any]] = []
    for event in events:
        incr_metric("webhook.events.received", provider_slug=ledger.PROVIDER_SLUG, event_type=event.label)
        claim = ledger.claim_event(
            db,
            event,
            stale_after_seconds=config.webhook_ledger_stale_claim_seconds,
            request_id=request_id,
        )
        if claim is None:
            results.append({"event_key": event.event_key, "event_type": event.label, "duplicate": True})
            continue
        try:
            summary = apply_event(db, event, config=config, claim=claim, request_id=request_id)
        except Exception as exc:
            incr_metric("webhook.events.failed", provider_slug=ledger.PROVIDER_SLUG)
            ledger.mark_failed(db, event.event_key, str(exc), request_id=request_id)
            log_event(
                "webhook_processing_failed",
                level=logging.ERROR,
                request_id=request_id,
                event_key=event.event_key,
                event_type=event.label,
                error=str(exc),
            )
            raise
        ledger.mark_processed(db, event.event_key, request_id=request_id)
        incr_metric("webhook.events.processed", provider_slug=ledger.PROVIDER_SLUG, event_type=event.label)
        log_event("webhook_processed", request_id=request_id, **summary)
        results.append(summary)
    return results
