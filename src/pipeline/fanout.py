from __future__ import annotations

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from src.domain.events import CanonicalEvent
from src.observability import incr_metric, log_event
from src.providers.webhook_forwarder import client as forwarder


SUBSCRIPTIONS_TABLE = "user_webhooks"
DELIVERY_LOG_TABLE = "webhook_events"
CONTACTS_TABLE = "email_contacts"
RECORD_FAILURE_FN = "record_user_webhook_failure"
ENVELOPE_SOURCE = "resend"
_STRIPPED_DATA_FIELDS = ("from", "created_at")


@dataclass
class DeliveryOutcome:
    subscription_id: str
    status: Literal["sent", "failed"]
    error: str | None = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _single(value: Any) -> dict[str, Any]:
    # PostgREST embeds to-one joins as objects and to-many joins as lists.
    if isinstance(value, list):
        value = value[0] if value else None
    return value if isinstance(value, dict) else {}


def resolve_owner_user_id(
    db: Any,
    event: CanonicalEvent,
    broadcast: dict[str, Any] | None,
    *,
    request_id: str | None = None,
) -> str | None:
    if broadcast and broadcast.get("user_id"):
        return str(broadcast["user_id"])
    if not event.recipient:
        return None
    try:
        result = (
            db.table(CONTACTS_TABLE)
            .select("email_audiences!inner(email_platform_configs!inner(whop_user_id))")
            .eq("email", event.recipient)
            .execute()
        )
    except Exception as exc:
        log_event(
            "owner_lookup_failed",
            level=logging.WARNING,
            request_id=request_id,
            recipient=event.recipient,
            error=str(exc),
        )
        return None

    owners: set[str] = set()
    for row in result.data or []:
        audience = _single(row.get("email_audiences"))
        owner = _single(audience.get("email_platform_configs")).get("whop_user_id")
        if owner:
            owners.add(str(owner))
    if not owners:
        log_event("owner_not_found", request_id=request_id, recipient=event.recipient)
        return None
    # The same address can sit in several creators' audiences; without a
    # broadcast there is no way to tell whose event this is.
    if len(owners) > 1:
        incr_metric("webhook.fanout.owner_ambiguous")
        log_event(
            "owner_ambiguous",
            level=logging.WARNING,
            request_id=request_id,
            recipient=event.recipient,
            candidate_count=len(owners),
        )
        return None
    return owners.pop()


def clean_event_data(data: dict[str, Any]) -> dict[str, Any]:
    cleaned = {key: value for key, value in data.items() if key not in _STRIPPED_DATA_FIELDS}
    headers = cleaned.get("headers")
    if isinstance(headers, list):
        cleaned["headers"] = [
            header
            for header in headers
            if not (isinstance(header, dict) and "unsubscribe" in str(header.get("name", "")).lower())
        ]
    return cleaned


def build_envelope(event: CanonicalEvent, subscription: dict[str, Any]) -> dict[str, Any]:
    return {
        "event_type": event.provider_event_type,
        "timestamp": event.occurred_at.isoformat(),
        "email": event.recipient,
        "email_id": event.provider_message_id,
        "data": clean_event_data(event.data),
        "source": ENVELOPE_SOURCE,
        "webhook_id": subscription["id"],
    }


def find_subscriptions(
    db: Any,
    owner_user_id: str,
    event: CanonicalEvent,
    *,
    request_id: str | None = None,
) -> list[dict[str, Any]]:
    try:
        result = (
            db.table(SUBSCRIPTIONS_TABLE)
            .select("*")
            .eq("whop_user_id", owner_user_id)
            .eq("is_active", True)
            .contains("events", [event.provider_event_type])
            .execute()
        )
    except Exception as exc:
        log_event(
            "webhook_subscriptions_lookup_failed",
            level=logging.ERROR,
            request_id=request_id,
            owner_user_id=owner_user_id,
            event_type=event.provider_event_type,
            error=str(exc),
        )
        return []
    return list(result.data or [])


def _write_delivery_log(
    db: Any,
    event: CanonicalEvent,
    subscription: dict[str, Any],
    envelope: dict[str, Any],
    outcome: DeliveryOutcome,
    request_id: str | None,
) -> None:
    try:
        db.table(DELIVERY_LOG_TABLE).insert(
            {
                "user_webhook_id": subscription["id"],
                "event_type": event.provider_event_type,
                "event_data": envelope,
                "resend_event_id": event.provider_message_id,
                "email_id": event.provider_message_id,
                "member_email": event.recipient,
                "status": outcome.status,
                "last_attempt_at": _now_iso(),
                "error_message": outcome.error,
            }
        ).execute()
    except Exception as exc:
        log_event(
            "webhook_delivery_log_failed",
            level=logging.WARNING,
            request_id=request_id,
            subscription_id=subscription["id"],
            error=str(exc),
        )


def _update_subscription_state(
    db: Any,
    subscription: dict[str, Any],
    outcome: DeliveryOutcome,
    request_id: str | None,
) -> None:
    try:
        if outcome.status == "sent":
            db.table(SUBSCRIPTIONS_TABLE).update(
                {"last_success_at": _now_iso(), "retry_count": 0}
            ).eq("id", subscription["id"]).execute()
        else:
            db.rpc(
                RECORD_FAILURE_FN,
                {"p_webhook_id": subscription["id"], "p_reason": outcome.error},
            ).execute()
    except Exception as exc:
        log_event(
            "webhook_subscription_state_update_failed",
            level=logging.WARNING,
            request_id=request_id,
            subscription_id=subscription["id"],
            delivery_status=outcome.status,
            error=str(exc),
        )


def deliver_to_subscription(
    db: Any,
    event: CanonicalEvent,
    subscription: dict[str, Any],
    *,
    timeout_seconds: float,
    user_agent: str,
    request_id: str | None = None,
) -> DeliveryOutcome:
    envelope = build_envelope(event, subscription)
    try:
        forwarder.deliver_envelope(
            url=subscription["webhook_url"],
            envelope=envelope,
            secret_key=subscription.get("secret_key"),
            user_agent=user_agent,
            timeout_seconds=timeout_seconds,
        )
        outcome = DeliveryOutcome(subscription_id=subscription["id"], status="sent")
    except forwarder.WebhookDeliveryError as exc:
        outcome = DeliveryOutcome(subscription_id=subscription["id"], status="failed", error=str(exc))
        incr_metric("webhook.fanout.failed", category=exc.category)
    except Exception as exc:
        outcome = DeliveryOutcome(subscription_id=subscription["id"], status="failed", error=str(exc))
        incr_metric("webhook.fanout.failed", category="unknown")

    if outcome.status == "sent":
        incr_metric("webhook.fanout.sent")
    log_event(
        "webhook_forwarded",
        level=logging.INFO if outcome.status == "sent" else logging.WARNING,
        request_id=request_id,
        subscription_id=subscription["id"],
        webhook_url=subscription.get("webhook_url"),
        event_type=event.provider_event_type,
        delivery_status=outcome.status,
        error=outcome.error,
    )
    _write_delivery_log(db, event, subscription, envelope, outcome, request_id)
    _update_subscription_state(db, subscription, outcome, request_id)
    return outcome


def dispatch(
    db: Any,
    event: CanonicalEvent,
    owner_user_id: str,
    *,
    timeout_seconds: float,
    max_workers: int,
    user_agent: str,
    request_id: str | None = None,
) -> list[DeliveryOutcome]:
    """Forward the event to every active subscription of the owner.

    Deliveries run on a small worker pool; each one logs and records its own
    outcome, so one slow or failing endpoint never affects another. No
    automatic redelivery happens here: retry_count is bookkeeping only.
    """
    subscriptions = find_subscriptions(db, owner_user_id, event, request_id=request_id)
    if not subscriptions:
        log_event(
            "webhook_fanout_no_subscribers",
            request_id=request_id,
            owner_user_id=owner_user_id,
            event_type=event.provider_event_type,
        )
        return []

    workers = max(1, min(int(max_workers or 1), len(subscriptions)))
    outcomes: list[DeliveryOutcome] = []

    def _work(subscription: dict[str, Any]) -> DeliveryOutcome:
        try:
            return deliver_to_subscription(
                db,
                event,
                subscription,
                timeout_seconds=timeout_seconds,
                user_agent=user_agent,
                request_id=request_id,
            )
        except Exception as exc:
            log_event(
                "webhook_fanout_worker_failed",
                level=logging.ERROR,
                request_id=request_id,
                subscription_id=subscription.get("id"),
                error=str(exc),
            )
            return DeliveryOutcome(subscription_id=str(subscription.get("id")), status="failed", error=str(exc))

    with ThreadPoolExecutor(max_workers=workers) as executor:
        pending: set[Future[DeliveryOutcome]] = set()
        idx = 0
        while idx < len(subscriptions) or pending:
            while idx < len(subscriptions) and len(pending) < workers:
                pending.add(executor.submit(_work, subscriptions[idx]))
                idx += 1
            done, pending = wait(pending, return_when=FIRST_COMPLETED)
            for future in done:
                outcomes.append(future.result())

    log_event(
        "webhook_fanout_completed",
        request_id=request_id,
        owner_user_id=owner_user_id,
        event_type=event.provider_event_type,
        attempted=len(outcomes),
        sent=sum(1 for outcome in outcomes if outcome.status == "sent"),
    )
    return outcomes
