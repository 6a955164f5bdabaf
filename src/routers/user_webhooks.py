from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from src.db import get_supabase
from src.models.webhooks import (
    DEFAULT_SUBSCRIBED_EVENTS,
    SUPPORTED_EVENT_TYPES,
    UserWebhookCreateRequest,
    UserWebhookCreateResponse,
    UserWebhookListResponse,
    UserWebhookResponse,
    WebhookDeliveryLogItem,
)
from src.observability import log_event
from src.pipeline.fanout import DELIVERY_LOG_TABLE, SUBSCRIPTIONS_TABLE


router = APIRouter(prefix="/api/user-webhooks", tags=["user-webhooks"])


def _require_user_id(whop_user_id: str | None) -> str:
    if not whop_user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="whop_user_id is required")
    return whop_user_id


def _to_response(row: dict[str, Any]) -> UserWebhookResponse:
    return UserWebhookResponse(
        id=str(row["id"]),
        whop_user_id=str(row["whop_user_id"]),
        webhook_url=row["webhook_url"],
        webhook_name=row.get("webhook_name"),
        description=row.get("description"),
        events=list(row.get("events") or []),
        is_active=bool(row.get("is_active", True)),
        has_secret=bool(row.get("secret_key")),
        retry_count=int(row.get("retry_count") or 0),
        last_success_at=row.get("last_success_at"),
        last_failure_at=row.get("last_failure_at"),
        last_failure_reason=row.get("last_failure_reason"),
        created_at=row.get("created_at"),
    )


@router.get("", response_model=UserWebhookListResponse)
async def list_user_webhooks(
    whop_user_id: str | None = Query(None),
    db: Any = Depends(get_supabase),
):
    user_id = _require_user_id(whop_user_id)
    result = (
        db.table(SUBSCRIPTIONS_TABLE)
        .select("*")
        .eq("whop_user_id", user_id)
        .order("created_at", desc=True)
        .execute()
    )
    return UserWebhookListResponse(webhooks=[_to_response(row) for row in result.data or []])


@router.post("", response_model=UserWebhookCreateResponse)
async def create_user_webhook(
    data: UserWebhookCreateRequest,
    request: Request,
    db: Any = Depends(get_supabase),
):
    events = data.events or list(DEFAULT_SUBSCRIBED_EVENTS)
    unsupported = sorted(set(events) - set(SUPPORTED_EVENT_TYPES))
    if unsupported:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported event types: {', '.join(unsupported)}",
        )

    result = db.table(SUBSCRIPTIONS_TABLE).insert(
        {
            "whop_user_id": data.whop_user_id,
            "webhook_url": str(data.webhook_url),
            "webhook_name": data.webhook_name or "My Webhook",
            "description": data.description or "Webhook for email engagement events",
            "events": events,
            "secret_key": data.secret_key or None,
            "is_active": True,
            "retry_count": 0,
        }
    ).execute()
    if not result.data:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create webhook")

    row = result.data[0]
    log_event(
        "user_webhook_created",
        request_id=getattr(request.state, "request_id", None),
        subscription_id=row.get("id"),
        whop_user_id=data.whop_user_id,
        events=events,
    )
    return UserWebhookCreateResponse(webhook=_to_response(row))


@router.get("/{webhook_id}/deliveries", response_model=list[WebhookDeliveryLogItem])
async def list_webhook_deliveries(
    webhook_id: str,
    whop_user_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    db: Any = Depends(get_supabase),
):
    user_id = _require_user_id(whop_user_id)
    owned = (
        db.table(SUBSCRIPTIONS_TABLE)
        .select("id")
        .eq("id", webhook_id)
        .eq("whop_user_id", user_id)
        .execute()
    )
    if not owned.data:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook not found")

    result = (
        db.table(DELIVERY_LOG_TABLE)
        .select("id, user_webhook_id, event_type, status, resend_event_id, member_email, error_message, last_attempt_at, event_data")
        .eq("user_webhook_id", webhook_id)
        .order("last_attempt_at", desc=True)
        .limit(limit)
        .execute()
    )
    return [
        WebhookDeliveryLogItem(
            id=str(row["id"]),
            user_webhook_id=str(row["user_webhook_id"]),
            event_type=row["event_type"],
            status=row["status"],
            resend_event_id=row.get("resend_event_id"),
            member_email=row.get("member_email"),
            error_message=row.get("error_message"),
            last_attempt_at=row.get("last_attempt_at"),
            event_data=row.get("event_data"),
        )
        for row in result.data or []
    ]
