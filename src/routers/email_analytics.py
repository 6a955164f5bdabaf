from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from starlette.concurrency import run_in_threadpool

from src.config import settings
from src.db import get_supabase
from src.domain.events import parse_timestamp
from src.domain.send_time import analyze_engagement
from src.models.email_analytics import (
    BroadcastClickEventItem,
    OptimalSendTimesResponse,
    SendTimeRecommendations,
)
from src.observability import log_event
from src.pipeline.resolver import BROADCASTS_TABLE
from src.pipeline.secondary_events import CLICK_EVENTS_TABLE, OPEN_EVENTS_TABLE


router = APIRouter(prefix="/api/email-analytics", tags=["email-analytics"])


def _require_user_id(whop_user_id: str | None) -> str:
    if not whop_user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="whop_user_id is required")
    return whop_user_id


def _insufficient(message: str, lookback_days: int) -> OptimalSendTimesResponse:
    return OptimalSendTimesResponse(
        status="insufficient_data",
        message=message,
        recommendations=SendTimeRecommendations(),
        total_opens=0,
        total_clicks=0,
        data_points=0,
        lookback_days=lookback_days,
    )


def _engagement_times(
    db: Any,
    table_name: str,
    ts_column: str,
    broadcast_ids: list[str],
    cutoff_iso: str,
) -> list[datetime]:
    result = (
        db.table(table_name)
        .select(f"{ts_column}, broadcast_id")
        .in_("broadcast_id", broadcast_ids)
        .gte(ts_column, cutoff_iso)
        .execute()
    )
    times = []
    for row in result.data or []:
        moment = parse_timestamp(row.get(ts_column))
        if moment:
            times.append(moment)
    return times


def compute_optimal_send_times(db: Any, whop_user_id: str, *, lookback_days: int) -> OptimalSendTimesResponse:
    broadcasts = db.table(BROADCASTS_TABLE).select("id").eq("user_id", whop_user_id).execute()
    broadcast_ids = [str(row["id"]) for row in broadcasts.data or []]
    if not broadcast_ids:
        return _insufficient("No broadcasts found. Send some emails to get recommendations.", lookback_days)

    cutoff_iso = (datetime.now(timezone.utc) - timedelta(days=lookback_days)).isoformat()
    opened_at = _engagement_times(db, OPEN_EVENTS_TABLE, "opened_at", broadcast_ids, cutoff_iso)
    clicked_at = _engagement_times(db, CLICK_EVENTS_TABLE, "clicked_at", broadcast_ids, cutoff_iso)
    if not opened_at and not clicked_at:
        return _insufficient(
            "No engagement data available yet. Send more emails to get recommendations.",
            lookback_days,
        )

    analysis = analyze_engagement(opened_at, clicked_at)
    return OptimalSendTimesResponse(
        status="ok",
        recommendations=SendTimeRecommendations(
            best_days=analysis["best_days"],
            best_hours=analysis["best_hours"],
            best_time_zones=analysis["best_time_zones"],
            optimal_send_times=analysis["optimal_send_times"],
            insights=analysis["insights"],
        ),
        total_opens=analysis["total_opens"],
        total_clicks=analysis["total_clicks"],
        data_points=analysis["data_points"],
        lookback_days=lookback_days,
    )


@router.get("/optimal-send-times", response_model=OptimalSendTimesResponse)
async def get_optimal_send_times(
    whop_user_id: str | None = Query(None),
    db: Any = Depends(get_supabase),
):
    user_id = _require_user_id(whop_user_id)
    lookback_days = max(1, int(settings.send_time_lookback_days or 90))
    response = await run_in_threadpool(compute_optimal_send_times, db, user_id, lookback_days=lookback_days)
    log_event(
        "optimal_send_times_computed",
        whop_user_id=user_id,
        status=response.status,
        data_points=response.data_points,
    )
    return response


@router.get("/broadcasts/{broadcast_id}/clicks", response_model=list[BroadcastClickEventItem])
async def get_broadcast_click_events(
    broadcast_id: str,
    whop_user_id: str | None = Query(None),
    db: Any = Depends(get_supabase),
):
    user_id = _require_user_id(whop_user_id)
    broadcast = (
        db.table(BROADCASTS_TABLE)
        .select("id")
        .eq("id", broadcast_id)
        .eq("user_id", user_id)
        .execute()
    )
    if not broadcast.data:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Broadcast not found")

    result = (
        db.table(CLICK_EVENTS_TABLE)
        .select("*")
        .eq("broadcast_id", broadcast_id)
        .order("clicked_at", desc=True)
        .execute()
    )
    return [
        BroadcastClickEventItem(
            id=str(row["id"]) if row.get("id") is not None else None,
            broadcast_id=row.get("broadcast_id"),
            resend_broadcast_id=row.get("resend_broadcast_id"),
            email_id=row.get("email_id"),
            recipient_email=row.get("recipient_email"),
            clicked_link=row.get("clicked_link") or "unknown",
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            clicked_at=parse_timestamp(row.get("clicked_at")),
        )
        for row in result.data or []
    ]
