from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class DayEngagementItem(BaseModel):
    day: str
    count: int
    percentage: int


class HourEngagementItem(BaseModel):
    hour: str
    count: int
    percentage: int


class TimeZoneEngagementItem(BaseModel):
    time_zone: str
    count: int
    percentage: int


class OptimalSendTimeItem(BaseModel):
    send_time: str
    target_open_time: str
    reasoning: str


class SendTimeRecommendations(BaseModel):
    best_days: list[DayEngagementItem] = Field(default_factory=list)
    best_hours: list[HourEngagementItem] = Field(default_factory=list)
    best_time_zones: list[TimeZoneEngagementItem] = Field(default_factory=list)
    optimal_send_times: list[OptimalSendTimeItem] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list)


class OptimalSendTimesResponse(BaseModel):
    status: Literal["ok", "insufficient_data"]
    message: str | None = None
    recommendations: SendTimeRecommendations
    total_opens: int
    total_clicks: int
    data_points: int
    lookback_days: int


class BroadcastClickEventItem(BaseModel):
    id: str | None = None
    broadcast_id: str | None = None
    resend_broadcast_id: str | None = None
    email_id: str | None = None
    recipient_email: str | None = None
    clicked_link: str
    ip_address: str | None = None
    user_agent: str | None = None
    clicked_at: datetime | None = None
