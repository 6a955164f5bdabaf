from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, HttpUrl


SUPPORTED_EVENT_TYPES = (
    "email.sent",
    "email.delivered",
    "email.opened",
    "email.clicked",
    "email.bounced",
    "email.complained",
    "email.failed",
    "email.delivery_delayed",
    "email.unsubscribed",
)
DEFAULT_SUBSCRIBED_EVENTS = ["email.opened", "email.clicked", "email.delivered"]


class UserWebhookCreateRequest(BaseModel):
    whop_user_id: str = Field(min_length=1)
    webhook_url: HttpUrl
    webhook_name: str | None = None
    description: str | None = None
    events: list[str] | None = None
    secret_key: str | None = None


class UserWebhookResponse(BaseModel):
    id: str
    whop_user_id: str
    webhook_url: str
    webhook_name: str | None = None
    description: str | None = None
    events: list[str] = Field(default_factory=list)
    is_active: bool = True
    has_secret: bool = False
    retry_count: int = 0
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    last_failure_reason: str | None = None
    created_at: datetime | None = None


class UserWebhookListResponse(BaseModel):
    success: bool = True
    webhooks: list[UserWebhookResponse]


class UserWebhookCreateResponse(BaseModel):
    success: bool = True
    webhook: UserWebhookResponse


class WebhookDeliveryLogItem(BaseModel):
    id: str
    user_webhook_id: str
    event_type: str
    status: Literal["sent", "failed"]
    resend_event_id: str | None = None
    member_email: str | None = None
    error_message: str | None = None
    last_attempt_at: datetime | None = None
    event_data: dict[str, Any] | None = None
