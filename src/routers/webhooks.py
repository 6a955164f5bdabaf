from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from src.config import settings
from src.db import get_supabase
from src.domain.events import MalformedPayload, parse_webhook_body
from src.domain.signatures import SignatureVerificationError, verify_svix_signature
from src.observability import incr_metric, log_event
from src.pipeline.processor import process_events


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
_SIGNATURE_MODES = {"enforce", "permissive_audit"}


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _signature_mode() -> str:
    raw_mode = str(settings.resend_webhook_signature_mode or "enforce").strip().lower()
    return raw_mode if raw_mode in _SIGNATURE_MODES else "enforce"


def _verify_resend_signature(*, raw_body: bytes, request: Request, request_id: str | None) -> bool:
    mode = _signature_mode()
    secret = settings.resend_webhook_secret

    if not secret:
        if mode == "enforce":
            incr_metric("webhook.signature.enforce_config_error", provider_slug="resend")
            log_event(
                "webhook_signature_enforce_config_error",
                level=logging.ERROR,
                request_id=request_id,
                provider_slug="resend",
                message="RESEND_WEBHOOK_SECRET is required when mode=enforce",
            )
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={
                    "type": "webhook_signature_configuration_error",
                    "provider": "resend",
                    "message": "Webhook signature enforcement is enabled but secret is not configured",
                },
            )
        log_event(
            "webhook_signature_audit_failed",
            level=logging.WARNING,
            request_id=request_id,
            provider_slug="resend",
            reason="secret_not_configured",
            mode=mode,
        )
        return False

    try:
        verify_svix_signature(
            secret=secret,
            body=raw_body,
            svix_id=request.headers.get("svix-id"),
            svix_timestamp=request.headers.get("svix-timestamp"),
            svix_signature=request.headers.get("svix-signature"),
            tolerance_seconds=max(0, int(settings.resend_webhook_signature_tolerance_seconds or 0)),
        )
    except SignatureVerificationError as exc:
        incr_metric("webhook.signature.rejected", provider_slug="resend", reason=exc.reason, mode=mode)
        log_event(
            "webhook_signature_audit_failed",
            level=logging.WARNING,
            request_id=request_id,
            provider_slug="resend",
            reason=exc.reason,
            mode=mode,
            message=str(exc),
        )
        if mode == "enforce":
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={
                    "type": "webhook_signature_invalid",
                    "provider": "resend",
                    "reason": exc.reason,
                    "message": str(exc),
                },
            ) from exc
        return False

    incr_metric("webhook.signature.verified", provider_slug="resend", mode=mode)
    return True


@router.post("/resend")
async def ingest_resend_webhook(request: Request, db: Any = Depends(get_supabase)):
    req_id = _request_id(request)
    raw_body = await request.body()
    signature_verified = _verify_resend_signature(raw_body=raw_body, request=request, request_id=req_id)

    try:
        events = parse_webhook_body(
            raw_body,
            svix_id=request.headers.get("svix-id"),
            received_at=datetime.now(timezone.utc),
        )
    except MalformedPayload as exc:
        incr_metric("webhook.events.rejected", provider_slug="resend", reason="malformed_json")
        log_event(
            "webhook_malformed_payload",
            level=logging.WARNING,
            request_id=req_id,
            provider_slug="resend",
            error=str(exc),
            body_preview=raw_body[:200].decode("utf-8", errors="replace"),
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "Invalid JSON"},
        )

    log_event(
        "webhook_received",
        request_id=req_id,
        provider_slug="resend",
        event_count=len(events),
        event_types=[event.label for event in events],
        signature_verified=signature_verified,
    )

    try:
        await run_in_threadpool(process_events, db, events, config=settings, request_id=req_id)
    except Exception as exc:
        log_event(
            "webhook_request_failed",
            level=logging.ERROR,
            request_id=req_id,
            provider_slug="resend",
            error=str(exc),
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": "Internal server error"},
        )
    return {"success": True}
