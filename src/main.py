import logging
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from src.config import settings
from src.db import create_supabase_client
from src.observability import configure_logging, log_event, metrics_snapshot
from src.routers import (
    email_analytics,
    user_webhooks,
    webhooks,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    app.state.supabase = create_supabase_client(settings)
    if app.state.supabase is None:
        log_event("record_store_not_configured", level=logging.WARNING)
    yield
    app.state.supabase = None


app = FastAPI(title="WhopMail Events", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

app.include_router(webhooks.router)
app.include_router(user_webhooks.router)
app.include_router(email_analytics.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "whopmail-events"}


@app.get("/health")
async def health():
    return {"status": "healthy"}


@app.get("/api/observability/metrics")
async def get_metrics():
    return {"counters": metrics_snapshot()}
