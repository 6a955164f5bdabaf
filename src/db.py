from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request, status
from supabase import Client, create_client

from src.config import Settings


def create_supabase_client(config: Settings) -> Client | None:
    if not config.supabase_url or not config.supabase_service_role_key:
        return None
    return create_client(config.supabase_url, config.supabase_service_role_key)


def get_supabase(request: Request) -> Any:
    """Return the store client owned by the running application."""
    client = getattr(request.app.state, "supabase", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Record store is not configured",
        )
    return client
