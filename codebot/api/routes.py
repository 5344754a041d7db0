from __future__ import annotations

import asyncio
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse

from codebot.api.schemas import (
    AccountStatusResponse,
    ActivateKeysRequest,
    Envelope,
    HealthResponse,
    KeysActivatedResponse,
    KeysRevokedResponse,
    KeyStatusResponse,
    RevokeKeysRequest,
    SetAccountActiveRequest,
    StoreStatusResponse,
)
from codebot.logging import get_logger
from codebot.service.errors import PersistenceError
from codebot.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()

HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def require_admin(
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
) -> None:
    """Gate key-management routes behind ADMIN_API_TOKEN when one is configured."""
    expected = get_runtime().settings.admin_api_token
    if not expected:
        return
    if not x_admin_token or not secrets.compare_digest(x_admin_token, expected):
        logger.warning("admin_token_rejected")
        raise HTTPException(status_code=401, detail="invalid or missing admin token")


@router.post("/api/keys/activate", response_model=Envelope, dependencies=[Depends(require_admin)])
async def activate_keys(body: ActivateKeysRequest) -> Envelope:
    runtime = get_runtime()
    user = await runtime.credentials.activate(
        body.telegram_chat_id,
        body.gemini_api_key,
        body.e2b_api_key,
        display_name=body.display_name,
    )
    return Envelope(
        status="ok",
        data=KeysActivatedResponse(
            user_id=user.id,
            telegram_chat_id=user.external_id,
            tier=user.tier.value,
            message_quota=user.message_quota,
        ),
    )


@router.get("/api/keys/status", response_model=Envelope, dependencies=[Depends(require_admin)])
async def key_status(telegram_chat_id: str = Query(..., min_length=1, max_length=64)) -> Envelope:
    status = get_runtime().credentials.status(telegram_chat_id)
    return Envelope(
        status="ok",
        data=KeyStatusResponse(
            telegram_chat_id=telegram_chat_id,
            registered=status.registered,
            has_keys=status.has_keys,
            tier=status.tier.value if status.tier else None,
        ),
    )


@router.post("/api/keys/revoke", response_model=Envelope, dependencies=[Depends(require_admin)])
async def revoke_keys(body: RevokeKeysRequest) -> Envelope:
    user = await get_runtime().credentials.revoke(body.telegram_chat_id)
    return Envelope(
        status="ok",
        data=KeysRevokedResponse(
            user_id=user.id, telegram_chat_id=user.external_id, tier=user.tier.value
        ),
    )


@router.post("/api/users/active", response_model=Envelope, dependencies=[Depends(require_admin)])
async def set_account_active(body: SetAccountActiveRequest) -> Envelope:
    user = await asyncio.to_thread(
        get_runtime().auth.set_active, body.telegram_chat_id, body.is_active
    )
    return Envelope(
        status="ok",
        data=AccountStatusResponse(
            user_id=user.id, telegram_chat_id=user.external_id, is_active=user.is_active
        ),
    )


@router.get("/api/status", response_model=Envelope, dependencies=[Depends(require_admin)])
async def store_status() -> Envelope:
    try:
        counts = await asyncio.to_thread(get_runtime().store.status)
    except Exception as exc:
        logger.error("store_status_failed", error=str(exc), error_type=type(exc).__name__)
        raise PersistenceError("store status unavailable") from exc
    return Envelope(
        status="ok",
        data=StoreStatusResponse(
            users=counts.users,
            active_users=counts.active_users,
            conversations=counts.conversations,
            messages=counts.messages,
            usage_logs=counts.usage_logs,
        ),
    )


@router.get("/health")
async def health() -> JSONResponse:
    """Store and cache health; 503 when either is degraded."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        db_ok = await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store")
        db_ok = False
    checks["store"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": type(runtime.store).__name__,
    }

    cache_ok = True
    if runtime.cache is not None:
        try:
            cache_ok = await asyncio.wait_for(runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.error("health_check_redis_failed", error=str(exc))
            cache_ok = False
        checks["redis"] = {"status": "healthy" if cache_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    healthy = bool(db_ok and cache_ok)
    payload = HealthResponse(
        status="healthy" if healthy else "degraded",
        checks=checks,
        timestamp=datetime.now(timezone.utc),
    )
    return JSONResponse(
        status_code=200 if healthy else 503,
        content=Envelope(status="ok", data=payload).model_dump(mode="json"),
    )
