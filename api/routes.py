"""
REST API routes — availability pull and the one-time code exchange.
"""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from api.dependencies import (
    get_code_store,
    get_orchestrator,
    get_settings,
    get_verify_limiter,
)
from auth.dependencies import get_current_user_id
from auth.jwt import create_token
from config.settings import Settings
from core.one_time_codes import CodeKind, OneTimeCodeStore
from core.orchestrator import AvailabilityOrchestrator
from core.rate_limit import AttemptLimiter
from utils.schemas import OrchestratorOptions, VerifyCodeRequest

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/availability/pull")
async def pull_availability(
    dry_run: bool = Query(False, alias="dryRun"),
    force_refresh: bool = Query(False, alias="forceRefresh"),
    mode: Optional[Literal["update", "replace"]] = Query(None),
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    user_id: str = Depends(get_current_user_id),
    orchestrator: AvailabilityOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """
    Pull open slots from every connected provider.

    ``dryRun`` skips all writes, ``forceRefresh`` bypasses the stored
    result memo, ``mode=update`` merges into stored slots instead of
    replacing the range.  Partial provider failures still return 200.
    """
    options = OrchestratorOptions(
        dry_run=dry_run,
        force_refresh=force_refresh,
        update_mode=mode == "update",
    )
    date_range = orchestrator.resolve_range(start, end)
    result = await orchestrator.pull(user_id, options, date_range)
    return {
        "endpoint": "availability",
        "dryRun": dry_run,
        "forceRefresh": force_refresh,
        "result": result.model_dump(mode="json"),
    }


# ── One-time codes (mobile → web hand-off) ──────────────────────────────

_OTP_FORMAT = re.compile(r"^\d{6}$")


def _client_id(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_limit(limiter: AttemptLimiter, identity: str) -> None:
    decision = await limiter.check(identity)
    if not decision.allowed:
        logger.warning("Verify attempts limited for %s (%s)", identity, decision.reason)
        raise HTTPException(
            status.HTTP_429_TOO_MANY_REQUESTS,
            decision.message,
            headers={"Retry-After": str(decision.retry_after)},
        )


@router.post("/generate-web-token")
async def generate_web_token(
    user_id: str = Depends(get_current_user_id),
    codes: OneTimeCodeStore = Depends(get_code_store),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    code = await codes.issue(user_id, settings.web_token_ttl_seconds)
    return {"code": code, "expiresIn": settings.web_token_ttl_seconds}


@router.post("/otp/generate-otp")
async def generate_otp(
    user_id: str = Depends(get_current_user_id),
    codes: OneTimeCodeStore = Depends(get_code_store),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    code = await codes.issue(user_id, settings.otp_ttl_seconds, CodeKind.OTP)
    return {"code": code, "expiresIn": settings.otp_ttl_seconds}


@router.post("/otp/verify-otp")
async def verify_otp(
    body: VerifyCodeRequest,
    user_id: str = Depends(get_current_user_id),
    codes: OneTimeCodeStore = Depends(get_code_store),
    limiter: AttemptLimiter = Depends(get_verify_limiter),
) -> Dict[str, Any]:
    """Confirm a 6-digit code issued to the signed-in user."""
    code = body.code.strip()
    if not _OTP_FORMAT.match(code):
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST, "Invalid code format. Code must be 6 digits."
        )

    identity = f"user:{user_id}"
    await _enforce_limit(limiter, identity)
    owner = await codes.consume(code, CodeKind.OTP)
    if owner != user_id:
        await limiter.record_failure(identity)
        if owner is not None:
            logger.warning("OTP issued to %s presented by %s", owner, user_id)
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid or expired verification code")

    await limiter.reset(identity)
    return {"success": True, "message": "Code verified"}


@router.post("/verify-web-token")
async def verify_web_token(
    body: VerifyCodeRequest,
    request: Request,
    codes: OneTimeCodeStore = Depends(get_code_store),
    limiter: AttemptLimiter = Depends(get_verify_limiter),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    """Exchange a web token for a session token.  Each code works once."""
    identity = f"client:{_client_id(request)}"
    await _enforce_limit(limiter, identity)

    user_id = await codes.consume(body.code.strip())
    if user_id is None:
        await limiter.record_failure(identity)
        raise HTTPException(
            status.HTTP_401_UNAUTHORIZED,
            "Invalid or expired code. Please try again from the app.",
        )
    logger.info("One-time code redeemed for user %s", user_id)
    return {
        "access_token": create_token(user_id, settings.jwt_secret, settings.jwt_expiry_seconds),
        "token_type": "bearer",
        "user": {"id": user_id},
    }
