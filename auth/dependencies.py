"""
FastAPI dependencies for authentication.

The caller's access token is taken from the ``Authorization: Bearer``
header, then the ``x-client-access-token`` header (mobile app), then the
``token`` query parameter (browser redirects started from the app).
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, HTTPException, Request, status

from api.dependencies import get_settings
from auth.jwt import verify_token
from config.settings import Settings


def extract_token(request: Request) -> Optional[str]:
    authorization = request.headers.get("Authorization", "")
    if authorization.startswith("Bearer ") and authorization[7:].strip():
        return authorization[7:].strip()
    client_token = request.headers.get("x-client-access-token")
    if client_token:
        return client_token
    return request.query_params.get("token") or None


async def get_current_user_id(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> str:
    """
    Extract and verify the caller's token, returning the authenticated
    ``user_id``.  Raises 401 when missing or invalid.
    """
    token = extract_token(request)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return verify_token(token, settings.jwt_secret)


async def get_optional_user_id(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> Optional[str]:
    """Like ``get_current_user_id`` but returns None instead of raising."""
    token = extract_token(request)
    if not token:
        return None
    try:
        return verify_token(token, settings.jwt_secret)
    except HTTPException:
        return None
