"""
JWT-style token creation and verification.

Tokens are base64url-encoded JSON payloads signed with HMAC-SHA256, shared
with the auth backend.  The secret is ``Settings.jwt_secret``
(env var: ``JWT_SECRET``).
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode

from fastapi import HTTPException, status


def create_token(user_id: str, secret: str, expiry_seconds: int) -> str:
    """Create a signed token containing ``user_id`` and expiry."""
    payload = {
        "user_id": user_id,
        "exp": int(time.time()) + expiry_seconds,
    }
    raw = json.dumps(payload).encode()
    sig = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    return urlsafe_b64encode(raw).decode() + "." + sig


def verify_token(token: str, secret: str) -> str:
    """
    Verify token and return ``user_id``.

    Raises ``HTTPException(401)`` on invalid or expired tokens.
    """
    try:
        parts = token.split(".", 1)
        if len(parts) != 2:
            raise ValueError("bad format")
        raw = urlsafe_b64decode(parts[0])
        expected_sig = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(parts[1], expected_sig):
            raise ValueError("bad signature")
        payload = json.loads(raw)
        if payload.get("exp", 0) < time.time():
            raise ValueError("token expired")
        return str(payload["user_id"])
    except (ValueError, KeyError, TypeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {exc}",
        )
