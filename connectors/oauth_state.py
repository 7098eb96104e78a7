"""
Pending OAuth authorization — the signed state carried between the
authorize redirect and the provider callback.

The pending state lives in an httpOnly cookie (``{provider}_oauth_state``).
Its ``state`` nonce is also sent to the provider, and the callback only
proceeds when the nonce echoed back in the query matches the cookie.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from typing import Optional

from pydantic import BaseModel, ValidationError

DEFAULT_RETURN_URL = "/dashboard"


class InvalidOAuthState(ValueError):
    """Cookie missing, tampered with, expired, or not matching the callback."""


class PendingAuthorization(BaseModel):
    provider: str
    state: str
    user_id: str
    return_url: str = DEFAULT_RETURN_URL
    code_verifier: Optional[str] = None
    is_mobile: bool = False
    exp: int


def cookie_name(provider: str) -> str:
    return f"{provider}_oauth_state"


class OAuthStateSigner:
    """HMAC-SHA256 signing of ``PendingAuthorization`` cookie values."""

    def __init__(self, secret: str, ttl_seconds: int = 600) -> None:
        self._secret = secret.encode()
        self.ttl_seconds = ttl_seconds

    def begin(
        self,
        provider: str,
        user_id: str,
        *,
        return_url: Optional[str] = None,
        use_pkce: bool = False,
        is_mobile: bool = False,
        now: Optional[float] = None,
    ) -> PendingAuthorization:
        """Create a fresh pending authorization with a new nonce."""
        issued = int(now if now is not None else time.time())
        return PendingAuthorization(
            provider=provider,
            state=str(uuid.uuid4()),
            user_id=user_id,
            return_url=safe_return_url(return_url),
            code_verifier=new_code_verifier() if use_pkce else None,
            is_mobile=is_mobile,
            exp=issued + self.ttl_seconds,
        )

    def sign(self, pending: PendingAuthorization) -> str:
        raw = pending.model_dump_json().encode()
        sig = hmac.new(self._secret, raw, hashlib.sha256).hexdigest()
        return _b64encode(raw) + "." + sig

    def verify(
        self,
        token: Optional[str],
        *,
        provider: str,
        state: str,
        now: Optional[float] = None,
    ) -> PendingAuthorization:
        """
        Verify the cookie value against the callback's ``state``.

        Raises ``InvalidOAuthState`` with a short reason on any failure.
        """
        if not token:
            raise InvalidOAuthState("Missing state cookie")

        encoded, _, sig = token.partition(".")
        try:
            raw = _b64decode(encoded)
        except ValueError as exc:
            raise InvalidOAuthState("Invalid state cookie format") from exc

        expected = hmac.new(self._secret, raw, hashlib.sha256).hexdigest()
        if not sig or not hmac.compare_digest(sig, expected):
            raise InvalidOAuthState("Invalid state cookie signature")

        try:
            pending = PendingAuthorization.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as exc:
            raise InvalidOAuthState("Invalid state cookie format") from exc

        if pending.exp < (now if now is not None else time.time()):
            raise InvalidOAuthState("OAuth state expired")
        if pending.provider != provider:
            raise InvalidOAuthState("OAuth state issued for another provider")
        if not hmac.compare_digest(pending.state, state):
            raise InvalidOAuthState("Invalid state parameter")
        return pending


# ── PKCE ───────────────────────────────────────────────────────────────


def new_code_verifier() -> str:
    return _b64encode(secrets.token_bytes(32))


def code_challenge_for(verifier: str) -> str:
    """S256 challenge: base64url(sha256(verifier)) without padding."""
    return _b64encode(hashlib.sha256(verifier.encode()).digest())


# ── Helpers ────────────────────────────────────────────────────────────


def safe_return_url(url: Optional[str]) -> str:
    """Only same-site relative paths are allowed as post-connect targets."""
    if not url or not url.startswith("/") or url.startswith("//") or "\\" in url:
        return DEFAULT_RETURN_URL
    return url


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _b64decode(value: str) -> bytes:
    if not value:
        raise ValueError("empty")
    padded = value + "=" * (-len(value) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode())
    except (ValueError, TypeError) as exc:
        raise ValueError("bad base64") from exc
