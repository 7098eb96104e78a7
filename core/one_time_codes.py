"""
One-time codes — short-lived, single-use codes mapping to a user id.

Two kinds share the store but not the keyspace:

* web tokens (UUIDs, ``auth:{code}``) hand an authenticated mobile session
  over to the web app, which exchanges the code for a session token;
* OTPs (6 digits, ``otp:{code}``) are confirmed by the already signed-in
  user and never mint a session.

Codes are consumed with ``GETDEL`` so each one resolves at most once.
"""

from __future__ import annotations

import enum
import logging
import secrets
import uuid
from typing import Optional

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

_MAX_ATTEMPTS = 5


class CodeKind(str, enum.Enum):
    WEB_TOKEN = "auth"
    OTP = "otp"


class CodeCollisionError(RuntimeError):
    """Could not find an unused code (numeric code space exhausted)."""


class OneTimeCodeStore:
    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def issue(
        self, user_id: str, ttl_seconds: int, kind: CodeKind = CodeKind.WEB_TOKEN
    ) -> str:
        """
        Create a code for ``user_id`` that expires after ``ttl_seconds``.

        Keys are written with ``SET NX`` so a live code is never overwritten.
        """
        for _ in range(_MAX_ATTEMPTS):
            code = _numeric_code() if kind is CodeKind.OTP else str(uuid.uuid4())
            stored = await self._redis.set(_key(kind, code), user_id, ex=ttl_seconds, nx=True)
            if stored:
                logger.info(
                    "Issued %s code for user %s (ttl=%ds)", kind.value, user_id, ttl_seconds
                )
                return code
        raise CodeCollisionError("Could not allocate a unique one-time code")

    async def consume(self, code: str, kind: CodeKind = CodeKind.WEB_TOKEN) -> Optional[str]:
        """Return the user id for ``code`` and delete it, or None."""
        if not code:
            return None
        value = await self._redis.getdel(_key(kind, code))
        if value is None:
            return None
        return value.decode() if isinstance(value, bytes) else str(value)


def _key(kind: CodeKind, code: str) -> str:
    return f"{kind.value}:{code}"


def _numeric_code() -> str:
    return str(100000 + secrets.randbelow(900000))
