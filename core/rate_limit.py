"""
AttemptLimiter — per-client caps on code verification attempts.

Failed attempts are counted in two Redis windows (``{scope}:minute:{id}``
and ``{scope}:hour:{id}``).  ``check`` reads the counters without touching
them, ``record_failure`` increments both, ``reset`` clears them after a
successful verification.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


@dataclass
class LimitDecision:
    allowed: bool
    retry_after: Optional[int] = None
    reason: Optional[str] = None

    @property
    def message(self) -> str:
        if self.allowed:
            return ""
        return f"Too many attempts. Try again in {self.retry_after} seconds."


class AttemptLimiter:
    def __init__(
        self,
        redis: Redis,
        *,
        scope: str,
        attempts_per_minute: int,
        attempts_per_hour: int,
    ) -> None:
        self._redis = redis
        self.scope = scope
        self.attempts_per_minute = max(1, attempts_per_minute)
        self.attempts_per_hour = max(1, attempts_per_hour)

    def _keys(self, identity: str) -> Tuple[str, str]:
        return f"{self.scope}:minute:{identity}", f"{self.scope}:hour:{identity}"

    async def check(self, identity: str) -> LimitDecision:
        minute_key, hour_key = self._keys(identity)
        try:
            pipe = self._redis.pipeline()
            pipe.get(minute_key)
            pipe.get(hour_key)
            minute_raw, hour_raw = await pipe.execute()

            if int(minute_raw or 0) >= self.attempts_per_minute:
                return LimitDecision(False, await self._retry_after(minute_key), "minute_limit")
            if int(hour_raw or 0) >= self.attempts_per_hour:
                return LimitDecision(False, await self._retry_after(hour_key), "hour_limit")
        except RedisError as exc:
            logger.warning("Rate limiter check failed for %s; allowing attempt: %s", self.scope, exc)
        return LimitDecision(True)

    async def record_failure(self, identity: str) -> None:
        minute_key, hour_key = self._keys(identity)
        try:
            pipe = self._redis.pipeline()
            pipe.incr(minute_key)
            pipe.expire(minute_key, 60)
            pipe.incr(hour_key)
            pipe.expire(hour_key, 3600)
            await pipe.execute()
        except RedisError as exc:
            logger.warning("Rate limiter increment failed for %s: %s", self.scope, exc)

    async def reset(self, identity: str) -> None:
        try:
            await self._redis.delete(*self._keys(identity))
        except RedisError as exc:
            logger.warning("Rate limiter reset failed for %s: %s", self.scope, exc)

    async def _retry_after(self, key: str) -> int:
        ttl = await self._redis.ttl(key)
        return max(int(ttl or 0), 1)
