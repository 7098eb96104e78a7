"""
Token manager — get / refresh / store / revoke per-user provider tokens.

This is the single interface the routes and the availability orchestrator
use to get an active token for a given user + provider combination.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from config.settings import Settings
from connectors.base import ProviderError
from connectors.credential_store import CredentialStore
from connectors.registry import ConnectorRegistry
from utils.schemas import Credential, DisconnectResult, TokenGrant

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class TokenManager:
    """
    Hands out valid access tokens, refreshing expired ones.

    Every call re-reads the credential store; nothing is cached in memory.
    Refreshes of the same ``(user_id, provider)`` are serialized by a
    per-key lock and the row is re-read under the lock, so concurrent
    callers that all saw an expired token trigger one provider refresh.
    """

    def __init__(
        self,
        store: CredentialStore,
        registry: ConnectorRegistry,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.registry = registry
        self.settings = settings
        self._clock = clock
        self._locks: Dict[Tuple[str, str], _KeyLock] = {}

    # ── Public API ──────────────────────────────────────────────────────

    async def get_valid_token(self, user_id: str, provider: str) -> Optional[str]:
        """
        Get a valid access token for the user + provider.

        Returns None when not connected or when an expired token could not
        be refreshed (the row is kept and marked ``refresh_failed``).
        """
        credential = await self.get_valid_credential(user_id, provider)
        return credential.access_token if credential else None

    async def get_valid_credential(self, user_id: str, provider: str) -> Optional[Credential]:
        credential = await self.store.get(user_id, provider)
        if credential is None:
            return None

        if not self._needs_refresh(credential):
            await self.store.touch(user_id, provider)
            return credential

        async with self._lock_for(user_id, provider):
            credential = await self.store.get(user_id, provider)
            if credential is None:
                return None
            if not self._needs_refresh(credential):
                return credential
            return await self._refresh(credential)

    async def force_refresh(self, user_id: str, provider: str) -> Optional[Credential]:
        """Refresh regardless of expiry.  None if not connected or refresh failed."""
        async with self._lock_for(user_id, provider):
            credential = await self.store.get(user_id, provider)
            if credential is None:
                return None
            return await self._refresh(credential)

    async def complete_authorization(
        self, user_id: str, provider: str, grant: TokenGrant
    ) -> Credential:
        """
        Store the token set from a finished OAuth callback.

        A grant with no expiry information is stored as non-expiring.
        """
        expires_at = self._expiry_from(grant, default_ttl=None)
        return await self.store.save(user_id, provider, grant, expires_at)

    async def disconnect(self, user_id: str, provider: str) -> DisconnectResult:
        """
        Revoke at the provider (best effort) and delete the local row.

        No stored credential is a successful no-op.  A failed or skipped
        revocation yields ``PARTIAL``; the row is deleted either way.
        """
        credential = await self.store.get(user_id, provider)
        if credential is None:
            logger.debug("Disconnect %s for user %s: nothing stored", provider, user_id)
            return DisconnectResult.SUCCESS

        revoked = False
        connector = self.registry.get(provider)
        if connector is None or not connector.is_configured():
            logger.warning("Skipping %s revoke: connector not configured", provider)
        else:
            try:
                revoked = await connector.revoke_token(credential.access_token)
            except ProviderError as exc:
                logger.warning("Revoke failed for %s/%s: %s", provider, user_id, exc)

        await self.store.delete(user_id, provider)
        logger.info("Disconnected %s for user %s (revoked=%s)", provider, user_id, revoked)
        return DisconnectResult.SUCCESS if revoked else DisconnectResult.PARTIAL

    # ── Internals ───────────────────────────────────────────────────────

    @asynccontextmanager
    async def _lock_for(self, user_id: str, provider: str) -> AsyncIterator[None]:
        """Hold the per-key lock; the entry is dropped once nobody holds or waits on it."""
        key = (user_id, provider)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[key]

    def _needs_refresh(self, credential: Credential) -> bool:
        return credential.is_expired(self._clock(), self.settings.token_expiry_buffer_seconds)

    def _expiry_from(
        self, grant: TokenGrant, default_ttl: Optional[int]
    ) -> Optional[datetime]:
        if grant.expires_at is not None:
            expires_at = grant.expires_at
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            return expires_at
        if grant.expires_in:
            return self._clock() + timedelta(seconds=grant.expires_in)
        if default_ttl is None:
            return None
        return self._clock() + timedelta(seconds=default_ttl)

    async def _refresh(self, credential: Credential) -> Optional[Credential]:
        user_id, provider = credential.user_id, credential.provider

        connector = self.registry.get(provider)
        if connector is None or not connector.is_configured():
            await self._fail(credential, f"{provider} connector is not configured")
            return None
        if not credential.refresh_token:
            await self._fail(credential, "Token expired and no refresh token available")
            return None

        try:
            grant = await connector.refresh_access_token(credential.refresh_token)
        except (ProviderError, ValueError) as exc:
            await self._fail(credential, f"Refresh failed: {exc}")
            return None

        updated = await self.store.update_tokens(
            user_id,
            provider,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=self._expiry_from(grant, self.settings.default_token_ttl_seconds),
        )
        logger.info("Refreshed %s token for user %s", provider, user_id)
        return updated

    async def _fail(self, credential: Credential, message: str) -> None:
        logger.warning(
            "Token refresh failed for %s/%s: %s",
            credential.provider, credential.user_id, message,
        )
        await self.store.mark_error(credential.user_id, credential.provider, message)
