"""
CredentialStore — reads and writes ``provider_credentials`` rows.

Tokens are encrypted with ``TokenCipher`` on the way in and decrypted on
the way out; callers only ever see ``Credential`` models.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.encryption import TokenCipher
from connectors.models import ProviderCredential
from utils.schemas import Credential, TokenGrant

logger = logging.getLogger(__name__)


class CredentialStore:
    """Per-user, per-provider OAuth credentials."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: TokenCipher,
    ) -> None:
        self._sessions = session_factory
        self._cipher = cipher

    # ── Reads ───────────────────────────────────────────────────────────

    async def get(self, user_id: str, provider: str) -> Optional[Credential]:
        async with self._sessions() as session:
            row = await self._load(session, user_id, provider)
            return self._to_credential(row) if row else None

    async def list_for_user(self, user_id: str) -> List[Credential]:
        async with self._sessions() as session:
            result = await session.execute(
                select(ProviderCredential).where(ProviderCredential.user_id == user_id)
            )
            return [self._to_credential(row) for row in result.scalars().all()]

    async def list_providers(self, user_id: str) -> List[str]:
        """Provider names the user has a credential row for."""
        async with self._sessions() as session:
            result = await session.execute(
                select(ProviderCredential.provider).where(ProviderCredential.user_id == user_id)
            )
            return list(result.scalars().all())

    # ── Writes ──────────────────────────────────────────────────────────

    async def save(
        self,
        user_id: str,
        provider: str,
        grant: TokenGrant,
        expires_at: Optional[datetime],
    ) -> Credential:
        """
        Insert or replace the credential for ``(user_id, provider)``.

        A grant without a refresh token keeps the stored one; provider
        metadata is merged so calendar / location selections survive a
        reconnect.
        """
        now = datetime.now(timezone.utc)
        async with self._sessions() as session:
            row = await self._load(session, user_id, provider)
            if row is None:
                row = ProviderCredential(user_id=user_id, provider=provider)
                session.add(row)
                meta: Dict[str, Any] = {}
            else:
                meta = dict(row.provider_meta or {})

            row.access_token = self._cipher.encrypt(grant.access_token)
            if grant.refresh_token:
                row.refresh_token = self._cipher.encrypt(grant.refresh_token)
            row.token_type = grant.token_type or "Bearer"
            row.expires_at = expires_at
            row.scopes = grant.scopes
            row.account_id = grant.account_id or row.account_id
            row.account_label = grant.account_label or row.account_label
            meta.update({k: v for k, v in grant.provider_meta.items() if v is not None})
            row.provider_meta = meta
            row.status = "active"
            row.error_message = None
            row.connected_at = now

            await session.commit()
            logger.info("Stored %s credential for user %s", provider, user_id)
            return self._to_credential(row)

    async def update_tokens(
        self,
        user_id: str,
        provider: str,
        *,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
    ) -> Optional[Credential]:
        """Persist a refreshed token set in one write."""
        now = datetime.now(timezone.utc)
        async with self._sessions() as session:
            row = await self._load(session, user_id, provider)
            if row is None:
                return None
            row.access_token = self._cipher.encrypt(access_token)
            if refresh_token:
                row.refresh_token = self._cipher.encrypt(refresh_token)
            row.expires_at = expires_at
            row.last_refreshed = now
            row.last_used_at = now
            row.status = "active"
            row.error_message = None
            await session.commit()
            return self._to_credential(row)

    async def mark_error(
        self,
        user_id: str,
        provider: str,
        message: str,
        status: str = "refresh_failed",
    ) -> None:
        async with self._sessions() as session:
            row = await self._load(session, user_id, provider)
            if row is None:
                return
            row.status = status
            row.error_message = message[:1000]
            await session.commit()

    async def touch(self, user_id: str, provider: str) -> None:
        """Update ``last_used_at``."""
        async with self._sessions() as session:
            row = await self._load(session, user_id, provider)
            if row is None:
                return
            row.last_used_at = datetime.now(timezone.utc)
            await session.commit()

    async def update_meta(
        self, user_id: str, provider: str, **values: Any
    ) -> Optional[Credential]:
        async with self._sessions() as session:
            row = await self._load(session, user_id, provider)
            if row is None:
                return None
            row.provider_meta = {**(row.provider_meta or {}), **values}
            await session.commit()
            return self._to_credential(row)

    async def delete(self, user_id: str, provider: str) -> bool:
        """Returns True if a row was deleted."""
        async with self._sessions() as session:
            result = await session.execute(
                delete(ProviderCredential).where(
                    ProviderCredential.user_id == user_id,
                    ProviderCredential.provider == provider,
                )
            )
            await session.commit()
            return (result.rowcount or 0) > 0

    # ── Internals ───────────────────────────────────────────────────────

    @staticmethod
    async def _load(
        session: AsyncSession, user_id: str, provider: str
    ) -> Optional[ProviderCredential]:
        result = await session.execute(
            select(ProviderCredential).where(
                ProviderCredential.user_id == user_id,
                ProviderCredential.provider == provider,
            )
        )
        return result.scalar_one_or_none()

    def _to_credential(self, row: ProviderCredential) -> Credential:
        return Credential(
            user_id=row.user_id,
            provider=row.provider,
            access_token=self._cipher.decrypt(row.access_token),
            refresh_token=self._cipher.decrypt(row.refresh_token) if row.refresh_token else None,
            expires_at=row.expires_at,
            account_id=row.account_id,
            account_label=row.account_label,
            token_type=row.token_type or "Bearer",
            scopes=list(row.scopes or []),
            provider_meta=dict(row.provider_meta or {}),
            status=row.status or "active",
            error_message=row.error_message,
            connected_at=row.connected_at,
            last_refreshed=row.last_refreshed,
        )
