"""
ServiceContainer — every long-lived client and service, built once from a
``Settings`` instance by the app lifespan and reached through
``api.dependencies``.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine

from config.settings import Settings
from connectors.credential_store import CredentialStore
from connectors.encryption import TokenCipher
from connectors.oauth_state import OAuthStateSigner
from connectors.registry import ConnectorRegistry, build_registry
from connectors.token_manager import TokenManager
from core.one_time_codes import OneTimeCodeStore
from core.orchestrator import AvailabilityOrchestrator
from core.rate_limit import AttemptLimiter
from core.slot_store import SlotStore
from database.session import build_engine, build_session_factory, create_tables

logger = logging.getLogger(__name__)


class ServiceContainer:
    def __init__(
        self,
        settings: Settings,
        *,
        registry: ConnectorRegistry,
        credentials: CredentialStore,
        tokens: TokenManager,
        slots: SlotStore,
        orchestrator: AvailabilityOrchestrator,
        codes: OneTimeCodeStore,
        verify_limiter: AttemptLimiter,
        state_signer: OAuthStateSigner,
        http: Optional[httpx.AsyncClient] = None,
        redis: Optional[Redis] = None,
        engine: Optional[AsyncEngine] = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.credentials = credentials
        self.tokens = tokens
        self.slots = slots
        self.orchestrator = orchestrator
        self.codes = codes
        self.verify_limiter = verify_limiter
        self.state_signer = state_signer
        self._http = http
        self._redis = redis
        self._engine = engine

    @classmethod
    async def start(cls, settings: Settings) -> "ServiceContainer":
        engine = build_engine(settings)
        if settings.auto_create_tables:
            await create_tables(engine)
            logger.info("Database tables ensured")
        sessions = build_session_factory(engine)

        http = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
        redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)

        registry = build_registry(settings, http)
        credentials = CredentialStore(sessions, TokenCipher(settings.token_encryption_key))
        tokens = TokenManager(credentials, registry, settings)
        slots = SlotStore(sessions)

        logger.info("Service container started (env=%s)", settings.environment)
        return cls(
            settings,
            registry=registry,
            credentials=credentials,
            tokens=tokens,
            slots=slots,
            orchestrator=AvailabilityOrchestrator(registry, tokens, slots, settings),
            codes=OneTimeCodeStore(redis),
            verify_limiter=build_verify_limiter(settings, redis),
            state_signer=OAuthStateSigner(
                settings.oauth_state_secret, settings.oauth_state_ttl_seconds
            ),
            http=http,
            redis=redis,
            engine=engine,
        )

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
        if self._redis is not None:
            await self._redis.aclose()
        if self._engine is not None:
            await self._engine.dispose()
        logger.info("Service container closed")


def build_verify_limiter(settings: Settings, redis: Redis) -> AttemptLimiter:
    return AttemptLimiter(
        redis,
        scope="verify",
        attempts_per_minute=settings.verify_attempts_per_minute,
        attempts_per_hour=settings.verify_attempts_per_hour,
    )
