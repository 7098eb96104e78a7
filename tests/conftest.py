"""
Shared fixtures: in-memory stand-ins for the credential store, slot store
and Redis, a configurable stub connector, an app wired to them, and an
opt-in PostgreSQL session factory for the persistence tests.
"""

from __future__ import annotations

import asyncio
import os
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine

from auth.jwt import create_token
from config.settings import Settings
from connectors.base import BaseConnector
from connectors.oauth_state import OAuthStateSigner
from connectors.registry import ConnectorRegistry
from connectors.token_manager import TokenManager
from core.container import ServiceContainer, build_verify_limiter
from core.one_time_codes import OneTimeCodeStore
from core.orchestrator import AvailabilityOrchestrator
from core.slot_store import SyncCoverage
from database.models import Base
from database.session import build_session_factory
from utils.schemas import (
    AcuitySlotPayload,
    AppointmentType,
    AvailabilitySlot,
    Credential,
    DailySummary,
    DateRange,
    TokenGrant,
)

NOW = datetime(2025, 3, 3, 12, 0, tzinfo=timezone.utc)
TEST_SECRET = "test-jwt-secret"


# ── Fakes ──────────────────────────────────────────────────────────────


class InMemoryCredentialStore:
    """Same interface as ``CredentialStore``, backed by a dict."""

    def __init__(self) -> None:
        self.rows: Dict[Tuple[str, str], Credential] = {}
        self.update_calls = 0

    def put(self, credential: Credential) -> None:
        self.rows[(credential.user_id, credential.provider)] = credential

    async def get(self, user_id: str, provider: str) -> Optional[Credential]:
        row = self.rows.get((user_id, provider))
        return row.model_copy(deep=True) if row else None

    async def list_for_user(self, user_id: str) -> List[Credential]:
        return [c.model_copy(deep=True) for (uid, _), c in self.rows.items() if uid == user_id]

    async def list_providers(self, user_id: str) -> List[str]:
        return [p for (uid, p) in self.rows if uid == user_id]

    async def save(self, user_id, provider, grant: TokenGrant, expires_at) -> Credential:
        existing = self.rows.get((user_id, provider))
        meta = dict(existing.provider_meta) if existing else {}
        meta.update({k: v for k, v in grant.provider_meta.items() if v is not None})
        credential = Credential(
            user_id=user_id,
            provider=provider,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or (existing.refresh_token if existing else None),
            expires_at=expires_at,
            account_id=grant.account_id,
            account_label=grant.account_label,
            scopes=grant.scopes,
            provider_meta=meta,
            connected_at=NOW,
        )
        self.put(credential)
        return credential.model_copy(deep=True)

    async def update_tokens(self, user_id, provider, *, access_token, refresh_token, expires_at):
        row = self.rows.get((user_id, provider))
        if row is None:
            return None
        self.update_calls += 1
        row.access_token = access_token
        if refresh_token:
            row.refresh_token = refresh_token
        row.expires_at = expires_at
        row.status = "active"
        row.error_message = None
        row.last_refreshed = NOW
        return row.model_copy(deep=True)

    async def mark_error(self, user_id, provider, message, status="refresh_failed") -> None:
        row = self.rows.get((user_id, provider))
        if row is not None:
            row.status = status
            row.error_message = message

    async def touch(self, user_id, provider) -> None:
        return None

    async def update_meta(self, user_id, provider, **values) -> Optional[Credential]:
        row = self.rows.get((user_id, provider))
        if row is None:
            return None
        row.provider_meta = {**row.provider_meta, **values}
        return row.model_copy(deep=True)

    async def delete(self, user_id, provider) -> bool:
        return self.rows.pop((user_id, provider), None) is not None


class InMemorySlotStore:
    """Same interface as ``SlotStore``."""

    def __init__(self) -> None:
        self.slots: Dict[Tuple[str, str], Dict[str, AvailabilitySlot]] = {}
        self.summaries: Dict[Tuple[str, str, date], DailySummary] = {}
        self.write_calls = 0

    async def sync_coverage(self, user_id, provider, date_range: DateRange) -> SyncCoverage:
        stamps = [
            s.fetched_at
            for (uid, p, day), s in self.summaries.items()
            if uid == user_id and p == provider and date_range.contains(day) and s.fetched_at
        ]
        return SyncCoverage(len(stamps), min(stamps, default=None), max(stamps, default=None))

    async def load(self, user_id, provider, date_range: DateRange) -> List[AvailabilitySlot]:
        stored = self.slots.get((user_id, provider), {})
        return [s for s in stored.values() if date_range.contains(s.slot_date)]

    async def replace(self, user_id, provider, date_range: DateRange, slots) -> int:
        self.write_calls += 1
        stored = self.slots.setdefault((user_id, provider), {})
        for external_id in [k for k, s in stored.items() if date_range.contains(s.slot_date)]:
            del stored[external_id]
        incoming = {s.external_id: s for s in slots}
        stored.update(incoming)
        return len(incoming)

    async def merge(self, user_id, provider, slots) -> int:
        self.write_calls += 1
        stored = self.slots.setdefault((user_id, provider), {})
        written = 0
        for slot in slots:
            current = stored.get(slot.external_id)
            if current is None or current.model_dump(exclude={"fetched_at"}) != slot.model_dump(
                exclude={"fetched_at"}
            ):
                written += 1
            stored[slot.external_id] = slot
        return written

    async def upsert_summaries(self, user_id, summaries) -> None:
        for s in summaries:
            self.summaries[(user_id, s.provider, s.slot_date)] = s


class FakeRedis:
    """The few ``redis.asyncio.Redis`` calls the code store and limiter make, with TTLs."""

    def __init__(self) -> None:
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self.now = 0.0

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def _live(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires = item
        if expires is not None and expires <= self.now:
            del self._data[key]
            return None
        return value

    async def set(self, key, value, ex=None, nx=False):
        if nx and self._live(key) is not None:
            return None
        self._data[key] = (value, self.now + ex if ex else None)
        return True

    async def get(self, key):
        return self._live(key)

    async def getdel(self, key):
        value = self._live(key)
        self._data.pop(key, None)
        return value

    async def incr(self, key):
        value = int(self._live(key) or 0) + 1
        expires = self._data[key][1] if key in self._data else None
        self._data[key] = (str(value), expires)
        return value

    async def expire(self, key, seconds):
        if self._live(key) is None:
            return False
        self._data[key] = (self._data[key][0], self.now + seconds)
        return True

    async def ttl(self, key):
        if self._live(key) is None:
            return -2
        expires = self._data[key][1]
        return -1 if expires is None else int(expires - self.now)

    async def delete(self, *keys):
        return sum(self._data.pop(key, None) is not None for key in keys)

    def pipeline(self):
        return FakePipeline(self)


class FakePipeline:
    """Queues calls and runs them in order on ``execute``."""

    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._calls = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self._calls.append((getattr(self._redis, name), args, kwargs))
            return self

        return queue

    async def execute(self):
        results = [await call(*args, **kwargs) for call, args, kwargs in self._calls]
        self._calls = []
        return results


class StubConnector(BaseConnector):
    """Connector double with call counters and scripted results."""

    def __init__(
        self,
        settings: Settings,
        name: str = "acuity",
        *,
        slots: Sequence = (),
        fetch_error: Optional[Exception] = None,
        refresh_grant: Optional[TokenGrant] = None,
        refresh_error: Optional[Exception] = None,
        refresh_delay: float = 0.0,
        callback_grant: Optional[TokenGrant] = None,
        callback_error: Optional[Exception] = None,
        revoke_result=True,
        configured: bool = True,
        pkce: bool = False,
    ) -> None:
        super().__init__(settings, http_client=None)
        self._name = name
        self.slots = list(slots)
        self.fetch_error = fetch_error
        self.refresh_grant = refresh_grant or TokenGrant(
            access_token=f"{name}-refreshed", refresh_token=f"{name}-refresh-2", expires_in=3600
        )
        self.refresh_error = refresh_error
        self.refresh_delay = refresh_delay
        self.callback_grant = callback_grant or TokenGrant(
            access_token=f"{name}-access", refresh_token=f"{name}-refresh", account_id="acct-1"
        )
        self.callback_error = callback_error
        self.revoke_result = revoke_result
        self._configured = configured
        self._pkce = pkce
        self.fetch_calls = 0
        self.refresh_calls = 0
        self.revoke_calls = 0
        self.callback_args: List[Tuple[str, Optional[str]]] = []

    @property
    def provider_name(self) -> str:
        return self._name

    @property
    def display_name(self) -> str:
        return self._name.capitalize()

    @property
    def scopes(self) -> List[str]:
        return ["read"]

    @property
    def uses_pkce(self) -> bool:
        return self._pkce

    def is_configured(self) -> bool:
        return self._configured

    def get_auth_url(self, state, code_challenge=None) -> str:
        url = f"https://{self._name}.example/authorize?state={state}"
        if code_challenge:
            url += f"&code_challenge={code_challenge}"
        return url

    async def handle_callback(self, code, code_verifier=None) -> TokenGrant:
        self.callback_args.append((code, code_verifier))
        if self.callback_error:
            raise self.callback_error
        return self.callback_grant

    async def refresh_access_token(self, refresh_token) -> TokenGrant:
        self.refresh_calls += 1
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_error:
            raise self.refresh_error
        return self.refresh_grant

    async def revoke_token(self, access_token) -> bool:
        self.revoke_calls += 1
        if isinstance(self.revoke_result, Exception):
            raise self.revoke_result
        return self.revoke_result

    async def fetch_slots(self, date_range, access_token, credential):
        self.fetch_calls += 1
        if self.fetch_error:
            raise self.fetch_error
        return list(self.slots)


# ── Builders ───────────────────────────────────────────────────────────


def make_credential(
    provider: str = "acuity",
    user_id: str = "user-1",
    *,
    expires_at: Optional[datetime] = None,
    refresh_token: Optional[str] = "refresh-1",
    **kwargs,
) -> Credential:
    return Credential(
        user_id=user_id,
        provider=provider,
        access_token=f"{provider}-token",
        refresh_token=refresh_token,
        expires_at=expires_at,
        connected_at=NOW - timedelta(days=1),
        **kwargs,
    )


def acuity_payload(
    start_time: str,
    *,
    day: date = date(2025, 3, 4),
    type_id: str = "1",
    name: str = "Haircut",
    price: Optional[float] = 40.0,
    duration: int = 30,
    calendar_id: str = "cal-1",
) -> AcuitySlotPayload:
    return AcuitySlotPayload(
        calendar_id=calendar_id,
        appointment_type=AppointmentType(
            id=type_id, name=name, duration_minutes=duration, price=price
        ),
        slot_date=day,
        start_time=start_time,
        start_at=datetime.fromisoformat(f"{day.isoformat()}T{start_time}:00-05:00"),
        timezone="America/New_York",
    )


def build_container(
    settings: Settings,
    connectors: Sequence[BaseConnector],
    store: InMemoryCredentialStore,
    slots: InMemorySlotStore,
    redis: FakeRedis,
    clock=lambda: NOW,
) -> ServiceContainer:
    registry = ConnectorRegistry(connectors)
    tokens = TokenManager(store, registry, settings, clock=clock)
    return ServiceContainer(
        settings,
        registry=registry,
        credentials=store,
        tokens=tokens,
        slots=slots,
        orchestrator=AvailabilityOrchestrator(registry, tokens, slots, settings, clock=clock),
        codes=OneTimeCodeStore(redis),
        verify_limiter=build_verify_limiter(settings, redis),
        state_signer=OAuthStateSigner(settings.oauth_state_secret, settings.oauth_state_ttl_seconds),
    )


def auth_headers(user_id: str = "user-1") -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_token(user_id, TEST_SECRET, 3600)}"}


# ── Fixtures ───────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        jwt_secret=TEST_SECRET,
        oauth_state_secret="test-state-secret",
        site_url="https://app.example",
        acuity_client_id="acuity-id",
        acuity_client_secret="acuity-secret",
        acuity_redirect_uri="https://api.example/api/acuity/callback",
        square_application_id="sq-app",
        square_application_secret="sq-secret",
        square_env="sandbox",
        square_redirect_url="https://api.example/api/square/callback",
        square_request_delay_seconds=0,
    )


@pytest.fixture
def credential_store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def slot_store() -> InMemorySlotStore:
    return InMemorySlotStore()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def acuity(settings) -> StubConnector:
    return StubConnector(settings, "acuity")


@pytest.fixture
def square(settings) -> StubConnector:
    return StubConnector(settings, "square", pkce=True)


@pytest.fixture
def container(settings, acuity, square, credential_store, slot_store, fake_redis):
    return build_container(
        settings, [acuity, square], credential_store, slot_store, fake_redis
    )


@pytest.fixture
def client(settings, container):
    from main import create_app

    app = create_app(settings, container)
    with TestClient(app, follow_redirects=False) as test_client:
        yield test_client


@pytest_asyncio.fixture
async def db_sessions():
    """
    Session factory on a scratch PostgreSQL database.

    Set ``TEST_DATABASE_URL`` (``postgresql+asyncpg://...``) to run the
    persistence tests; tables are dropped and recreated around each test.
    """
    url = os.environ.get("TEST_DATABASE_URL")
    if not url:
        pytest.skip("TEST_DATABASE_URL not set")

    engine = create_async_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield build_session_factory(engine)
    finally:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()
