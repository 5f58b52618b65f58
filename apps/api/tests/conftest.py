import os
import sys
from pathlib import Path


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SMARTLINK_HMAC_SECRET", "test-smartlink-secret")
os.environ.setdefault("PUBLIC_APP_URL", "https://app.example.com")
os.environ.setdefault("INTERNAL_API_KEY", "")

import fnmatch  # noqa: E402
import time  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from redis.exceptions import ConnectionError as RedisConnectionError  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from kfactor_api.app import create_app  # noqa: E402
from kfactor_api.db.base import Base  # noqa: E402
from kfactor_api.db.session import get_session  # noqa: E402
from kfactor_api.models.user import PersonaEnum, User  # noqa: E402
from kfactor_api.services.analytics import AnalyticsDispatcher  # noqa: E402
from kfactor_api.services.ephemeral import EphemeralStore  # noqa: E402
from kfactor_api.services.smart_links import SignatureCodec  # noqa: E402


TEST_SECRET = "test-smartlink-secret"


class FakeRedis:
    """In-memory subset of the redis.asyncio commands used by presence and rate limiting."""

    def __init__(self) -> None:
        self.values: dict[str, int] = {}
        self.sets: dict[str, set[str]] = {}
        self.expiries: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def sadd(self, key: str, *members: str) -> int:
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    async def scard(self, key: str) -> int:
        return len(self.sets.get(key, set()))

    async def expire(self, key: str, seconds: int) -> bool:
        self.expiries[key] = int(seconds)
        return True

    async def ttl(self, key: str) -> int:
        return self.expiries.get(key, -1)

    async def get(self, key: str) -> str | None:
        value = self.values.get(key)
        return str(value) if value is not None else None

    async def incr(self, key: str) -> int:
        self.values[key] = self.values.get(key, 0) + 1
        return self.values[key]

    def keys_matching(self, pattern: str) -> list[str]:
        return [key for key in [*self.values, *self.sets] if fnmatch.fnmatch(key, pattern)]


class UnavailableRedis:
    """Every command fails the way an unreachable server does."""

    def __init__(self) -> None:
        self.calls = 0

    def __getattr__(self, name: str):
        async def _fail(*args, **kwargs):
            self.calls += 1
            raise RedisConnectionError("Connection refused")

        return _fail


class ManualClock:
    def __init__(self, start: float | None = None) -> None:
        self.now = time.monotonic() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def unavailable_redis() -> UnavailableRedis:
    return UnavailableRedis()


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock(start=1000.0)


@pytest.fixture
def codec() -> SignatureCodec:
    return SignatureCodec(TEST_SECRET)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Separate connections per session; used where concurrent sessions must not share a transaction."""

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'kfactor.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory, fake_redis):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.state.ephemeral_store = EphemeralStore(fake_redis, name="test-redis")
    app.state.signature_codec = SignatureCodec(TEST_SECRET)
    app.state.analytics = AnalyticsDispatcher(session_factory)

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()
        await app.state.orchestrator.aclose()


@pytest_asyncio.fixture
async def client(app_with_db):
    app, _ = app_with_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


@pytest.fixture
def make_user(session_factory):
    async def _make_user(email: str, persona: PersonaEnum = PersonaEnum.STUDENT) -> User:
        async with session_factory() as session:
            user = User(email=email, persona=persona.value)
            session.add(user)
            await session.commit()
            return user

    return _make_user
