"""
Pytest configuration and shared fixtures for the payment gateway tests.

Provides an in-memory SQLite session, a file-backed session factory for
concurrency tests, an ASGI test client wired to the test DB, and an
in-process provider rail.
"""
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from config import settings
from database import Base, configure_sqlite, get_db
from deps import get_adapter_lookup
from domain.constants import MERCHANT_PERMISSIONS
from domain.enums import PrincipalKind
from domain.principal import Principal
from main import app
from middleware.rate_limit import _limiter
from services.provider_adapter import SimulatedProviderAdapter

# ── Test Configuration ───────────────────────────────────────────────
# Set test-only values for settings that would normally come from .env
settings.jwt_secret = "test-jwt-secret-for-pytest-only-0123456789"
settings.webhook_secret = "test-webhook-secret"
settings.api_keys = "merchant-1:test-key-1,merchant-2:test-key-2"

MERCHANT_HEADERS = {"X-API-Key": "test-key-1"}
OTHER_MERCHANT_HEADERS = {"X-API-Key": "test-key-2"}


# ── Database Fixtures ────────────────────────────────────────────────


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Create an in-memory SQLite database session for each test.

    Uses StaticPool to allow in-memory SQLite with async SQLAlchemy.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_sqlite(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session_maker = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path):
    """
    Session factory over a file-backed SQLite database.

    Each session gets its own connection, so concurrent tasks really race
    at the database the way separate requests do.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}",
        connect_args={"timeout": 30},
    )
    configure_sqlite(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


# ── Provider Fixtures ────────────────────────────────────────────────


@pytest.fixture
def rail() -> SimulatedProviderAdapter:
    """In-process rail; tests settle payments with rail.settle(order_id, status)."""
    return SimulatedProviderAdapter(name="generic")


# ── Client Fixtures ──────────────────────────────────────────────────


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, rail: SimulatedProviderAdapter):
    """
    ASGI test client with the in-memory database and simulated rail.

    Overrides get_db and the adapter lookup.
    """
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_adapter_lookup] = lambda: (lambda name: rail)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    _limiter.reset()
    yield
    _limiter.reset()


# ── Test Data Fixtures ────────────────────────────────────────────────


@pytest.fixture
def merchant() -> Principal:
    return Principal(
        kind=PrincipalKind.API_KEY,
        id="key:merchant-1",
        merchant_id="merchant-1",
        permissions=MERCHANT_PERMISSIONS,
    )


@pytest.fixture
def merchant_headers() -> dict:
    return dict(MERCHANT_HEADERS)


@pytest.fixture
def other_merchant_headers() -> dict:
    return dict(OTHER_MERCHANT_HEADERS)
