from datetime import timezone

import pytest
import pytest_asyncio
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from esign.main import app
from esign.config import Settings
from esign.core.rate_limit import RateLimitGuard
from esign.database import Base, get_db, install_slow_query_logging
from esign.models.document import Document, Recipient
from esign.services.container import build_services
from esign.services.document_repository import DocumentRepository
from esign.services.esign_client import MockESignClient
from tests.factories import DocumentFactory, RecipientFactory

# Test database URL (SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test.db"


@pytest_asyncio.fixture
async def test_engine():
    """Create test database and tables."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=NullPool,
    )
    install_slow_query_logging(engine, threshold_ms=500)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine):
    """Session factory the services open their own sessions from."""
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def test_settings():
    return Settings(
        ENVIRONMENT="test",
        ESIGN_MOCK_MODE=True,
        RECONCILE_RETRY_BACKOFF_SECONDS=0.0,
        REMINDER_SCHEDULER_ENABLED=False,
    )


@pytest.fixture
def guard():
    return RateLimitGuard(default_retry_after=3600)


@pytest.fixture
def mock_client(guard):
    """In-memory signing provider sharing the test guard."""
    return MockESignClient(guard=guard)


@pytest_asyncio.fixture
async def services(test_settings, session_factory, mock_client, guard):
    """Services wired to the mock provider with a scheduler that is never started."""
    services = build_services(
        test_settings,
        session_factory,
        client=mock_client,
        guard=guard,
        scheduler=AsyncIOScheduler(timezone=timezone.utc),
    )
    yield services
    await services.aclose()


@pytest_asyncio.fixture
async def make_document(test_db: AsyncSession):
    """Persist a document with recipients built from factory rows."""

    async def _make(recipients=None, **overrides) -> Document:
        document = Document(**DocumentFactory(**overrides))
        rows = recipients if recipients is not None else [RecipientFactory(order=1)]
        document.recipients = [Recipient(**row) for row in rows]
        test_db.add(document)
        await test_db.commit()
        return document

    return _make


@pytest_asyncio.fixture
async def load_document(session_factory):
    """Read a document back through a fresh session."""

    async def _load(document_id: str) -> Document:
        async with session_factory() as session:
            return await DocumentRepository(session).find_by_id(document_id)

    return _load


@pytest_asyncio.fixture
async def client(test_db: AsyncSession, services):
    """Create test client with overridden database and services."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.state.services = services

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
