"""
Pytest configuration and shared fixtures for backend tests.
"""

import sys
from pathlib import Path

# Add backend directory to path for imports
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

import pytest
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Import after path is set
from adapters.seranking.request_builder import KeywordData
from core.interfaces.services import KeywordDataProvider
from infrastructure.database.connection import create_session_factory
from infrastructure.database.models import Base
from services.integration_service import IntegrationService
from services.keyword_bank import KeywordBankService


# Database URL for testing (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the in-memory test engine."""
    return create_session_factory(db_engine)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def file_session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Session factory over a file-backed SQLite database.

    Every session gets its own connection, so concurrent sessions really
    race each other (unlike the single shared in-memory connection).
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield create_session_factory(engine)

    await engine.dispose()


# ============================================================================
# Pipeline Fixtures
# ============================================================================


class FakeProvider(KeywordDataProvider):
    """Records calls and serves canned keyword data."""

    def __init__(self, data: dict[str, KeywordData] | None = None, error: Exception | None = None):
        self.data = data or {}
        self.error = error
        self.calls: list[tuple[list[str], str]] = []

    async def fetch_keyword_data(self, keywords: list[str], country_code: str) -> list[KeywordData]:
        self.calls.append((list(keywords), country_code))
        if self.error:
            raise self.error
        return [self.data[k] for k in keywords if k in self.data]

    async def test_connection(self) -> dict:
        return {"status": "healthy", "response_time_ms": 1, "last_check": None, "error_message": None}


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def keyword_bank(session_factory) -> KeywordBankService:
    return KeywordBankService(session_factory, freshness_days=7)


@pytest.fixture
def integration_service(session_factory) -> IntegrationService:
    return IntegrationService(session_factory, service_name="seranking_keyword_export")


@pytest.fixture
async def active_integration(integration_service) -> IntegrationService:
    """Integration configured with a key and a 1000 request quota."""
    await integration_service.update_settings(
        api_key="test-api-key",
        api_url="https://api.seranking.test",
        quota_limit=1000,
        is_active=True,
    )
    return integration_service
