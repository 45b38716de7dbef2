"""Pytest configuration and fixtures for AssemblyQC tests.

Provides common fixtures for testing.
"""

from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from assemblyqc.config import reset_config
from assemblyqc.db.models import Base
from assemblyqc.models import Actor, GpsCoord, ModelCoord, NewCalibrationPoint


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    reset_config()
    yield
    reset_config()


@pytest_asyncio.fixture()
async def db_session() -> AsyncSession:
    """Create in-memory database for testing."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    SessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        await session.close()
        await engine.dispose()


@pytest.fixture
def test_project_id() -> str:
    """Test project ID."""
    return "test-project"


@pytest.fixture
def inspector() -> Actor:
    return Actor(email="inspector@site.test", name="Ivo Inspector", role="inspector")


@pytest.fixture
def reviewer() -> Actor:
    return Actor(email="reviewer@site.test", name="Riin Reviewer", role="reviewer")


@pytest.fixture
def admin() -> Actor:
    return Actor(email="admin@site.test", name="Site Admin", role="admin")


@pytest.fixture
def tallinn_points() -> list[NewCalibrationPoint]:
    """Two surveyed points 100 m apart (model meters) on an east-west line in Tallinn."""
    return [
        NewCalibrationPoint(
            model=ModelCoord(x=0.0, y=0.0),
            gps=GpsCoord(lat=59.4370, lon=24.7536, accuracy_m=0.02),
            name="P1",
        ),
        NewCalibrationPoint(
            model=ModelCoord(x=100.0, y=0.0),
            gps=GpsCoord(lat=59.4370, lon=24.7550, accuracy_m=0.02),
            name="P2",
        ),
    ]
