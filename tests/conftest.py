"""Pytest configuration and shared fixtures."""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from firmware_hub.auth import SCOPE_ADMIN, SCOPE_PUBLISH, create_access_token
from firmware_hub.config import Settings
from firmware_hub.database import get_db
from firmware_hub.firmware import FirmwareService
from firmware_hub.main import create_app
from firmware_hub.models import Base
from firmware_hub.resolver import VersionResolver
from firmware_hub.storage import LocalBlobStore

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at temporary storage with rate limiting off."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        storage_path=str(tmp_path / "firmware"),
        max_artifact_bytes=1024,
        auth_enabled=True,
        jwt_secret="test-secret",
        rate_limit_enabled=False,
        log_level="WARNING",
    )


@pytest.fixture
async def db_engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def db_session(db_engine):
    """Create test database session."""
    async_session = async_sessionmaker(
        db_engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session() as session:
        yield session


@pytest.fixture
def blob_store(tmp_path):
    """Blob store in a temporary directory."""
    return LocalBlobStore(str(tmp_path / "blobs"))


@pytest.fixture
def firmware_service(blob_store):
    """Firmware service with a small size ceiling."""
    return FirmwareService(
        blob_store=blob_store,
        resolver=VersionResolver("/api/firmware/download?device={device_class}&version={version}"),
        allowed_extension=".bin",
        max_artifact_bytes=16,
        default_device_class="esp32",
    )


@pytest.fixture
def app(settings):
    """Application built from test settings."""
    return create_app(settings)


@pytest.fixture
async def client(app, db_session):
    """Create test HTTP client with database override."""
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def publish_headers(settings):
    """Authorization headers for a publisher."""
    token = create_access_token("ci-pipeline", SCOPE_PUBLISH, settings)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(settings):
    """Authorization headers for an operator."""
    token = create_access_token("operator", SCOPE_ADMIN, settings)
    return {"Authorization": f"Bearer {token}"}
