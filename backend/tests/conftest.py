"""
Pytest configuration and fixtures for DealerSync tests.

Provides:
- Async database sessions on in-memory SQLite
- Seeded dealer configuration, admin user and cron secret
- A fake partner feed and photo host on httpx.MockTransport
- Test HTTP client with dependency overrides
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

# Add backend to path for imports
backend_path = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_path))

# Set environment variables for testing BEFORE any imports
# These need to be set before the modules are imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test_jwt_secret_for_testing_only")
os.environ.setdefault("API_ENCRYPTION_KEY", "test_encryption_key_for_tests")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("FEED_CONNECT_ATTEMPTS", "1")

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.core.security import create_session_token, get_credential_cipher
from app.db.postgres.models import AdminUser, Base, DealerApiConfig, InternalSecret
from app.services.object_storage import InMemoryObjectStorage

DEALER_ID = "dealer-1"
FEED_BASE_URL = "https://partner.example.com"
PARTNER_API_KEY = "pk_test_partner_key_123"
CRON_SECRET = "cron-secret-value"


# =============================================================================
# Fake Partner Feed
# =============================================================================


def make_vehicle(vin: str, **overrides: Any) -> Dict[str, Any]:
    """A feed row with sensible defaults."""
    row: Dict[str, Any] = {
        "id": f"ext-{vin[-4:]}",
        "vin": vin,
        "stock_number": f"STK{vin[-4:]}",
        "year": 2021,
        "make": "Ford",
        "model": "F-150",
        "trim": "XLT",
        "price": 35000,
        "mileage": 24000,
        "color": "Blue",
        "interior_color": "Black",
        "drivetrain": "4WD",
        "body_style": "Truck",
        "description": "One owner",
        "photo_urls": [
            f"https://photos.example.com/{vin}/front.jpg",
            f"https://photos.example.com/{vin}/rear.png",
        ],
        "features": ["Bluetooth", "Backup Camera"],
    }
    row.update(overrides)
    return row


class FakeFeed:
    """
    Paginated partner feed served through httpx.MockTransport.

    ``fail_on_page`` maps a page number to the status code it returns.
    """

    def __init__(
        self,
        vehicles: Optional[List[Any]] = None,
        page_size: int = 100,
        api_key: str = PARTNER_API_KEY,
    ):
        self.vehicles = list(vehicles or [])
        self.page_size = page_size
        self.api_key = api_key
        self.fail_on_page: Dict[int, int] = {}
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.headers.get("X-API-Key") != self.api_key:
            return httpx.Response(401, json={"error": "invalid api key"})

        page = int(request.url.params.get("page", "1"))
        limit = int(request.url.params.get("limit", str(self.page_size)))
        if page in self.fail_on_page:
            return httpx.Response(self.fail_on_page[page], text="upstream exploded")

        total = len(self.vehicles)
        total_pages = (total + limit - 1) // limit if total else 0
        start = (page - 1) * limit
        return httpx.Response(
            200,
            json={
                "vehicles": self.vehicles[start : start + limit],
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "total_pages": total_pages,
                },
            },
        )

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class FakePhotoHost:
    """Serves image bytes for any URL; URLs containing "broken" return 404."""

    def __init__(self):
        self.downloads: List[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.downloads.append(url)
        if "broken" in url:
            return httpx.Response(404)
        content_type = "image/png" if url.endswith(".png") else "image/jpeg"
        return httpx.Response(200, content=b"\x89image-bytes", headers={"content-type": content_type})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def feed_factory() -> Callable[..., FakeFeed]:
    return FakeFeed


@pytest.fixture
def feed() -> FakeFeed:
    return FakeFeed()


@pytest.fixture
def photo_host() -> FakePhotoHost:
    return FakePhotoHost()


@pytest.fixture
def storage() -> InMemoryObjectStorage:
    return InMemoryObjectStorage()


def json_body(request: httpx.Request) -> Any:
    return json.loads(request.content.decode("utf-8"))


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture(scope="function")
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing."""
    session_factory = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def dealer_config(db_session: AsyncSession) -> DealerApiConfig:
    """An enabled configuration with an encrypted partner key."""
    config = DealerApiConfig(
        dealer_id=DEALER_ID,
        endpoint_base=FEED_BASE_URL + "/",
        api_key_encrypted=get_credential_cipher().encrypt(PARTNER_API_KEY),
        is_enabled=True,
        sync_interval_minutes=15,
    )
    db_session.add(config)
    await db_session.commit()
    return config


@pytest_asyncio.fixture
async def admin_user(db_session: AsyncSession) -> AdminUser:
    user = AdminUser(email="admin@dealer.example.com", dealer_id=DEALER_ID)
    db_session.add(user)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def cron_secret(db_session: AsyncSession) -> str:
    db_session.add(InternalSecret(key=settings.CRON_SECRET_NAME, value=CRON_SECRET))
    await db_session.commit()
    return CRON_SECRET


@pytest.fixture
def admin_token(admin_user: AdminUser) -> str:
    return create_session_token(subject=admin_user.id)


@pytest.fixture
def admin_headers(admin_token: str) -> dict[str, str]:
    """Authorization headers for admin requests."""
    return {"Authorization": f"Bearer {admin_token}"}


# =============================================================================
# Application Fixtures
# =============================================================================


@pytest.fixture
def app():
    """Create a fresh application instance."""
    from app.main import create_application

    return create_application()


@pytest_asyncio.fixture
async def async_client(
    app, db_session, storage, feed, photo_host
) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client wired to the fake feed, photo host and storage."""
    from app.api.v1.endpoints.inventory_sync import get_sync_service
    from app.db.postgres.session import get_db
    from app.services.inventory_sync_service import InventorySyncService

    # Override the database dependency
    async def override_get_db():
        yield db_session

    async def override_get_sync_service():
        return InventorySyncService(
            db_session,
            storage=storage,
            feed_transport=feed.transport,
            photo_transport=photo_host.transport,
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sync_service] = override_get_sync_service

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()
