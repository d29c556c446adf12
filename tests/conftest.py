"""Shared test fixtures."""

from __future__ import annotations

import os

# Settings are cached on first use; point them at SQLite before anything imports them
os.environ["COINBOOK_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["COINBOOK_SESSION_SECRET"] = "test-session-secret"
os.environ["COINBOOK_LOG_FORMAT"] = "console"
os.environ["COINBOOK_COMMERCE_WEBHOOK_SECRET"] = ""

from collections.abc import AsyncGenerator, Awaitable, Callable  # noqa: E402
from unittest.mock import AsyncMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402

from coinbook.achievements.registry import registry  # noqa: E402
from coinbook.achievements.seed import seed_achievements  # noqa: E402
from coinbook.auth.jwt import create_session_token  # noqa: E402
from coinbook.classification.config import flavor_config  # noqa: E402
from coinbook.config import get_settings  # noqa: E402
from coinbook.database import close_db, get_engine, get_session_factory, init_db  # noqa: E402
from coinbook.db.base import Base  # noqa: E402
from coinbook.db.models import CustomerOrderItem, Product, ProductMetadata, User  # noqa: E402
from coinbook.dependencies import get_redis_dep  # noqa: E402
from coinbook.progress.cache import progress_cache  # noqa: E402

get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _reset_process_caches():
    """Process-wide caches must not leak between tests (each test gets a fresh database)."""
    registry.invalidate()
    flavor_config.invalidate()
    progress_cache.clear()
    yield
    registry.invalidate()
    flavor_config.invalidate()
    progress_cache.clear()


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Redis stand-in that records publishes."""
    redis = AsyncMock()
    redis.publish = AsyncMock(return_value=1)
    return redis


@pytest_asyncio.fixture
async def database() -> AsyncGenerator[None, None]:
    """Fresh in-memory SQLite schema for one test."""
    await init_db(get_settings().database_url)
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await close_db()


@pytest_asyncio.fixture
async def db_session(database) -> AsyncGenerator[AsyncSession, None]:
    """Get a direct database session for test assertions."""
    async with get_session_factory()() as session:
        yield session


@pytest_asyncio.fixture
async def seeded_db(db_session: AsyncSession) -> AsyncSession:
    """Session over a database holding the default achievement catalog and flavor config."""
    await seed_achievements(db_session)
    return db_session


@pytest.fixture
def make_user(db_session: AsyncSession) -> Callable[..., Awaitable[User]]:
    async def _make(role: str = "regular", **fields) -> User:
        user = User(role=role, **fields)
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


@pytest.fixture
def make_product(db_session: AsyncSession) -> Callable[..., Awaitable[Product]]:
    """Create a product with metadata. Rankable by anyone unless ``rankable=False``."""

    async def _make(
        title: str = "Original Beef Jerky",
        *,
        vendor: str | None = "Ridge Smokehouse",
        flavors: tuple[str, ...] = (),
        protein: str | None = "beef",
        rankable: bool = True,
        external_id: str | None = None,
        is_active: bool = True,
    ) -> Product:
        product = Product(title=title, vendor=vendor, external_id=external_id, is_active=is_active)
        db_session.add(product)
        await db_session.flush()
        db_session.add(ProductMetadata(
            product_id=product.id,
            flavor_profiles=list(flavors),
            protein_category=protein,
            force_rankable=rankable,
        ))
        await db_session.commit()
        return product

    return _make


@pytest.fixture
def add_order_item(db_session: AsyncSession) -> Callable[..., Awaitable[CustomerOrderItem]]:
    async def _add(user_id: int, product_id: int, status: str = "delivered", order_number: str | None = None):
        item = CustomerOrderItem(
            user_id=user_id,
            product_id=product_id,
            order_number=order_number or f"#{user_id}-{product_id}",
            sku="",
            fulfillment_status=status,
        )
        db_session.add(item)
        await db_session.commit()
        return item

    return _add


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_session_token(user.id, user.role)}"}


@pytest.fixture
def headers_for() -> Callable[[User], dict[str, str]]:
    return auth_headers


@pytest_asyncio.fixture
async def client(seeded_db: AsyncSession, mock_redis: AsyncMock) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client over the app, sharing the test database and a mocked Redis."""
    from coinbook.main import create_app

    app = create_app()

    async def _redis_override() -> AsyncGenerator[object, None]:
        yield mock_redis

    app.dependency_overrides[get_redis_dep] = _redis_override
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def regular_user(make_user) -> User:
    return await make_user(email="taster@example.com", handle="taster")


@pytest_asyncio.fixture
async def admin_user(make_user) -> User:
    return await make_user(role="admin", email="admin@example.com", handle="admin")
