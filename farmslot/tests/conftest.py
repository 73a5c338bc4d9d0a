"""
Test fixtures for farmslot tests.

Provides:
- File-backed SQLite database, created and dropped around every test
- Async test client with dependency overrides
- Test data factories for users, producers, products, slots and orders
- Bearer token helpers

The engine takes the SQLite write lock at BEGIN, so a session must never be
left inside a transaction while another session writes. Factories commit,
and assertions reload rows through `load()`, which uses its own short session.
"""
# IMPORTANT: Set environment variables BEFORE any other imports
import os
import tempfile

TEST_DB_DIR = tempfile.mkdtemp(prefix="farmslot-tests-")
TEST_JWT_SECRET = "test_jwt_secret"
TEST_INTERNAL_KEY = "test_internal_key"

os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(TEST_DB_DIR, 'test.db')}"
os.environ["JWT_SECRET"] = TEST_JWT_SECRET
os.environ["INTERNAL_API_KEY"] = TEST_INTERNAL_KEY
# Development mode for tests (disables ALLOWED_ORIGINS requirement)
os.environ["ENVIRONMENT"] = "development"
os.environ.pop("NOTIFY_WEBHOOK_URL", None)

import pytest
from datetime import timedelta
from decimal import Decimal
from typing import AsyncGenerator, Optional

from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from farmslot.app.core.auth import Caller, create_access_token
from farmslot.app.core.base import Base
from farmslot.app.core.constants import ROLE_ADMIN, ROLE_CLIENT, ROLE_PRODUCER, utcnow
from farmslot.app.core.database import async_session, engine
from farmslot.app.core.limiter import limiter
from farmslot.app.main import app
from farmslot.app.api.deps import get_cache, get_session, get_session_factory
from farmslot.app.models.user import User
from farmslot.app.models.producer import Producer
from farmslot.app.models.product import Product, Stock
from farmslot.app.models.delivery_slot import DeliverySlot
from farmslot.app.models.order import Order

limiter.enabled = False


class MockCacheService:
    """In-memory stand-in for the Redis coordination service."""

    def __init__(self):
        self._leases = {}

    async def ping(self) -> bool:
        return True

    async def try_acquire_lease(self, key: str, holder: str, ttl: int) -> bool:
        if key in self._leases:
            return False
        self._leases[key] = holder
        return True


async def load(model, pk):
    """Read a fresh copy of a row in a short-lived session."""
    async with async_session() as session:
        return await session.get(model, pk)


async def stock_quantity(product_id: int) -> Decimal:
    async with async_session() as session:
        result = await session.execute(select(Stock.quantity).where(Stock.product_id == product_id))
        return result.scalar_one()


async def rollback(session: AsyncSession) -> None:
    """
    Roll back after an expected failure and reload what the session still holds.

    Rollback expires every loaded instance, and an async session cannot
    lazy-load them back on attribute access.
    """
    await session.rollback()
    for instance in list(session.identity_map.values()):
        await session.refresh(instance)
    await session.commit()


def auth_header_for(user_id: int, role: str = ROLE_CLIENT) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


def caller_for(user: User) -> Caller:
    return Caller(id=user.id, role=user.role)


@pytest.fixture(scope="function")
async def test_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Fresh schema for each test and a session for factories and service calls.
    Commit or roll back before anything else touches the database.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # connections are bound to this test's event loop
    await engine.dispose()


@pytest.fixture
async def mock_cache() -> MockCacheService:
    return MockCacheService()


@pytest.fixture
async def client(
    test_session: AsyncSession,
    mock_cache: MockCacheService,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client for testing API endpoints.
    Every request gets its own session, like in production.
    """
    async def override_get_session():
        async with async_session() as session:
            yield session

    async def override_get_cache():
        yield mock_cache

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: async_session
    app.dependency_overrides[get_cache] = override_get_cache

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# --- Test Data Factories ---

async def _add(session: AsyncSession, obj):
    session.add(obj)
    await session.commit()
    await session.refresh(obj)
    await session.commit()
    return obj


@pytest.fixture
async def client_user(test_session: AsyncSession) -> User:
    return await _add(test_session, User(email="client@example.com", name="Client", role=ROLE_CLIENT))


@pytest.fixture
async def other_client_user(test_session: AsyncSession) -> User:
    return await _add(test_session, User(email="other@example.com", name="Other Client", role=ROLE_CLIENT))


@pytest.fixture
async def producer_user(test_session: AsyncSession) -> User:
    return await _add(test_session, User(email="farm@example.com", name="Farmer", role=ROLE_PRODUCER))


@pytest.fixture
async def other_producer_user(test_session: AsyncSession) -> User:
    return await _add(test_session, User(email="farm2@example.com", name="Other Farmer", role=ROLE_PRODUCER))


@pytest.fixture
async def admin_user(test_session: AsyncSession) -> User:
    return await _add(test_session, User(email="admin@example.com", name="Admin", role=ROLE_ADMIN))


@pytest.fixture
async def producer(test_session: AsyncSession, producer_user: User) -> Producer:
    return await _add(test_session, Producer(user_id=producer_user.id, company_name="Green Acres"))


@pytest.fixture
async def other_producer(test_session: AsyncSession, other_producer_user: User) -> Producer:
    return await _add(test_session, Producer(user_id=other_producer_user.id, company_name="Hill Farm"))


@pytest.fixture
def make_product(test_session: AsyncSession, producer: Producer):
    """Factory: product with a stock row."""
    async def _make(
        stock: str = "10",
        price: str = "2.00",
        name: str = "Tomatoes",
        owner: Optional[Producer] = None,
        available: bool = True,
    ) -> Product:
        product = await _add(test_session, Product(
            producer_id=(owner or producer).id,
            name=name,
            price=Decimal(price),
            unit="kg",
            available=available,
        ))
        await _add(test_session, Stock(product_id=product.id, quantity=Decimal(stock)))
        return product
    return _make


@pytest.fixture
def make_slot(test_session: AsyncSession):
    """Factory: delivery slot a few days ahead."""
    async def _make(
        product: Product,
        max_capacity: str = "10",
        reserved: str = "0",
        days_ahead: int = 3,
        is_available: bool = True,
    ) -> DeliverySlot:
        return await _add(test_session, DeliverySlot(
            product_id=product.id,
            date=utcnow() + timedelta(days=days_ahead),
            max_capacity=Decimal(max_capacity),
            reserved=Decimal(reserved),
            is_available=is_available,
        ))
    return _make


@pytest.fixture
def make_order(test_session: AsyncSession):
    """Factory: order owned by a user, DRAFT unless told otherwise."""
    async def _make(user: User, status: str = "DRAFT") -> Order:
        return await _add(test_session, Order(user_id=user.id, status=status, total=Decimal("0")))
    return _make


@pytest.fixture
async def product(make_product) -> Product:
    return await make_product()


@pytest.fixture
async def slot(make_slot, product: Product) -> DeliverySlot:
    return await make_slot(product)


@pytest.fixture
async def order(make_order, client_user: User) -> Order:
    return await make_order(client_user)
