"""
Pytest configuration and fixtures.
"""
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from course_payments.config import Settings, get_settings
from course_payments.core.enrollment import EnrollmentGranter
from course_payments.core.notifier import OrderChangeNotifier
from course_payments.core.order_store import LineItem, OrderStore
from course_payments.core.reconciliation import ReconciliationEngine
from course_payments.database.connection import build_engine, build_session_factory, init_db
from course_payments.database.models import Order
from course_payments.integrations.gateway_client import GatewayClient
from course_payments.integrations.notifications import NotificationDispatcher

VALIDATION_API_KEY = "test-validation-key"

TEST_ENV = {
    "REDIS_URL": "",
    "GATEWAY_WEBHOOK_SECRET": "",
    "GATEWAY_API_BASE_URL": "https://gateway.test",
    "VALIDATION_API_KEY": VALIDATION_API_KEY,
    "NOTIFICATION_URL": "",
    "ORDER_LOOKUP_RETRY_DELAY_SECONDS": "0",
    "STATUS_POLL_INTERVAL_SECONDS": "0.05",
    "STATUS_POLL_MAX_WAIT_SECONDS": "2",
    "APP_NAME": "course-payments-test",
    "APP_ENV": "test",
    "LOG_LEVEL": "DEBUG",
}


@pytest.fixture(autouse=True)
def test_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Any) -> Settings:
    """Per-test settings backed by a fresh SQLite file."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)

    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create test database engine with all tables."""
    engine = build_engine(test_settings.database_url, connect_args={"timeout": 30})
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(db_engine)


@pytest.fixture
def notifier() -> OrderChangeNotifier:
    return OrderChangeNotifier()


@pytest.fixture
def store(
    session_factory: async_sessionmaker[AsyncSession], notifier: OrderChangeNotifier
) -> OrderStore:
    return OrderStore(session_factory, notifier=notifier)


@pytest.fixture
def granter(session_factory: async_sessionmaker[AsyncSession]) -> EnrollmentGranter:
    return EnrollmentGranter(session_factory)


@pytest.fixture
def fake_sleep() -> AsyncMock:
    """Sleep used by the lookup retry; records delays without waiting."""
    return AsyncMock()


@pytest.fixture
def engine(
    store: OrderStore, granter: EnrollmentGranter, fake_sleep: AsyncMock
) -> ReconciliationEngine:
    return ReconciliationEngine(store, granter, sleep=fake_sleep)


@pytest.fixture
def make_order(store: OrderStore) -> Callable[..., Awaitable[Order]]:
    """Factory creating pending orders with sensible defaults."""

    async def _make_order(
        buyer_id: str = "buyer_1",
        items: Optional[List[LineItem]] = None,
        payment_method: str = "mercadopago",
        amount_cents: int = 4900,
        currency: str = "USD",
        order_id: Optional[str] = None,
    ) -> Order:
        return await store.create_pending_order(
            buyer_id=buyer_id,
            items=items or [LineItem("course_x", amount_cents)],
            payment_method=payment_method,
            amount_cents=amount_cents,
            currency=currency,
            order_id=order_id,
        )

    return _make_order


@pytest.fixture
def mock_gateway_client() -> AsyncMock:
    """Gateway client returning payloads configured per test."""
    return AsyncMock(spec=GatewayClient)


@pytest.fixture
def mock_dispatcher() -> AsyncMock:
    return AsyncMock(spec=NotificationDispatcher)


@pytest_asyncio.fixture
async def container(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    mock_gateway_client: AsyncMock,
    mock_dispatcher: AsyncMock,
) -> Any:
    """Service container over the test database with mocked network clients."""
    from course_payments.services import build_container

    return build_container(
        settings=test_settings,
        session_factory=session_factory,
        gateway_client=mock_gateway_client,
        dispatcher=mock_dispatcher,
    )


@pytest_asyncio.fixture
async def client(container: Any) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    from course_payments.api.main import create_app

    app = create_app(container=container)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def gateway_payment() -> Callable[..., Dict[str, Any]]:
    """Build a gateway payment resource."""

    def _payment(
        payment_id: int = 1001,
        status: str = "approved",
        external_reference: Optional[str] = None,
        **extra: Any,
    ) -> Dict[str, Any]:
        payment: Dict[str, Any] = {
            "id": payment_id,
            "status": status,
            "status_detail": "accredited" if status == "approved" else status,
            "external_reference": external_reference,
            "transaction_amount": 49.0,
            "currency_id": "USD",
        }
        payment.update(extra)
        return payment

    return _payment
