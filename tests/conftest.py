"""
Pytest configuration and fixtures.

Every test gets its own SQLite database file and a Daraja gateway served
by `httpx.MockTransport`, so nothing leaves the process.
"""
import os

os.environ.update(
    {
        "MPESA_CONSUMER_KEY": "test-consumer-key",
        "MPESA_CONSUMER_SECRET": "test-consumer-secret",
        "MPESA_SHORTCODE": "174379",
        "MPESA_PASSKEY": "test-passkey",
        "MPESA_BASE_URL": "https://daraja.test",
        "SERVER_URL": "https://callbacks.example.com",
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "ADMIN_API_KEY": "admin-test-key",
        "APP_ENV": "test",
    }
)
os.environ.pop("REDIS_URL", None)

import itertools  # noqa: E402
import json  # noqa: E402
import uuid  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from merchant_payments.api.dependencies import hash_api_key  # noqa: E402
from merchant_payments.api.main import create_app  # noqa: E402
from merchant_payments.api.services import build_services  # noqa: E402
from merchant_payments.config import Settings, get_settings  # noqa: E402
from merchant_payments.core.payment_initiator import PaymentInitiator  # noqa: E402
from merchant_payments.core.reconciliation import CallbackReconciler  # noqa: E402
from merchant_payments.database.connection import (  # noqa: E402
    create_session_factory,
    get_db,
    init_db,
)
from merchant_payments.database.models import Merchant, Transaction  # noqa: E402
from merchant_payments.integrations.daraja_client import STK_PUSH_PATH, DarajaClient  # noqa: E402

MERCHANT_ID = "m1"
MERCHANT_API_KEY = "mpk_test_merchant_key"
OTHER_MERCHANT_ID = "m2"
OTHER_MERCHANT_API_KEY = "mpk_test_other_merchant_key"
ADMIN_API_KEY = "admin-test-key"


class FakeTokenProvider:
    """Token provider that never calls the gateway."""

    def __init__(self, token: str = "test-access-token", error: Optional[Exception] = None):
        self.token = token
        self.error = error
        self.calls = 0
        self.invalidations = 0

    async def get_access_token(self) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.token

    def invalidate(self) -> None:
        self.invalidations += 1


class FakeDaraja:
    """
    Scripted STK push endpoint.

    Queued responses are served in order; when the queue is empty every
    push is accepted with a fresh CheckoutRequestID.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.queue: List[Any] = []
        self._ids = itertools.count(1)

    def respond(self, status_code: int = 200, json_body: Optional[Dict[str, Any]] = None) -> None:
        self.queue.append(httpx.Response(status_code, json=json_body or {}))

    def fail(self, error: Exception) -> None:
        self.queue.append(error)

    def accept(self, checkout_request_id: str, merchant_request_id: str = "29115-34620561-1") -> None:
        self.respond(
            200,
            {
                "MerchantRequestID": merchant_request_id,
                "CheckoutRequestID": checkout_request_id,
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            },
        )

    @property
    def push_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == STK_PUSH_PATH]

    def payload(self, index: int = -1) -> Dict[str, Any]:
        return json.loads(self.push_requests[index].content)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.queue:
            item = self.queue.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return httpx.Response(
            200,
            json={
                "MerchantRequestID": f"mr_{uuid.uuid4().hex[:8]}",
                "CheckoutRequestID": f"ws_CO_{next(self._ids)}",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            },
        )


@pytest.fixture
def settings() -> Settings:
    """Settings built from the test environment."""
    return get_settings()


@pytest_asyncio.fixture
async def engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """Fresh SQLite database file with all tables."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}",
        poolclass=NullPool,
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> Any:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def test_db(session_factory: Any) -> AsyncGenerator[AsyncSession, Any]:
    """Database session for the code under test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def merchant(session_factory: Any) -> Merchant:
    """Registered merchant `m1` plus a second merchant `m2`."""
    async with session_factory() as session:
        m1 = Merchant(
            id=MERCHANT_ID,
            name="Mama Mboga Shop",
            email="owner@mamamboga.co.ke",
            phone="254712000000",
            shortcode="174379",
            account_type="paybill",
            status="active",
            api_key_hash=hash_api_key(MERCHANT_API_KEY),
        )
        session.add(m1)
        session.add(
            Merchant(
                id=OTHER_MERCHANT_ID,
                name="Other Store",
                account_type="till",
                status="active",
                api_key_hash=hash_api_key(OTHER_MERCHANT_API_KEY),
            )
        )
        await session.commit()
    return m1


@pytest.fixture
def token_provider() -> FakeTokenProvider:
    return FakeTokenProvider()


@pytest.fixture
def gateway() -> FakeDaraja:
    return FakeDaraja()


@pytest_asyncio.fixture
async def http_client(gateway: FakeDaraja) -> AsyncGenerator[httpx.AsyncClient, Any]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(gateway.handler)) as client:
        yield client


@pytest.fixture
def daraja_client(
    token_provider: FakeTokenProvider, http_client: httpx.AsyncClient, settings: Settings
) -> DarajaClient:
    return DarajaClient(token_provider=token_provider, http_client=http_client, settings=settings)


@pytest.fixture
def initiator(daraja_client: DarajaClient) -> PaymentInitiator:
    return PaymentInitiator(daraja_client)


@pytest.fixture
def reconciler(session_factory: Any) -> CallbackReconciler:
    return CallbackReconciler(session_factory)


@pytest.fixture
def make_transaction(session_factory: Any) -> Callable[..., Any]:
    """Insert a transaction directly and return its id."""

    async def _make(**overrides: Any) -> uuid.UUID:
        fields: Dict[str, Any] = {
            "id": uuid.uuid4(),
            "merchant_id": MERCHANT_ID,
            "checkout_request_id": f"ws_CO_{uuid.uuid4().hex[:10]}",
            "merchant_request_id": "29115-34620561-1",
            "amount": Decimal("50.00"),
            "phone_number": "254712345678",
            "status": "pending",
            "account_reference": "MAMAMB120000",
            "description": "Mama Mbo 0000",
        }
        fields.update(overrides)
        async with session_factory() as session:
            session.add(Transaction(**fields))
            await session.commit()
        return fields["id"]

    return _make


@pytest.fixture
def load_transaction(session_factory: Any) -> Callable[..., Any]:
    """Read a transaction back in a fresh session."""

    async def _load(transaction_id: uuid.UUID) -> Optional[Transaction]:
        async with session_factory() as session:
            return await session.get(Transaction, transaction_id)

    return _load


@pytest.fixture
def stk_callback() -> Callable[..., Dict[str, Any]]:
    """Build a Daraja STK callback body."""

    def _build(
        checkout_request_id: str,
        result_code: Any = 0,
        result_desc: str = "The service request is processed successfully.",
        receipt: Optional[str] = "R123",
        amount: Any = None,
        phone: Any = None,
        transaction_date: Any = None,
    ) -> Dict[str, Any]:
        stk: Dict[str, Any] = {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": checkout_request_id,
            "ResultCode": result_code,
            "ResultDesc": result_desc,
        }
        items = []
        if receipt is not None:
            items.append({"Name": "MpesaReceiptNumber", "Value": receipt})
        if amount is not None:
            items.append({"Name": "Amount", "Value": amount})
        if phone is not None:
            items.append({"Name": "PhoneNumber", "Value": phone})
        if transaction_date is not None:
            items.append({"Name": "TransactionDate", "Value": transaction_date})
        if items:
            items.append({"Name": "Balance"})
            stk["CallbackMetadata"] = {"Item": items}
        return {"Body": {"stkCallback": stk}}

    return _build


@pytest.fixture
def app(
    settings: Settings,
    session_factory: Any,
    http_client: httpx.AsyncClient,
    token_provider: FakeTokenProvider,
) -> Any:
    """Application wired to the test database and the fake gateway."""
    services = build_services(
        settings,
        session_factory,
        http_client=http_client,
        token_provider=token_provider,
    )
    application = create_app(services)

    async def _get_db() -> AsyncGenerator[AsyncSession, Any]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    application.dependency_overrides[get_db] = _get_db
    return application


@pytest_asyncio.fixture
async def client(app: Any) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """Create test HTTP client."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def merchant_headers() -> Dict[str, str]:
    return {"X-API-Key": MERCHANT_API_KEY}


@pytest.fixture
def other_merchant_headers() -> Dict[str, str]:
    return {"X-API-Key": OTHER_MERCHANT_API_KEY}


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"X-Admin-Key": ADMIN_API_KEY}
