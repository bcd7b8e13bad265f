import os
from typing import Any, AsyncGenerator, Mapping

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-memory ledger and deterministic settings for every test
os.environ.setdefault("LEDGER_BACKEND", "memory")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("PLATFORM_COMMISSION_RATE", "30")
os.environ.setdefault("CURRENCY", "BRL")
os.environ.setdefault("APP_URL", "http://test")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("PAYPAL_CLIENT_ID", "paypal-client")
os.environ.setdefault("PAYPAL_CLIENT_SECRET", "paypal-secret")
os.environ.setdefault("PAYPAL_WEBHOOK_ID", "WH-TEST")
os.environ.setdefault("MERCADOPAGO_ACCESS_TOKEN", "TEST-token")
os.environ.setdefault("MERCADOPAGO_WEBHOOK_SECRET", "mp-webhook-secret")

from coursepay.core.security import create_session_cookie  # noqa: E402
from coursepay.deps import SESSION_COOKIE_NAME, get_gateway_factory  # noqa: E402
from coursepay.gateways.base import CheckoutSession, PaymentGateway  # noqa: E402
from coursepay.gateways.events import PaymentEvent  # noqa: E402
from coursepay.ledger.base import set_ledger_store  # noqa: E402
from coursepay.ledger.memory import MemoryLedgerStore  # noqa: E402
from coursepay.schemas import (  # noqa: E402
    CourseRecord,
    GatewayName,
    InstructorProfileRecord,
    OrderRecord,
    UserRecord,
)


class FakeGateway(PaymentGateway):
    """Records calls; returns canned sessions and events."""

    def __init__(self, name: GatewayName) -> None:
        self.name = name
        self.created: list[OrderRecord] = []
        self.refunds: list[tuple[str, int | None]] = []
        self.events: list[PaymentEvent] = []
        self.capture_event: PaymentEvent | None = None
        self.fail_with: Exception | None = None

    async def create_checkout(self, order: OrderRecord) -> CheckoutSession:
        if self.fail_with is not None:
            raise self.fail_with
        self.created.append(order)
        return CheckoutSession(
            external_ref=f"{self.name.value}_ref_{len(self.created)}",
            checkout_url=f"https://pay.example/{self.name.value}/{order.id}",
        )

    async def verify_webhook(
        self, raw_body: bytes, headers: Mapping[str, str], query: Mapping[str, str] | None = None
    ) -> list[PaymentEvent]:
        return list(self.events)

    async def capture(self, external_ref: str) -> PaymentEvent | None:
        return self.capture_event

    async def refund(self, order: OrderRecord, amount_cents: int | None = None) -> dict[str, Any]:
        self.refunds.append((order.id, amount_cents))
        return {"id": f"re_{len(self.refunds)}", "status": "succeeded"}


class FakeGateways:
    def __init__(self) -> None:
        self.by_name = {name: FakeGateway(name) for name in GatewayName}

    def __call__(self, name: GatewayName | str) -> FakeGateway:
        return self.by_name[GatewayName(name)]

    def __getitem__(self, name: GatewayName) -> FakeGateway:
        return self.by_name[name]


class RecordingNotifier:
    def __init__(self) -> None:
        self.orders: list[OrderRecord] = []

    async def __call__(self, store, order: OrderRecord) -> None:
        self.orders.append(order)


def seed(store: MemoryLedgerStore) -> MemoryLedgerStore:
    store.add_user(UserRecord(id="student-1", email="student@example.com", name="Student"))
    store.add_user(UserRecord(id="student-2", email="other@example.com", name="Other"))
    store.add_user(UserRecord(id="inst-1", email="inst1@example.com", name="Ana", role="instructor"))
    store.add_user(UserRecord(id="inst-2", email="inst2@example.com", name="Bruno", role="instructor"))
    store.add_user(UserRecord(id="admin-1", email="admin@example.com", name="Admin", role="admin"))
    store.add_instructor_profile(InstructorProfileRecord(user_id="inst-1"))
    store.add_instructor_profile(InstructorProfileRecord(user_id="inst-2"))
    store.add_course(CourseRecord(id="course-a", title="Python Basics", price_cents=100_00, instructor_id="inst-1"))
    store.add_course(CourseRecord(id="course-b", title="Data Science", price_cents=50_00, instructor_id="inst-2"))
    store.add_course(CourseRecord(id="course-c", title="Async IO", price_cents=33_33, instructor_id="inst-1"))
    store.add_course(
        CourseRecord(id="course-draft", title="Draft", price_cents=10_00, instructor_id="inst-1", is_published=False)
    )
    return store


@pytest.fixture
def store() -> MemoryLedgerStore:
    s = seed(MemoryLedgerStore())
    set_ledger_store(s)
    yield s
    set_ledger_store(None)


@pytest.fixture
def gateways() -> FakeGateways:
    return FakeGateways()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture(autouse=True)
def _no_queue(monkeypatch):
    """Completion notifications never reach Redis in tests."""
    from coursepay.services import notifications

    async def _enqueue(user_id, course_titles, amount):
        return None

    monkeypatch.setattr(notifications, "enqueue_purchase_email", _enqueue)


def login(client: AsyncClient, user_id: str, session_version: int = 0) -> None:
    client.cookies.set(SESSION_COOKIE_NAME, create_session_cookie({"user_id": user_id, "session_version": session_version}))


@pytest_asyncio.fixture
async def client(store, gateways) -> AsyncGenerator[AsyncClient, None]:
    from coursepay.main import app
    app.dependency_overrides[get_gateway_factory] = lambda: gateways
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
