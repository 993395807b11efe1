"""
Shared pytest fixtures for the notification dispatch tests.

Every test gets its own in-memory Redis (fakeredis), a controllable clock
and a console mail transport that records what would have been sent.
"""

import httpx
import pytest
from fakeredis import FakeAsyncRedis, FakeServer

from api.main import create_app
from dispatch.runtime import DispatchRuntime
from shared.channels import ConsoleMailTransport
from shared.config import EmailSettings, QueueSettings, ServiceSettings, Settings
from shared.data_store import NotificationStore
from shared.templates import TemplateRenderer


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
async def redis():
    """Fresh, isolated in-memory Redis."""
    client = FakeAsyncRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    """Settings with a configured admin address and fast polling."""
    return Settings(
        service=ServiceSettings(frontend_url="https://shop.test", run_workers=False),
        email=EmailSettings(transport="console", admin_email="admin@shop.test"),
        queue=QueueSettings(poll_interval_ms=10, job_timeout_seconds=2.0),
    )


@pytest.fixture
def transport() -> ConsoleMailTransport:
    """Fresh console transport for each test."""
    return ConsoleMailTransport(fail_rate=0.0)


@pytest.fixture
def renderer() -> TemplateRenderer:
    return TemplateRenderer()


@pytest.fixture
def store(redis) -> NotificationStore:
    return NotificationStore(redis)


@pytest.fixture
def runtime(redis, settings, transport, clock) -> DispatchRuntime:
    """Runtime wired to fakeredis, the console transport and the fake clock."""
    return DispatchRuntime(redis, settings, transport=transport, clock=clock)


@pytest.fixture
async def client(runtime):
    """HTTP client talking to the app in-process."""
    app = create_app(runtime)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


# =============================================================================
# Event Payload Fixtures
# =============================================================================

@pytest.fixture
def user_registered_data() -> dict:
    return {"user": {"id": "u1", "email": "a@b.com", "firstName": "Ann"}}


@pytest.fixture
def order_created_data() -> dict:
    return {
        "order": {
            "id": "o1",
            "total": 59.9,
            "items": [
                {"productId": "p1", "name": "Coffee mug", "quantity": 2, "price": 12.45},
                {"productId": "p2", "name": "Tea kettle", "quantity": 1, "price": 35.0},
            ],
        },
        "user": {"id": "u1", "email": "a@b.com", "firstName": "Ann"},
    }


@pytest.fixture
def order_shipped_data() -> dict:
    return {"order": {"id": "o1"}, "user": {"id": "u1", "email": "a@b.com"}, "trackingNumber": "T1"}


@pytest.fixture
def low_stock_data() -> dict:
    return {"product": {"id": "p1", "name": "Coffee mug"}, "currentStock": 3, "threshold": 10}


@pytest.fixture
def valid_events(
    user_registered_data, order_created_data, order_shipped_data, low_stock_data
) -> dict[str, dict]:
    """One valid payload per event type."""
    order_ref = {"order": {"id": "o1"}, "user": {"id": "u1"}}
    return {
        "user.registered": user_registered_data,
        "order.created": order_created_data,
        "order.confirmed": order_ref,
        "order.shipped": order_shipped_data,
        "order.delivered": order_ref,
        "order.cancelled": {**order_ref, "reason": "Out of stock"},
        "product.low_stock": low_stock_data,
        "admin.action": {"action": "price_update", "adminUser": {"email": "boss@shop.test"}},
    }
