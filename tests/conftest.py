# tests/conftest.py
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from pikup.core.config import Settings
from pikup.core.session import Session
from pikup.deps import build_services
from pikup.repos.inmemory import InMemoryDocumentStore

DB_URL = "https://firestore.test/v1/projects/demo/databases/(default)/documents"
PAYMENTS_URL = "https://payments.test"
T0 = datetime(2025, 3, 5, 12, 0, tzinfo=timezone.utc)  # a Wednesday


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakePaymentService:
    """Stands in for the settlement/presence server over httpx.MockTransport."""

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.cancel_response = {"success": True, "cancellationFee": 0, "refundAmount": 0, "driverCompensation": 0}
        self.payout_response = {"success": True}
        self.online = []
        self.stats = {"totalOnlineMinutes": 95, "tripsCompleted": 3, "totalEarnings": 84.5}

    def paths(self):
        return [path for _, path, _ in self.calls]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else dict(request.url.params)
        self.calls.append((request.method, path, body))
        if path in self.failures:
            return httpx.Response(self.failures[path], json={"error": "payment service unavailable"})
        if path == "/cancel-order":
            return httpx.Response(200, json=self.cancel_response)
        if path == "/process-trip-payout":
            return httpx.Response(200, json=self.payout_response)
        if path == "/driver/online":
            return httpx.Response(200, json={"success": True, "sessionId": "sess-1"})
        if path == "/driver/offline":
            return httpx.Response(200, json={"success": True, "onlineMinutes": 42})
        if path == "/driver/heartbeat":
            return httpx.Response(200, json={"success": True})
        if path == "/drivers/online":
            return httpx.Response(200, json={"drivers": self.online, "count": len(self.online)})
        if path.endswith("/session-stats"):
            return httpx.Response(200, json=self.stats)
        return httpx.Response(404, json={"error": "no route"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture(scope="session")
def anyio_backend():
    # keep AnyIO on asyncio for the whole test session
    return "asyncio"


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        document_store_url=DB_URL,
        payment_service_url=PAYMENTS_URL,
        api_key=None,
        poll_retry_delay=0.001,
        message_poll_interval=0.01,
        order_status_poll_interval=0.01,
        list_refresh_interval=0.01,
        heartbeat_interval=0.01,
        expiry_sweep_interval=0.01,
    )


@pytest.fixture
def clock():
    return Clock(T0)


@pytest.fixture
def store():
    return InMemoryDocumentStore(valid_tokens={"customer-token", "driver-token", "driver2-token"})


@pytest.fixture
def payment_service():
    return FakePaymentService()


@pytest.fixture
def customer_session():
    return Session(uid="cust-1", access_token="customer-token", email="casey@example.com", role="customer")


@pytest.fixture
def driver_session():
    return Session(uid="drv-1", access_token="driver-token", email="dana@example.com", role="driver", display_name="Dana")


@pytest.fixture
def make_services(settings, store, payment_service, clock):
    def _make(session):
        return build_services(
            session, settings, store=store, payment_transport=payment_service.transport(), clock=clock,
        )
    return _make


@pytest.fixture
def customer(make_services, customer_session):
    return make_services(customer_session)


@pytest.fixture
def driver(make_services, driver_session):
    return make_services(driver_session)


@pytest.fixture
def other_driver(make_services):
    return make_services(Session(uid="drv-2", access_token="driver2-token", email="ari@example.com", role="driver"))


@pytest.fixture
def seed_order(store, clock):
    def _seed(order_id="o1", **fields):
        data = {
            "customerId": "cust-1",
            "customerEmail": "casey@example.com",
            "status": "pending",
            "pickup": {"address": "1 Main St", "coordinates": {"latitude": 33.75, "longitude": -84.39}},
            "dropoff": {"address": "9 Oak Ave", "coordinates": {"latitude": 33.78, "longitude": -84.38}},
            "pricing": {"total": 40.0},
            "createdAt": clock(),
            "expiresAt": clock() + timedelta(minutes=4),
            "resetCount": 0,
            "extendedTimes": 0,
            "viewingDriverId": None,
        }
        data.update(fields)
        store.put(f"pickupRequests/{order_id}", data)
        return order_id
    return _seed
