import hashlib
import hmac

import pytest
from fastapi.testclient import TestClient

from evently.bootstrap import build_container, create_schema, register_consumers
from evently.domain.auth import Role
from evently.infrastructure.config import Settings
from evently.infrastructure.gateway.razorpay_gateway import MockRazorpayGateway
from evently.infrastructure.messaging.bus import InMemoryEventBus, RetryPolicy
from evently.infrastructure.notifications.sender import NotificationSender
from evently.main import create_app

JWT_SECRET = "test-jwt-secret-0123456789abcdef0123456789abcdef"
KEY_ID = "rzp_test_key"
KEY_SECRET = "test-razorpay-secret-0123456789abcdef"
WEBHOOK_SECRET = "test-webhook-secret-0123456789abcdef"


class RecordingSender(NotificationSender):
    """Collects delivered messages; fails the next ``failures_remaining`` sends."""

    def __init__(self):
        self.sent = []
        self.failures_remaining = 0

    def send(self, message) -> None:
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise ConnectionError("SMTP relay unavailable")
        self.sent.append(message)


def sign(order_id: str, gateway_payment_id: str, secret: str = KEY_SECRET) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        f"{order_id}|{gateway_payment_id}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


@pytest.fixture
def signer():
    return sign


@pytest.fixture
def webhook_signer():
    def _sign(body: str) -> str:
        return hmac.new(WEBHOOK_SECRET.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()

    return _sign


@pytest.fixture
def settings():
    return Settings(
        booking_database_url="sqlite://",
        payment_database_url="sqlite://",
        notification_database_url="sqlite://",
        db_connect_max_retries=1,
        db_connect_retry_delay=0,
        jwt_secret=JWT_SECRET,
        razorpay_key_id=KEY_ID,
        razorpay_key_secret=KEY_SECRET,
        razorpay_webhook_secret=WEBHOOK_SECRET,
        payment_gateway_mode="mock",
        bus_max_retries=3,
        bus_retry_base_delay=0,
        bus_retry_max_delay=0,
    )


@pytest.fixture
def bus():
    return InMemoryEventBus(
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0, max_delay=0),
        workers_per_topic=1,
        sleep=lambda _: None,
    )


@pytest.fixture
def gateway():
    return MockRazorpayGateway(KEY_ID, KEY_SECRET, webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def container(settings, bus, gateway, sender):
    container = build_container(settings, bus=bus, gateway=gateway, sender=sender)
    create_schema(container)
    register_consumers(container)
    bus.connect()
    yield container
    for engine in container.engines.values():
        engine.dispose()


@pytest.fixture
def client(container):
    app = create_app(container, start_workers=False)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(container):
    def _headers(user_id: str = "user-1", role: Role = Role.USER) -> dict:
        token = container.codec.issue(f"{user_id}@evently.test", role, user_id)
        return {"Authorization": f"Bearer {token}"}

    return _headers
