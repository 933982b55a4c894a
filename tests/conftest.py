import os
import uuid
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from google.api_core import exceptions as gcs_exceptions
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

# Test settings; must be set before udin modules read them
os.environ.setdefault("MONGODB_DB_NAME", "udin_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "test_key_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "test_webhook_secret")

from udin.core.exceptions import GatewayError, StorageError  # noqa: E402
from udin.core.security import create_access_token, hmac_sha256_hex, verify_hmac_signature  # noqa: E402
from udin.services.gateway import (  # noqa: E402
    GatewayOrder,
    GatewayPayment,
    GatewayRefund,
    PaymentGateway,
    payment_signature_message,
)
from udin.storage.base import StorageBackend  # noqa: E402
from udin.storage.gcs import GCSStorage  # noqa: E402


class FakeGateway(PaymentGateway):
    """In-process stand-in for Razorpay with real HMAC signatures."""

    key_id = "rzp_test_key"
    key_secret = "test_key_secret"
    webhook_secret = "test_webhook_secret"

    def __init__(self):
        self.orders: dict[str, dict] = {}
        self.refunds: list[dict] = []
        self.fee = 1180
        self.fail_fetch = False
        self.fail_refund = False

    def create_order(self, amount_minor, currency, receipt, notes=None):
        if amount_minor <= 0:
            raise GatewayError("Order amount must be positive")
        order_id = f"order_{len(self.orders) + 1:06d}"
        self.orders[order_id] = {"amount": amount_minor, "currency": currency, "receipt": receipt, "notes": notes}
        return GatewayOrder(id=order_id, amount=amount_minor, currency=currency, receipt=receipt)

    def sign(self, order_id: str, payment_id: str) -> str:
        return hmac_sha256_hex(self.key_secret, payment_signature_message(order_id, payment_id))

    def verify_signature(self, order_id, payment_id, signature):
        if not isinstance(order_id, str) or not isinstance(payment_id, str):
            return False
        return verify_hmac_signature(self.key_secret, payment_signature_message(order_id, payment_id), signature)

    def fetch_payment(self, payment_id):
        if self.fail_fetch:
            raise GatewayError("Gateway timeout")
        return GatewayPayment(id=payment_id, amount=0, status="captured", method="upi", fee=self.fee)

    def create_refund(self, payment_id, amount_minor, notes=None):
        if self.fail_refund:
            raise GatewayError("Refund rejected")
        refund_id = f"rfnd_{len(self.refunds) + 1:06d}"
        self.refunds.append({"payment_id": payment_id, "amount": amount_minor, "refund_id": refund_id})
        return GatewayRefund(refund_id=refund_id, amount=amount_minor, status="processed")

    def verify_webhook_signature(self, body, signature):
        return verify_hmac_signature(self.webhook_secret, body, signature)

    def sign_webhook(self, body: bytes) -> str:
        return hmac_sha256_hex(self.webhook_secret, body)


class MemoryStorage(StorageBackend):
    def __init__(self, fail_after: int | None = None):
        self.objects: dict[str, bytes] = {}
        self.fail_after = fail_after
        self.puts = 0

    async def put(self, key, body, content_type=None):
        if self.fail_after is not None and self.puts >= self.fail_after:
            raise StorageError("Disk unavailable")
        self.puts += 1
        self.objects[key] = body if isinstance(body, bytes) else body.read()
        return f"mem://{key}"

    async def get(self, key):
        if key not in self.objects:
            raise FileNotFoundError(key)
        return self.objects[key]

    async def delete(self, key):
        self.objects.pop(key, None)


class FakeBucket:
    def __init__(self, fail_put=None, fail_delete=None):
        self.objects: dict[str, bytes] = {}
        self.fail_put = fail_put
        self.fail_delete = fail_delete

    def blob(self, key):
        return FakeBlob(self, key)


class FakeBlob:
    def __init__(self, bucket, key):
        self.bucket = bucket
        self.key = key

    def upload_from_string(self, body, content_type=None):
        if self.bucket.fail_put:
            raise self.bucket.fail_put
        self.bucket.objects[self.key] = body

    def download_as_bytes(self):
        if self.key not in self.bucket.objects:
            raise gcs_exceptions.NotFound("no such object")
        return self.bucket.objects[self.key]

    def delete(self):
        if self.bucket.fail_delete:
            raise self.bucket.fail_delete
        if self.key not in self.bucket.objects:
            raise gcs_exceptions.NotFound("no such object")
        del self.bucket.objects[self.key]


def gcs_with(bucket: FakeBucket) -> GCSStorage:
    store = GCSStorage.__new__(GCSStorage)
    store.bucket_name = "udin-test"
    store._bucket = bucket
    return store


@pytest_asyncio.fixture(autouse=True)
async def db():
    """Fresh in-memory Mongo per test."""
    from udin.db.init import init_db
    client = AsyncMongoMockClient()
    database = client[f"udin_test_{uuid.uuid4().hex[:8]}"]
    await init_db(database)
    yield database


@pytest.fixture(autouse=True)
def gateway(monkeypatch) -> FakeGateway:
    fake = FakeGateway()
    monkeypatch.setattr("udin.services.payments.get_gateway", lambda: fake)
    return fake


@pytest.fixture(autouse=True)
def storage(monkeypatch) -> MemoryStorage:
    mem = MemoryStorage()
    monkeypatch.setattr("udin.services.uploads.get_storage", lambda: mem)
    return mem


async def make_user(email: str, role: str = "user"):
    from udin.models.user import User
    user = User(email=email, name=email.split("@")[0].title(), role=role)
    await user.insert()
    return user


def auth_headers(user) -> dict[str, str]:
    token = create_access_token({"user_id": str(user.id), "session_version": user.session_version})
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def alice():
    return await make_user("alice@example.com")


@pytest_asyncio.fixture
async def bob():
    return await make_user("bob@example.com")


@pytest_asyncio.fixture
async def admin():
    return await make_user("ops@example.com", role="admin")


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from udin.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
