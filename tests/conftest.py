"""
Pytest configuration and fixtures.

Stores run on in-memory SQLite, collaborators on httpx.MockTransport, and
Kafka on the fake producer/consumer below.
"""
import asyncio
import json
import os
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal

os.environ.setdefault("TRACING_ENABLED", "false")

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.clients import CatalogClient, IdentityClient  # noqa: E402
from app.database import Base as OrderBase  # noqa: E402
from payment_service.database import Base as PaymentBase  # noqa: E402
from payment_service.gateway import SettlementDecision  # noqa: E402

import app.models  # noqa: E402,F401
import payment_service.models  # noqa: E402,F401

AUTH_URL = "http://auth.test"
CATALOG_URL = "http://catalog.test"


# ---------------------------------------------------------------------------
# Databases
# ---------------------------------------------------------------------------


async def _sqlite_sessions(metadata):
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    return engine, async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def order_sessions():
    engine, factory = await _sqlite_sessions(OrderBase.metadata)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def payment_sessions():
    engine, factory = await _sqlite_sessions(PaymentBase.metadata)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def order_db(order_sessions):
    async with order_sessions() as db:
        yield db


# ---------------------------------------------------------------------------
# Kafka fakes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RecordMetadata:
    topic: str
    partition: int
    offset: int


@dataclass(frozen=True)
class SentRecord:
    topic: str
    key: bytes | None
    value: bytes
    headers: list


@dataclass(frozen=True)
class ConsumerRecord:
    topic: str
    partition: int
    offset: int
    key: bytes | None
    value: bytes
    headers: tuple = ()


class FakeProducer:
    """Acks every record on partition 0 unless told to fail."""

    def __init__(self):
        self.sent: list[SentRecord] = []
        self.send_error: Exception | None = None
        self.send_error_times: int | None = None  # None: fail until cleared
        self.delivery_error: Exception | None = None

    async def send(self, topic, key=None, value=None, headers=None):
        if self.send_error is not None:
            error = self.send_error
            if self.send_error_times is not None:
                self.send_error_times -= 1
                if self.send_error_times <= 0:
                    self.send_error = None
            raise error
        delivery = asyncio.get_running_loop().create_future()
        if self.delivery_error is not None:
            delivery.set_exception(self.delivery_error)
            return delivery
        self.sent.append(SentRecord(topic, key, value, list(headers or [])))
        delivery.set_result(RecordMetadata(topic, 0, len(self.sent) - 1))
        return delivery

    async def send_and_wait(self, topic, key=None, value=None, headers=None):
        return await (await self.send(topic, key=key, value=value, headers=headers))

    def sent_to(self, topic: str) -> list[SentRecord]:
        return [r for r in self.sent if r.topic == topic]


class FakeConsumer:
    """Yields `records` in order; seek() redelivers the last one."""

    def __init__(self, records, commit_errors=()):
        self._pending = deque(records)
        self._commit_errors = list(commit_errors)
        self._last = None
        self.commits = 0
        self.seeks = []

    async def _iterate(self):
        while self._pending:
            self._last = self._pending.popleft()
            yield self._last

    def __aiter__(self):
        return self._iterate()

    def seek(self, partition, offset):
        self.seeks.append((partition, offset))
        self._pending.appendleft(self._last)

    async def commit(self):
        if self._commit_errors:
            raise self._commit_errors.pop(0)
        self.commits += 1


def as_consumer_record(sent: SentRecord, offset: int = 0) -> ConsumerRecord:
    return ConsumerRecord(sent.topic, 0, offset, sent.key, sent.value, tuple(sent.headers))


@pytest.fixture
def producer():
    return FakeProducer()


# ---------------------------------------------------------------------------
# Payment gateway
# ---------------------------------------------------------------------------


class FixedGateway:
    """Returns the scripted outcomes in order, repeating the last one."""

    def __init__(self, *outcomes: bool):
        self._outcomes = list(outcomes) or [True]
        self.calls = 0

    async def settle(self, order_id, amount):
        outcome = self._outcomes[min(self.calls, len(self._outcomes) - 1)]
        self.calls += 1
        return SettlementDecision.approved() if outcome else SettlementDecision.declined()


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


def _envelope(data, status_code=200):
    return httpx.Response(status_code, json={"success": True, "message": "ok", "data": data})


def _garbage():
    return httpx.Response(200, text="<html>bad gateway</html>")


@dataclass
class FakeUpstream:
    """Auth + product services behind one MockTransport."""

    users: set = field(default_factory=lambda: {1})
    products: dict = field(
        default_factory=lambda: {7: {"id": 7, "name": "Widget", "price": Decimal("25.00"), "stock": 10}}
    )
    auth_status: int | None = None
    product_status: int | None = None
    reserve_status: int | None = None
    timeout_on: str | None = None  # "auth" | "product" | "check" | "reserve"
    garbage_on: str | None = None  # same names; answers 200 with a non-JSON body

    def _product_json(self, product_id):
        product = self.products[product_id]
        return {**product, "price": str(product["price"])}

    def handler(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")

        if parts[:2] == ["auth", "users"]:
            if self.timeout_on == "auth":
                raise httpx.ConnectTimeout("timed out", request=request)
            if self.auth_status is not None:
                return httpx.Response(self.auth_status)
            user_id = int(parts[2])
            if user_id not in self.users:
                return httpx.Response(404, json={"success": False, "message": "User not found"})
            return _envelope({"id": user_id})

        product_id = int(parts[1])
        if len(parts) == 2:
            if self.timeout_on == "product":
                raise httpx.ReadTimeout("timed out", request=request)
            if self.product_status is not None:
                return httpx.Response(self.product_status)
            if self.garbage_on == "product":
                return _garbage()
            if product_id not in self.products:
                return httpx.Response(404, json={"success": False, "message": "Product not found"})
            return _envelope(self._product_json(product_id))

        if parts[2] == "check-stock":
            if self.timeout_on == "check":
                raise httpx.ReadTimeout("timed out", request=request)
            if self.garbage_on == "check":
                return _garbage()
            quantity = int(request.url.params["quantity"])
            return _envelope(self.products[product_id]["stock"] >= quantity)

        if parts[2] == "reduce-stock":
            if self.timeout_on == "reserve":
                raise httpx.ReadTimeout("timed out", request=request)
            if self.reserve_status is not None:
                return httpx.Response(self.reserve_status)
            quantity = json.loads(request.content)["quantity"]
            self.products[product_id]["stock"] -= quantity
            if self.garbage_on == "reserve":
                return _garbage()
            return _envelope(self._product_json(product_id))

        return httpx.Response(404)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest_asyncio.fixture
async def http_client(upstream):
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler)) as client:
        yield client


@pytest.fixture
def identity(http_client):
    return IdentityClient(http_client, AUTH_URL)


@pytest.fixture
def catalog(http_client):
    return CatalogClient(http_client, CATALOG_URL)
