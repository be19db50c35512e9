"""Test fixtures — a fresh SQLite database per test and a stubbed outbound HTTP transport."""

import json
import os
from collections.abc import AsyncGenerator
from datetime import datetime, timezone

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.pool import NullPool

# Force SQLite test database *before* any app import
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_webhooks.db"
os.environ["WEBHOOK_QUEUE_BACKEND"] = "inprocess"

from app.database import Base, build_engine, build_sessionmaker  # noqa: E402
from app.models.webhook import WebhookEndpoint  # noqa: E402
from app.services.webhook_dispatcher import WebhookDispatcher  # noqa: E402
from app.services.webhook_queue import InProcessDeliveryQueue  # noqa: E402
from app.services.webhook_signature import generate_secret  # noqa: E402
from app.services.webhook_store import WebhookStore  # noqa: E402

TENANT = "tenant-1"
FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeReceiver:
    """Records every request; answers with the configured status and body, or raises ``error``."""

    def __init__(self, status_code: int = 200, body: str = "ok"):
        self.status_code = status_code
        self.body = body
        self.error = None
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, text=self.body)

    @property
    def calls(self) -> int:
        return len(self.requests)


class Clock:
    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/webhooks.db", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_sessionmaker(engine)
    await engine.dispose()


@pytest.fixture
def store(session_factory) -> WebhookStore:
    return WebhookStore(session_factory)


@pytest.fixture
def receiver() -> FakeReceiver:
    return FakeReceiver()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest_asyncio.fixture
async def dispatcher(store, receiver, clock) -> AsyncGenerator[WebhookDispatcher, None]:
    queue = InProcessDeliveryQueue()
    d = WebhookDispatcher(
        store=store,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(receiver)),
        queue=queue,
        clock=clock,
        new_delivery_id=lambda: "delivery-1",
    )
    queue.bind(d.run_job)
    yield d
    await d.aclose()


@pytest.fixture
def make_endpoint(session_factory):
    async def _make(
        tenant_id: str = TENANT,
        events=("pet.created",),
        is_active: bool = True,
        consecutive_failures: int = 0,
        url: str = "https://hooks.example.com/vetify",
    ) -> WebhookEndpoint:
        ep = WebhookEndpoint(
            tenant_id=tenant_id,
            name="Clinic CRM",
            url=url,
            secret=generate_secret(),
            events=json.dumps(list(events)),
            is_active=is_active,
            consecutive_failures=consecutive_failures,
        )
        async with session_factory() as db:
            db.add(ep)
            await db.commit()
        return ep

    return _make


@pytest_asyncio.fixture
async def client(session_factory, dispatcher) -> AsyncGenerator[AsyncClient, None]:
    from app.api.webhooks import get_webhook_dispatcher
    from app.database import get_db
    from app.main import app

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_webhook_dispatcher] = lambda: dispatcher
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers={"X-Tenant-Id": TENANT}) as ac:
        yield ac
    app.dependency_overrides.clear()
