"""
Shared fixtures: SQLite database, a relay wired to fake upstreams, and an
in-process API client.
"""

import base64
import json
import os
import tempfile

# Configure before anything imports chatrelay.config
_DB_DIR = tempfile.mkdtemp(prefix="chatrelay-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["ENCRYPTION_KEY"] = "0123456789abcdef" * 4
os.environ["API_KEY_HASH_SALT"] = "test-salt"
os.environ["SLACK_SIGNING_SECRET"] = "test-signing-secret"
os.environ["WORKER_URL"] = "http://worker.test"
os.environ["WORKER_API_SECRET"] = "worker-secret"
os.environ["PUBLIC_APP_URL"] = "https://relay.test"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_stripe_test_secret"
os.environ["IDENTITY_WEBHOOK_SECRET"] = "whsec_" + base64.b64encode(
    b"identity-webhook-test-secret-32b"
).decode()

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from chatrelay.auth.middleware import hash_api_key
from chatrelay.config import settings
from chatrelay.database import Base, async_session_maker, engine
from chatrelay.main import app
from chatrelay.relay.service import build_relay
from chatrelay.storage.repositories import (
    create_api_key,
    get_or_create_tenant,
    record_usage,
    update_tenant_billing,
    upsert_connection,
)

DEFAULT_REPLY = {
    "ok": True,
    "replyText": "Hi there",
    "usage": {"model": "claude-test", "inputTokens": 12, "outputTokens": 7},
}


class FakeUpstream:
    """
    One MockTransport handler standing in for the worker, Slack and Telegram.

    Responses are plain attributes so a test can flip one before acting.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.worker_status = 200
        self.worker_body: dict | str = dict(DEFAULT_REPLY)
        self.worker_exc: Exception | None = None
        self.slack_body = {"ok": True, "ts": "1700000000.000200"}
        self.telegram = {
            "getMe": {"ok": True, "result": {"id": 42, "is_bot": True, "username": "relay_bot"}},
            "setWebhook": {"ok": True, "result": True},
            "deleteWebhook": {"ok": True, "result": True},
            "sendMessage": {"ok": True, "result": {"message_id": 99}},
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host == "worker.test":
            if request.url.path == "/api/agent/session":
                return httpx.Response(200, json={"ok": True})
            if self.worker_exc is not None:
                raise self.worker_exc
            if isinstance(self.worker_body, str):
                return httpx.Response(self.worker_status, text=self.worker_body)
            return httpx.Response(self.worker_status, json=self.worker_body)
        if host == "slack.com":
            return httpx.Response(200, json=self.slack_body)
        if host == "api.telegram.org":
            method = request.url.path.rsplit("/", 1)[-1]
            return httpx.Response(200, json=self.telegram[method])
        return httpx.Response(404, json={"ok": False})

    def calls(self, host: str, path_suffix: str = "") -> list[dict]:
        """JSON bodies of requests sent to host whose path ends with path_suffix."""
        return [
            json.loads(r.content) if r.content else {}
            for r in self.requests
            if r.url.host == host and r.url.path.endswith(path_suffix)
        ]

    def worker_invocations(self) -> list[dict]:
        return self.calls("worker.test", "/api/agent/invoke")


@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    """Create a fresh database for each test"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory():
    return async_session_maker


@pytest_asyncio.fixture
async def db_session():
    """Get a database session"""
    async with async_session_maker() as session:
        yield session


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest_asyncio.fixture
async def relay(upstream):
    http = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))
    relay = build_relay(settings, http=http, session_factory=async_session_maker)
    yield relay
    await relay.aclose()


@pytest.fixture
def vault(relay):
    return relay.vault


@pytest_asyncio.fixture
async def client(relay):
    """Create an async test client"""
    app.state.relay = relay
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_tenant():
    """Factory: committed tenant on the given plan."""

    async def _make(plan: str = "free", identity_user_id: str = "user_1", **billing):
        async with async_session_maker() as session:
            tenant, _ = await get_or_create_tenant(
                session, identity_user_id, email=f"{identity_user_id}@example.com"
            )
            if plan != "free" or billing:
                await update_tenant_billing(session, tenant.id, plan=plan, **billing)
                tenant.plan = plan
            await session.commit()
            return tenant

    return _make


@pytest.fixture
def make_connection(vault):
    """Factory: committed active connection with encrypted credentials."""

    async def _make(tenant_id: str, channel_id: str, credentials, metadata: dict):
        async with async_session_maker() as session:
            connection = await upsert_connection(
                session,
                tenant_id=tenant_id,
                channel_id=channel_id,
                credentials_enc=vault.encrypt_json(credentials),
                metadata=metadata,
            )
            await session.commit()
            return connection

    return _make


@pytest.fixture
def add_usage():
    """Factory: append n usage records for a tenant."""

    async def _add(tenant_id: str, n: int, channel_id: str = "slack"):
        async with async_session_maker() as session:
            for _ in range(n):
                await record_usage(session, tenant_id, "claude-test", 1, 1, channel_id)
            await session.commit()

    return _add


@pytest_asyncio.fixture
async def tenant(make_tenant):
    return await make_tenant()


@pytest_asyncio.fixture
async def auth_headers(tenant):
    """Bearer headers for a dashboard API key belonging to `tenant`."""
    api_key = "crk_test_key_1"
    async with async_session_maker() as session:
        await create_api_key(session, tenant.id, api_key[:8], hash_api_key(api_key))
        await session.commit()
    return {"Authorization": f"Bearer {api_key}"}
