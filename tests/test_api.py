"""
Tests for the RelayDesk HTTP API
"""

from types import SimpleNamespace

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from fakes import BackendPool, FakeDelivery, FakeEmbedder, FakeLLM, no_sleep
from relaydesk.agent.dedup import DeduplicationService, get_dedup_service
from relaydesk.agent.message_status import MessageStatusTracker
from relaydesk.agent.orchestrator import Orchestrator, get_orchestrator
from relaydesk.config import settings
from relaydesk.db.database import get_db
from relaydesk.main import app
from relaydesk.services.backend import TenantCredentials
from relaydesk.services.credential_resolver import CredentialResolver, get_credential_resolver

ADMIN = TenantCredentials(
    backend_url="https://admin.example.co", anon_key="admin-anon", service_role_key="admin-service"
)
ACME_URL = "https://acme.example.co"
ACME_COOKIES = {"Cookie": f"backend_url={ACME_URL}; backend_anon_key=acme-anon"}


@pytest_asyncio.fixture
async def env(session_factory):
    """Wire the app to an in-memory registry, fake tenant backends and a fake model"""
    pool = BackendPool()
    resolver = CredentialResolver(
        session_factory=session_factory, backend_factory=pool, admin_credentials=ADMIN
    )
    delivery = FakeDelivery()
    orchestrator = Orchestrator(
        tracker=MessageStatusTracker(),
        dedup=DeduplicationService(),
        resolver=resolver,
        llm=FakeLLM(reply="Thanks for writing in!"),
        embedder=FakeEmbedder(),
        delivery_factory=delivery,
        sleep=no_sleep,
    )
    webhook_dedup = DeduplicationService()

    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_credential_resolver] = lambda: resolver
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_dedup_service] = lambda: webhook_dedup
    app.dependency_overrides[get_db] = override_db

    yield SimpleNamespace(pool=pool, orchestrator=orchestrator, delivery=delivery)

    await orchestrator.drain()
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(env):
    """Create an async test client"""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def seed_acme(env):
    tables = env.pool.tables_for(ACME_URL)
    tables["messages"] = [
        {"id": "m1", "contact_id": "c1", "content": "Where is my order?", "direction": "incoming"},
        {"id": "m2", "contact_id": "c1", "content": "Never mind", "direction": "incoming"},
    ]
    tables["contacts"] = [{"id": "c1", "name": "Ada Lovelace", "contact_info": "4242"}]
    tables["memory"] = [{"id": "mem-1", "user_id": "c1", "message_id": "m2", "content": "x"}]
    return tables


# ============ Health ============

@pytest.mark.asyncio
async def test_root(client: AsyncClient):
    response = await client.get("/", headers={"x-request-id": "req-123"})
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["x-request-id"] == "req-123"


@pytest.mark.asyncio
async def test_orchestration_health(client: AsyncClient):
    response = await client.get("/api/orchestration/health")
    assert response.json() == {"status": "ok", "service": "orchestration"}


@pytest.mark.asyncio
async def test_ping_requires_tenant(client: AsyncClient):
    response = await client.get("/api/orchestration/ping")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_ping_with_cookies(client: AsyncClient, env):
    seed_acme(env)
    response = await client.get("/api/orchestration/ping", headers=ACME_COOKIES)
    assert response.status_code == 200
    data = response.json()
    assert data["database"] == "connected"
    assert data["mode"] == "user"
    assert data["source"] == "cookies"


# ============ Orchestration ============

@pytest.mark.asyncio
async def test_start_then_poll(client: AsyncClient, env):
    seed_acme(env)
    response = await client.post("/api/orchestration", json={"id": "m1"}, headers=ACME_COOKIES)
    assert response.status_code == 200
    data = response.json()
    assert data["message_id"] == "m1"
    assert data["is_new"] is True
    assert data["status"] == "processing"

    again = await client.post("/api/orchestration", json={"id": "m1"}, headers=ACME_COOKIES)
    assert again.json()["is_new"] is False

    await env.orchestrator.drain()
    status = await client.get("/api/orchestration/status/m1")
    assert status.status_code == 200
    body = status.json()
    assert body["status"] == "completed"
    assert body["is_completed"] is True
    assert body["agent_name"] == "General Assistant"
    assert body["response"] == "Thanks for writing in!"
    assert env.delivery.sent == [("4242", "Thanks for writing in!")]


@pytest.mark.asyncio
async def test_batch_status(client: AsyncClient, env):
    seed_acme(env)
    await client.post("/api/orchestration", json={"id": "m1"}, headers=ACME_COOKIES)
    await env.orchestrator.drain()

    response = await client.post("/api/orchestration", json={"message_ids": ["m1", "zzz"]})
    assert response.status_code == 200
    statuses = {s["message_id"]: s for s in response.json()["statuses"]}
    assert statuses["m1"]["status"]["status"] == "completed"
    assert statuses["m1"]["is_processed"] is True
    assert statuses["zzz"]["status"]["status"] == "unknown"


@pytest.mark.asyncio
async def test_invalid_request(client: AsyncClient):
    response = await client.post("/api/orchestration", json={})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_missing_message_reports_error(client: AsyncClient, env):
    seed_acme(env)
    await client.post("/api/orchestration", json={"id": "nope"}, headers=ACME_COOKIES)
    await env.orchestrator.drain()
    body = (await client.get("/api/orchestration/status/nope")).json()
    assert body["status"] == "error"
    assert body["processing_stage"]["details"] == "Message nope does not exist in database"


@pytest.mark.asyncio
async def test_debug_dump(client: AsyncClient):
    response = await client.get("/api/orchestration/debug")
    assert response.status_code == 200
    data = response.json()
    assert {"processing", "running", "processed", "statuses", "dedup_entries"} <= set(data)


# ============ Messages ============

@pytest.mark.asyncio
async def test_delete_messages_cascades(client: AsyncClient, env):
    tables = seed_acme(env)
    response = await client.request(
        "DELETE", "/api/messages", json={"message_ids": ["m2"]}, headers=ACME_COOKIES
    )
    assert response.status_code == 200
    assert response.json() == {"deleted": 1, "memories_deleted": True}
    assert [m["id"] for m in tables["messages"]] == ["m1"]
    assert tables["memory"] == []


@pytest.mark.asyncio
async def test_delete_messages_requires_tenant(client: AsyncClient):
    response = await client.request("DELETE", "/api/messages", json={"message_ids": ["m1"]})
    assert response.status_code == 401


# ============ Tenants, bots and the Telegram webhook ============

async def register_acme_bot(client: AsyncClient, token: str = "tok-acme-123456"):
    response = await client.post("/api/tenants/credentials", json={
        "email": "Ops@Acme.com",
        "backend_url": ACME_URL + "/",
        "anon_key": "acme-anon",
    })
    assert response.status_code == 200
    assert response.json()["encrypted"] is True
    assert response.json()["email"] == "ops@acme.com"

    response = await client.post("/api/tenants/bots", json={
        "token": token, "owner_email": "ops@acme.com", "bot_name": "acme_bot",
    })
    assert response.status_code == 200
    assert response.json()["token_suffix"] == token[-6:]


def telegram_update(update_id: int, text: str = "Do you ship to Canada?"):
    return {
        "update_id": update_id,
        "message": {
            "message_id": 5,
            "chat": {"id": 777},
            "from": {"id": 9, "first_name": "Ada", "last_name": "L"},
            "text": text,
        },
    }


@pytest.mark.asyncio
async def test_webhook_ingests_and_replies(client: AsyncClient, env):
    await register_acme_bot(client)

    response = await client.post(
        "/api/bots/telegram/webhook/tok-acme-123456", json=telegram_update(1001)
    )
    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["orchestration"]["is_new"] is True

    tables = env.pool.tables_for(ACME_URL)
    [contact] = tables["contacts"]
    assert contact["contact_info"] == "777"
    assert contact["name"] == "Ada L"
    incoming = [m for m in tables["messages"] if m["direction"] == "incoming"]
    assert incoming[0]["content"] == "Do you ship to Canada?"

    await env.orchestrator.drain()
    status = (await client.get(f"/api/orchestration/status/{data['message_id']}")).json()
    assert status["status"] == "completed"
    assert env.delivery.sent == [("777", "Thanks for writing in!")]


@pytest.mark.asyncio
async def test_webhook_duplicate_update_ignored(client: AsyncClient, env):
    await register_acme_bot(client)
    first = await client.post("/api/bots/telegram/webhook/tok-acme-123456", json=telegram_update(2002))
    second = await client.post("/api/bots/telegram/webhook/tok-acme-123456", json=telegram_update(2002))
    assert first.json()["ok"] is True
    assert second.json() == {"ok": True, "duplicate": True}
    incoming = [m for m in env.pool.tables_for(ACME_URL)["messages"] if m["direction"] == "incoming"]
    assert len(incoming) == 1


@pytest.mark.asyncio
async def test_webhook_without_message(client: AsyncClient):
    response = await client.post("/api/bots/telegram/webhook/tok-any", json={"update_id": 1})
    assert response.json()["ignored"] == "no message"


@pytest.mark.asyncio
async def test_register_admin_bot(client: AsyncClient):
    response = await client.post("/api/tenants/bots", json={"token": "tok-admin-000001", "is_admin_bot": True})
    assert response.status_code == 200
    assert response.json()["is_admin_bot"] is True


@pytest.mark.asyncio
async def test_register_bot_unknown_tenant(client: AsyncClient):
    response = await client.post("/api/tenants/bots", json={"token": "t", "owner_email": "x@nowhere.com"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_delete_bot(client: AsyncClient):
    await register_acme_bot(client, token="tok-delete-me1")
    assert (await client.delete("/api/tenants/bots/tok-delete-me1")).status_code == 200
    assert (await client.delete("/api/tenants/bots/tok-delete-me1")).status_code == 404


@pytest.mark.asyncio
async def test_admin_key_guard(client: AsyncClient, monkeypatch):
    monkeypatch.setattr(settings, "admin_api_key", "letmein")
    body = {"email": "a@acme.com", "backend_url": ACME_URL, "anon_key": "k"}
    assert (await client.post("/api/tenants/credentials", json=body)).status_code == 403
    ok = await client.post("/api/tenants/credentials", json=body, headers={"x-admin-key": "letmein"})
    assert ok.status_code == 200
