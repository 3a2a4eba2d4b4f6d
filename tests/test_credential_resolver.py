"""
Credential resolver tests - webhook, admin and user resolution paths against
an in-memory registry and fake tenant backends.
"""

import json
from urllib.parse import quote

import pytest
from jose import jwt
from sqlalchemy.exc import OperationalError

from fakes import BackendPool
from relaydesk.config import settings
from relaydesk.db.models import Tenant
from relaydesk.services import bot_registry, tenant_service
from relaydesk.services.backend import TenantCredentials
from relaydesk.services.credential_resolver import (
    CredentialResolutionError,
    CredentialResolver,
    Mode,
    RequestContext,
    extract_auth_email,
    extract_bot_token,
    is_webhook_request,
)
from relaydesk.services.encryption import encrypt_credentials, generate_key

ADMIN = TenantCredentials(
    backend_url="https://admin.example.co", anon_key="admin-anon", service_role_key="admin-service"
)
TENANT = TenantCredentials(backend_url="https://acme.example.co", anon_key="acme-anon")
OTHER = TenantCredentials(backend_url="https://other.example.co", anon_key="other-anon")


@pytest.fixture
def pool():
    return BackendPool()


@pytest.fixture
def resolver(session_factory, pool):
    return CredentialResolver(
        session_factory=session_factory,
        backend_factory=pool,
        admin_credentials=ADMIN,
        scan_limit=10,
    )


class RegistryDown:
    """Session whose every statement fails, as when the registry database is unreachable."""

    def __init__(self):
        self.rollbacks = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, *args, **kwargs):
        raise OperationalError("SELECT bot_registry", {}, Exception("registry down"))

    async def commit(self):
        raise OperationalError("COMMIT", {}, Exception("registry down"))

    async def rollback(self):
        self.rollbacks += 1


def webhook(token: str) -> RequestContext:
    return RequestContext(path=f"/api/bots/telegram/webhook/{token}")


class TestClassification:
    def test_webhook_by_path_header_or_flag(self):
        assert is_webhook_request(webhook("abc"))
        assert is_webhook_request(RequestContext(headers={"X-Webhook": "true"}))
        assert is_webhook_request(RequestContext(headers={"x-invoke-path": "/webhook/abc"}))
        assert not is_webhook_request(RequestContext(path="/api/orchestration"))

    def test_token_from_header_then_path(self):
        assert extract_bot_token(RequestContext(headers={"X-Token": "hdr"}, path="/webhook/p")) == "hdr"
        assert extract_bot_token(webhook("123%3AABC")) == "123:ABC"
        assert extract_bot_token(RequestContext(headers={"referer": "https://x/webhook/ref-tok?x=1"})) == "ref-tok"

    def test_admin_mode_cookie(self):
        resolver = CredentialResolver(admin_credentials=ADMIN)
        assert resolver.classify(RequestContext(cookies={"admin_mode": "true"})) == Mode.ADMIN
        assert resolver.classify(RequestContext()) == Mode.USER


class TestAuthEmail:
    def test_session_array(self):
        raw = quote(json.dumps(["access", "refresh", {"email": "ada@acme.test"}]))
        assert extract_auth_email(raw) == "ada@acme.test"

    def test_session_object(self):
        assert extract_auth_email(json.dumps({"user": {"email": "ada@acme.test"}})) == "ada@acme.test"

    def test_bare_jwt(self):
        token = jwt.encode({"email": "ada@acme.test"}, "any-secret", algorithm="HS256")
        assert extract_auth_email(token) == "ada@acme.test"

    def test_garbage(self):
        assert extract_auth_email("not-a-token") is None
        assert extract_auth_email(None) is None


class TestWebhookResolution:
    @pytest.mark.asyncio
    async def test_registered_admin_bot(self, resolver, db_session):
        await bot_registry.register_bot(db_session, "tok-admin", ADMIN, is_admin_bot=True)
        resolution = await resolver.resolve(webhook("tok-admin"))
        assert resolution.mode == Mode.ADMIN
        assert resolution.source == "registry_admin_bot"
        assert resolution.is_webhook

    @pytest.mark.asyncio
    async def test_registered_tenant_bot(self, resolver, db_session, pool):
        tenant = await tenant_service.store_tenant_credentials(db_session, "ops@acme.test", TENANT)
        await bot_registry.register_bot(
            db_session, "tok-acme", TENANT, owner_id=tenant.id, owner_email="ops@acme.test"
        )
        resolution = await resolver.resolve(webhook("tok-acme"))
        assert resolution.mode == Mode.USER
        assert resolution.source == "registry_tenant"
        assert resolution.credentials.backend_url == TENANT.backend_url
        assert resolution.tenant_id == tenant.id

    @pytest.mark.asyncio
    async def test_tenant_scan_finds_bot_and_writes_back(self, resolver, db_session, pool):
        await tenant_service.store_tenant_credentials(db_session, "other@other.test", OTHER)
        acme = await tenant_service.store_tenant_credentials(db_session, "ops@acme.test", TENANT)
        pool.tables_for(TENANT.backend_url)["bots"] = [
            {"id": "b1", "token": "tok-scan", "is_active": True},
        ]

        resolution = await resolver.resolve(webhook("tok-scan"))
        assert resolution.mode == Mode.USER
        assert resolution.source == "tenant_scan"
        assert resolution.tenant_id == acme.id
        # backends opened for tenants that did not own the bot are closed
        probed_other = [b for b in pool.opened if b.credentials.backend_url == OTHER.backend_url]
        assert probed_other and all(b.closed for b in probed_other)

        again = await resolver.resolve(webhook("tok-scan"))
        assert again.source == "registry_tenant"
        assert again.credentials.backend_url == TENANT.backend_url

    @pytest.mark.asyncio
    async def test_scan_hit_reactivates_registry_entry(self, resolver, db_session, pool):
        acme = await tenant_service.store_tenant_credentials(db_session, "ops@acme.test", TENANT)
        entry = await bot_registry.register_bot(
            db_session, "tok-stale", TENANT, owner_id=acme.id, owner_email="ops@acme.test"
        )
        entry.is_active = False
        await db_session.commit()
        pool.tables_for(TENANT.backend_url)["bots"] = [
            {"id": "b1", "token": "tok-stale", "is_active": True},
        ]

        first = await resolver.resolve(webhook("tok-stale"))
        assert first.source == "tenant_scan"
        again = await resolver.resolve(webhook("tok-stale"))
        assert again.source == "registry_tenant"
        assert again.tenant_id == acme.id

    @pytest.mark.asyncio
    async def test_undecryptable_tenant_skipped(self, resolver, db_session, pool):
        db_session.add(Tenant(
            email="broken@acme.test",
            credentials=encrypt_credentials(TENANT.to_blob(), key=generate_key()),
        ))
        await db_session.commit()
        pool.tables_for(TENANT.backend_url)["bots"] = [{"id": "b1", "token": "tok-x", "is_active": True}]
        resolution = await resolver.resolve(webhook("tok-x"))
        assert resolution.source == "webhook_admin_fallback"

    @pytest.mark.asyncio
    async def test_unknown_bot_falls_back_to_admin(self, resolver):
        resolution = await resolver.resolve(webhook("tok-unknown"))
        assert resolution.mode == Mode.ADMIN
        assert resolution.source == "webhook_admin_fallback"
        assert resolution.credentials == ADMIN

    @pytest.mark.asyncio
    async def test_inactive_registry_entry_ignored(self, resolver, db_session):
        entry = await bot_registry.register_bot(db_session, "tok-off", ADMIN, is_admin_bot=True)
        entry.is_active = False
        await db_session.commit()
        resolution = await resolver.resolve(webhook("tok-off"))
        assert resolution.source == "webhook_admin_fallback"


class TestRegistryOutage:
    @pytest.mark.asyncio
    async def test_webhook_falls_back_to_admin(self, pool):
        session = RegistryDown()
        resolver = CredentialResolver(
            session_factory=lambda: session, backend_factory=pool, admin_credentials=ADMIN
        )
        resolution = await resolver.resolve(webhook("tok"))
        assert resolution.mode == Mode.ADMIN
        assert resolution.source == "webhook_admin_fallback"
        assert resolution.credentials == ADMIN
        assert session.rollbacks == 3

    @pytest.mark.asyncio
    async def test_touch_failure_is_not_fatal(self, db_session):
        entry = await bot_registry.register_bot(db_session, "tok-touch", ADMIN, is_admin_bot=True)
        session = RegistryDown()
        assert await bot_registry.touch_bot(session, entry) is False
        assert session.rollbacks == 1

    @pytest.mark.asyncio
    async def test_user_lookup_failure_is_not_functional(self, pool):
        resolver = CredentialResolver(
            session_factory=RegistryDown, backend_factory=pool, admin_credentials=ADMIN
        )
        token = jwt.encode({"email": "ops@acme.test"}, "s", algorithm="HS256")
        resolution = await resolver.resolve(RequestContext(cookies={"auth-token": token}))
        assert resolution.source == "missing_credentials"
        assert not resolution.is_functional


class TestUserResolution:
    @pytest.mark.asyncio
    async def test_backend_cookies(self, resolver):
        ctx = RequestContext(cookies={
            "backend_url": quote("https://cookie.example.co/"),
            "backend_anon_key": "cookie-anon",
        })
        resolution = await resolver.resolve(ctx)
        assert resolution.mode == Mode.USER
        assert resolution.source == "cookies"
        assert resolution.credentials.backend_url == "https://cookie.example.co"
        assert resolution.is_functional

    @pytest.mark.asyncio
    async def test_auth_cookie_email_lookup(self, resolver, db_session):
        tenant = await tenant_service.store_tenant_credentials(db_session, "Ops@Acme.test", TENANT)
        token = jwt.encode({"email": "ops@acme.test"}, "any-secret", algorithm="HS256")
        resolution = await resolver.resolve(RequestContext(cookies={"auth-token": token}))
        assert resolution.source == "auth_email"
        assert resolution.tenant_id == tenant.id
        assert resolution.credentials.backend_url == TENANT.backend_url

    @pytest.mark.asyncio
    async def test_no_credentials_never_uses_admin(self, resolver):
        resolution = await resolver.resolve(RequestContext(path="/api/orchestration"))
        assert resolution.mode == Mode.USER
        assert resolution.source == "missing_credentials"
        assert not resolution.is_functional
        assert resolution.credentials != ADMIN

    @pytest.mark.asyncio
    async def test_unknown_email_is_not_functional(self, resolver):
        token = jwt.encode({"email": "nobody@nowhere.test"}, "s", algorithm="HS256")
        resolution = await resolver.resolve(RequestContext(cookies={"auth-token": token}))
        assert not resolution.is_functional


class TestAdminResolution:
    @pytest.mark.asyncio
    async def test_admin_mode(self, resolver):
        resolution = await resolver.resolve(RequestContext(cookies={"admin_mode": "true"}))
        assert resolution.mode == Mode.ADMIN
        assert resolution.credentials == ADMIN

    @pytest.mark.asyncio
    async def test_admin_not_configured(self, session_factory, pool, monkeypatch):
        monkeypatch.setattr(settings, "admin_backend_url", None)
        monkeypatch.setattr(settings, "admin_backend_service_role_key", None)
        resolver = CredentialResolver(session_factory=session_factory, backend_factory=pool)
        with pytest.raises(CredentialResolutionError):
            await resolver.resolve(RequestContext(cookies={"admin_mode": "true"}))

    def test_admin_from_settings(self, monkeypatch):
        monkeypatch.setattr(settings, "admin_backend_url", "https://admin.example.co/")
        monkeypatch.setattr(settings, "admin_backend_anon_key", None)
        monkeypatch.setattr(settings, "admin_backend_service_role_key", "svc")
        creds = CredentialResolver().admin_credentials()
        assert creds.backend_url == "https://admin.example.co"
        assert creds.api_key == "svc"
