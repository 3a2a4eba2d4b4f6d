"""
Credential Resolver — decide which tenant backend serves a request.

Each inbound request is classified once and then walked through an
explicit, ordered list of resolution steps. The first step that yields
credentials wins:

  Webhook requests (bot token in header or path)
    1. registry entry for an admin bot         → ADMIN
    2. registry entry with tenant credentials  → USER
    3. scan tenants' ``bots`` tables           → USER (written back to registry)
    4. explicit admin fallback                 → ADMIN (logged)

  ``admin_mode=true`` cookie                   → ADMIN

  Everything else (dashboard / API user)
    1. backend cookies                         → USER
    2. tenant looked up by auth-token email    → USER
    3. non-functional placeholder              → USER

USER mode never substitutes admin credentials; the only path to the
admin backend from a tenant-less request is the webhook fallback.

Usage:
    from relaydesk.services.credential_resolver import get_credential_resolver, RequestContext

    resolution = await get_credential_resolver().resolve(RequestContext.from_request(request))
    try:
        rows = await resolution.backend.select("agents")
    finally:
        await resolution.close()
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import unquote

from jose import JWTError, jwt
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from relaydesk.config import settings
from relaydesk.db.database import async_session_maker
from relaydesk.services import bot_registry, tenant_service
from relaydesk.services.backend import BackendError, DataBackend, TenantCredentials, eq, open_backend
from relaydesk.services.encryption import CredentialDecryptError

logger = logging.getLogger(__name__)

MISSING_CREDENTIALS = TenantCredentials(
    backend_url="https://missing-credentials.invalid",
    anon_key="missing-credentials",
)

_WEBHOOK_MARKERS = ("/webhook/", "/api/bots/")
_TOKEN_PATTERNS = (
    re.compile(r"/api/bots/telegram/webhook/([^/?#]+)"),
    re.compile(r"/webhook/([^/?#]+)"),
)
_PATH_HEADERS = ("x-invoke-path", "x-url", "referer")
_AUTH_COOKIES = ("auth-token", "supabase-auth-token")


class Mode(str, Enum):
    """Which credential set a request runs under"""
    ADMIN = "admin"
    USER = "user"
    WEBHOOK = "webhook"  # Request kind only; resolutions are ADMIN or USER


class CredentialResolutionError(Exception):
    """Admin credentials were required but are not configured."""


@dataclass
class RequestContext:
    """The parts of an HTTP request the resolver looks at."""
    headers: Dict[str, str] = field(default_factory=dict)
    cookies: Dict[str, str] = field(default_factory=dict)
    path: str = ""

    def __post_init__(self):
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    @classmethod
    def from_request(cls, request: Any) -> "RequestContext":
        return cls(
            headers=dict(request.headers),
            cookies=dict(request.cookies),
            path=request.url.path,
        )

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    def candidate_paths(self) -> List[str]:
        paths = [self.path] if self.path else []
        paths.extend(self.headers[h] for h in _PATH_HEADERS if self.headers.get(h))
        return paths


@dataclass
class Resolution:
    """Outcome of resolving one request."""
    backend: DataBackend
    mode: Mode
    credentials: TenantCredentials
    source: str
    tenant_id: Optional[str] = None
    is_webhook: bool = False

    @property
    def is_functional(self) -> bool:
        return self.credentials is not MISSING_CREDENTIALS

    async def close(self) -> None:
        await self.backend.close()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "source": self.source,
            "tenant_id": self.tenant_id,
            "is_webhook": self.is_webhook,
            "is_functional": self.is_functional,
            "backend_url": self.credentials.backend_url,
        }


def is_webhook_request(ctx: RequestContext) -> bool:
    if (ctx.header("x-webhook") or "").lower() == "true":
        return True
    if ctx.header("x-telegram-bot-api-secret-token") or ctx.header("x-token"):
        return True
    return any(marker in p for p in ctx.candidate_paths() for marker in _WEBHOOK_MARKERS)


def extract_bot_token(ctx: RequestContext) -> Optional[str]:
    token = ctx.header("x-token")
    if token:
        return token
    for path in ctx.candidate_paths():
        for pattern in _TOKEN_PATTERNS:
            match = pattern.search(path)
            if match:
                return unquote(match.group(1))
    return None


def extract_auth_email(raw: Optional[str]) -> Optional[str]:
    """
    Pull the signed-in email out of an auth cookie.

    Accepts the hosted-auth session array (``[access, refresh, {email}]``),
    a session object, or a bare JWT with an ``email`` claim.
    """
    if not raw:
        return None
    value = unquote(raw)
    try:
        parsed = json.loads(value)
    except ValueError:
        parsed = None

    if isinstance(parsed, list):
        if len(parsed) > 2 and isinstance(parsed[2], dict) and parsed[2].get("email"):
            return parsed[2]["email"]
        value = parsed[0] if parsed and isinstance(parsed[0], str) else ""
    elif isinstance(parsed, dict):
        user = parsed.get("user") or {}
        email = parsed.get("email") or (user.get("email") if isinstance(user, dict) else None)
        if email:
            return email
        value = parsed.get("access_token") or ""

    if not value:
        return None
    try:
        if settings.jwt_verify_signature:
            claims = jwt.decode(
                value, settings.jwt_secret,
                algorithms=[settings.jwt_algorithm],
                options={"verify_aud": False},
            )
        else:
            claims = jwt.get_unverified_claims(value)
    except JWTError:
        return None
    return claims.get("email")


Step = Callable[[AsyncSession, RequestContext, Optional[str]], Awaitable[Optional[Resolution]]]


class CredentialResolver:
    """Resolves a RequestContext into an open, tenant-scoped DataBackend."""

    def __init__(
        self,
        session_factory: Callable[[], Any] = async_session_maker,
        backend_factory: Callable[[TenantCredentials], DataBackend] = open_backend,
        admin_credentials: Optional[TenantCredentials] = None,
        scan_limit: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self._backend_factory = backend_factory
        self._admin_credentials = admin_credentials
        self._scan_limit = scan_limit or settings.tenant_scan_limit

        self._webhook_steps: List[Tuple[str, Step]] = [
            ("registry_admin_bot", self._try_registry_admin_bot),
            ("registry_tenant", self._try_registry_tenant),
            ("tenant_scan", self._try_tenant_scan),
            ("webhook_admin_fallback", self._webhook_admin_fallback),
        ]
        self._admin_steps: List[Tuple[str, Step]] = [
            ("admin_mode", self._try_admin_mode),
        ]
        self._user_steps: List[Tuple[str, Step]] = [
            ("cookies", self._try_cookie_credentials),
            ("auth_email", self._try_auth_email),
            ("missing_credentials", self._missing_credentials),
        ]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def admin_credentials(self) -> TenantCredentials:
        if self._admin_credentials is not None:
            return self._admin_credentials
        url = settings.admin_backend_url
        service_key = settings.admin_backend_service_role_key
        if not url or not service_key:
            raise CredentialResolutionError(
                "Admin backend credentials are not configured "
                "(ADMIN_BACKEND_URL / ADMIN_BACKEND_SERVICE_ROLE_KEY)"
            )
        return TenantCredentials(
            backend_url=url.rstrip("/"),
            anon_key=settings.admin_backend_anon_key or service_key,
            service_role_key=service_key,
        )

    def classify(self, ctx: RequestContext) -> Mode:
        if is_webhook_request(ctx):
            return Mode.WEBHOOK
        if ctx.cookies.get("admin_mode") == "true":
            return Mode.ADMIN
        return Mode.USER

    async def resolve(self, ctx: RequestContext) -> Resolution:
        kind = self.classify(ctx)
        if kind == Mode.WEBHOOK:
            steps, token = self._webhook_steps, extract_bot_token(ctx)
        elif kind == Mode.ADMIN:
            steps, token = self._admin_steps, None
        else:
            steps, token = self._user_steps, None

        async with self._session_factory() as db:
            for name, step in steps:
                try:
                    resolution = await step(db, ctx, token)
                except SQLAlchemyError as e:
                    # registry is a cache; an outage moves on to the next step
                    logger.warning(f"[RESOLVER] Registry unavailable during {name}: {e}")
                    await _rollback(db)
                    continue
                if resolution is not None:
                    resolution.is_webhook = kind == Mode.WEBHOOK
                    logger.info(
                        f"[RESOLVER] {kind.value} request resolved via {name} "
                        f"→ {resolution.mode.value} ({resolution.credentials.backend_url})"
                    )
                    return resolution

        # Every step list ends with a step that always resolves
        raise CredentialResolutionError(f"No resolution step matched a {kind.value} request")

    # ------------------------------------------------------------------
    # Webhook steps
    # ------------------------------------------------------------------

    async def _try_registry_admin_bot(self, db, ctx, token) -> Optional[Resolution]:
        if not token:
            return None
        entry = await bot_registry.get_bot(db, token)
        if entry is None or not entry.is_active or not entry.is_admin_bot:
            return None
        await bot_registry.touch_bot(db, entry)
        return self._open(Mode.ADMIN, self.admin_credentials(), "registry_admin_bot")

    async def _try_registry_tenant(self, db, ctx, token) -> Optional[Resolution]:
        if not token:
            return None
        entry = await bot_registry.get_bot(db, token)
        if entry is None or not entry.is_active or entry.is_admin_bot:
            return None
        try:
            creds = bot_registry.entry_credentials(entry)
        except CredentialDecryptError as e:
            logger.warning(f"[RESOLVER] Registry credentials unreadable for {entry.owner_email}: {e}")
            return None
        if creds is None or not creds.is_usable:
            return None
        await bot_registry.touch_bot(db, entry)
        return self._open(Mode.USER, creds, "registry_tenant", tenant_id=entry.owner_id)

    async def _try_tenant_scan(self, db, ctx, token) -> Optional[Resolution]:
        if not token:
            return None
        tenants = await tenant_service.list_tenants_with_credentials(db, limit=self._scan_limit)
        for tenant in tenants:
            try:
                creds = tenant_service.load_tenant_credentials(tenant)
            except CredentialDecryptError as e:
                logger.warning(f"[RESOLVER] Skipping tenant {tenant.email}: {e}")
                continue
            if creds is None or not creds.is_usable:
                continue

            backend = self._backend_factory(creds)
            try:
                rows = await backend.select(
                    "bots",
                    columns="id",
                    filters=[eq("token", token), eq("is_active", True)],
                    limit=1,
                )
            except BackendError as e:
                logger.warning(f"[RESOLVER] Bot probe failed for tenant {tenant.email}: {e}")
                await backend.close()
                continue
            if not rows:
                await backend.close()
                continue

            try:
                await bot_registry.cache_tenant_credentials(db, token, tenant, tenant.credentials)
            except SQLAlchemyError as e:
                await db.rollback()
                logger.warning(f"[RESOLVER] Could not update bot registry for {tenant.email}: {e}")
            return Resolution(backend, Mode.USER, creds, "tenant_scan", tenant_id=tenant.id)
        return None

    async def _webhook_admin_fallback(self, db, ctx, token) -> Optional[Resolution]:
        logger.warning(
            "[RESOLVER] Webhook bot not found in registry or any tenant; "
            "falling back to admin credentials"
        )
        return self._open(Mode.ADMIN, self.admin_credentials(), "webhook_admin_fallback")

    # ------------------------------------------------------------------
    # Admin / user steps
    # ------------------------------------------------------------------

    async def _try_admin_mode(self, db, ctx, token) -> Optional[Resolution]:
        return self._open(Mode.ADMIN, self.admin_credentials(), "admin_mode")

    async def _try_cookie_credentials(self, db, ctx, token) -> Optional[Resolution]:
        url = ctx.cookies.get("backend_url") or ctx.cookies.get("supabase_url")
        key = ctx.cookies.get("backend_anon_key") or ctx.cookies.get("supabase_anon_key")
        if not url or not key:
            return None
        creds = TenantCredentials(backend_url=unquote(url).rstrip("/"), anon_key=unquote(key))
        return self._open(Mode.USER, creds, "cookies")

    async def _try_auth_email(self, db, ctx, token) -> Optional[Resolution]:
        raw = next((ctx.cookies[c] for c in _AUTH_COOKIES if ctx.cookies.get(c)), None)
        email = extract_auth_email(raw)
        if not email:
            return None
        tenant = await tenant_service.get_tenant_by_email(db, email)
        if tenant is None:
            logger.info(f"[RESOLVER] No tenant registered for {email}")
            return None
        try:
            creds = tenant_service.load_tenant_credentials(tenant)
        except CredentialDecryptError as e:
            logger.warning(f"[RESOLVER] Stored credentials unreadable for {email}: {e}")
            return None
        if creds is None or not creds.is_usable:
            return None
        return self._open(Mode.USER, creds, "auth_email", tenant_id=tenant.id)

    async def _missing_credentials(self, db, ctx, token) -> Optional[Resolution]:
        logger.warning("[RESOLVER] No tenant credentials on request; returning non-functional backend")
        return self._open(Mode.USER, MISSING_CREDENTIALS, "missing_credentials")

    def _open(
        self,
        mode: Mode,
        creds: TenantCredentials,
        source: str,
        tenant_id: Optional[str] = None,
    ) -> Resolution:
        return Resolution(self._backend_factory(creds), mode, creds, source, tenant_id=tenant_id)


async def _rollback(db) -> None:
    try:
        await db.rollback()
    except SQLAlchemyError as e:
        logger.warning(f"[RESOLVER] Registry rollback failed: {e}")


# ── Singleton ────────────────────────────────────────────
_resolver: Optional[CredentialResolver] = None


def get_credential_resolver() -> CredentialResolver:
    """Get the global credential resolver."""
    global _resolver
    if _resolver is None:
        _resolver = CredentialResolver()
    return _resolver
