"""
Tenant Data Backend — PostgREST client for a tenant's database.

Every tenant (and the admin workspace) owns a separate hosted Postgres
exposed through PostgREST at ``{backend_url}/rest/v1``. A DataBackend is
bound to one set of credentials and never shared across tenants.

Usage:
    from relaydesk.services.backend import DataBackend, TenantCredentials, eq

    creds = TenantCredentials(backend_url="https://x.example.co", anon_key="...")
    async with DataBackend(creds) as backend:
        rows = await backend.select("messages", filters=[eq("id", message_id)])
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx

logger = logging.getLogger(__name__)

# Blob field aliases accepted on read (older rows used the hosted-provider names)
_URL_FIELDS = ("backend_url", "supabase_url", "database_url", "url")
_ANON_FIELDS = ("anon_key", "supabase_anon_key", "database_key")
_SERVICE_FIELDS = ("service_role_key", "supabase_service_role_key")


class BackendError(Exception):
    """A tenant backend request failed (transport error or non-2xx status)."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code  # Postgres error code when reported, e.g. "23505"

    @property
    def is_unique_violation(self) -> bool:
        return self.code == "23505" or self.status_code == 409


@dataclass(frozen=True)
class TenantCredentials:
    """Connection details for one tenant backend."""
    backend_url: str
    anon_key: str
    service_role_key: Optional[str] = None
    encrypted: bool = False

    @property
    def is_usable(self) -> bool:
        return bool(self.backend_url and self.anon_key)

    @property
    def api_key(self) -> str:
        """Key sent with requests: the service role key when we hold one."""
        return self.service_role_key or self.anon_key

    @classmethod
    def from_blob(cls, blob: Optional[Dict[str, Any]]) -> Optional["TenantCredentials"]:
        """Build credentials from a decrypted JSON blob, or None if incomplete."""
        if not blob or not isinstance(blob, dict):
            return None
        url = next((blob[f] for f in _URL_FIELDS if blob.get(f)), None)
        anon = next((blob[f] for f in _ANON_FIELDS if blob.get(f)), None)
        service = next((blob[f] for f in _SERVICE_FIELDS if blob.get(f)), None)
        if not url or not anon:
            return None
        return cls(
            backend_url=url.rstrip("/"),
            anon_key=anon,
            service_role_key=service,
            encrypted=bool(blob.get("_encrypted")),
        )

    def to_blob(self) -> Dict[str, Any]:
        blob: Dict[str, Any] = {"backend_url": self.backend_url, "anon_key": self.anon_key}
        if self.service_role_key:
            blob["service_role_key"] = self.service_role_key
        return blob

    def __repr__(self) -> str:
        return f"TenantCredentials(backend_url={self.backend_url!r}, encrypted={self.encrypted})"


# ── Filters ──────────────────────────────────────────────

@dataclass(frozen=True)
class Filter:
    """A PostgREST horizontal filter: ``column=op.value``."""
    column: str
    op: str
    value: Any = None

    def to_param(self) -> str:
        if self.op == "in":
            return "in.(" + ",".join(_quote(v) for v in self.value) + ")"
        if self.op == "not.is":
            return "not.is.null"
        return f"{self.op}.{_format(self.value)}"


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def gt(column: str, value: Any) -> Filter:
    return Filter(column, "gt", value)


def in_(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column, "in", tuple(values))


def is_not_null(column: str) -> Filter:
    return Filter(column, "not.is")


def text_search(column: str, query: str) -> Filter:
    """Web-search style full-text match (supports ``or`` between terms)."""
    return Filter(column, "wfts", query)


def _format(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def _quote(value: Any) -> str:
    text = _format(value)
    if any(ch in text for ch in ',()"'):
        return '"' + text.replace('"', '\\"') + '"'
    return text


# ── Client ───────────────────────────────────────────────

class DataBackend:
    """Async PostgREST client scoped to a single tenant's credentials."""

    def __init__(
        self,
        credentials: TenantCredentials,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.credentials = credentials
        self.timeout = timeout
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    @property
    def base_url(self) -> str:
        return f"{self.credentials.backend_url}/rest/v1"

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            key = self.credentials.api_key
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "apikey": key,
                    "Authorization": f"Bearer {key}",
                    "Content-Type": "application/json",
                },
            )
        return self._http

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> "DataBackend":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Table operations
    # ------------------------------------------------------------------

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Select rows. ``order`` uses PostgREST syntax, e.g. ``created_at.desc``."""
        params = self._params(filters)
        params.append(("select", columns))
        if order:
            params.append(("order", order))
        if limit is not None:
            params.append(("limit", str(limit)))
        response = await self._request("GET", f"/{table}", params=params)
        return response.json()

    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        """Exact row count without fetching the rows."""
        response = await self._request(
            "HEAD",
            f"/{table}",
            params=self._params(filters) + [("select", "*")],
            headers={"Prefer": "count=exact"},
        )
        content_range = response.headers.get("content-range", "")
        total = content_range.rsplit("/", 1)[-1]
        if not total.isdigit():
            raise BackendError(f"Backend returned no count for {table}", response.status_code)
        return int(total)

    async def insert(self, table: str, rows: Any) -> List[Dict[str, Any]]:
        response = await self._request(
            "POST",
            f"/{table}",
            json=rows,
            headers={"Prefer": "return=representation"},
        )
        return response.json()

    async def update(
        self, table: str, values: Dict[str, Any], filters: Sequence[Filter]
    ) -> List[Dict[str, Any]]:
        response = await self._request(
            "PATCH",
            f"/{table}",
            params=self._params(filters),
            json=values,
            headers={"Prefer": "return=representation"},
        )
        return response.json()

    async def delete(self, table: str, filters: Sequence[Filter]) -> None:
        if not filters:
            raise BackendError(f"Refusing unfiltered delete on {table}")
        await self._request("DELETE", f"/{table}", params=self._params(filters))

    async def rpc(self, function: str, params: Dict[str, Any]) -> Any:
        response = await self._request("POST", f"/rpc/{function}", json=params)
        if not response.content:
            return None
        return response.json()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _params(filters: Sequence[Filter]) -> List[tuple]:
        return [(f.column, f.to_param()) for f in filters]

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client().request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise BackendError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            code = None
            message = response.text
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                code = body.get("code")
                message = body.get("message") or message
            raise BackendError(
                f"{method} {path} returned {response.status_code}: {message}",
                status_code=response.status_code,
                code=code,
            )
        return response


def open_backend(credentials: TenantCredentials, timeout: Optional[float] = None) -> DataBackend:
    """Default backend factory."""
    if timeout is None:
        from relaydesk.config import settings
        timeout = settings.backend_timeout_seconds
    return DataBackend(credentials, timeout=timeout)
