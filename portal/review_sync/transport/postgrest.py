"""
PostgREST query transport over httpx.

Implements QueryTransport against the REST API of a hosted Postgres
(Supabase-style): joins become embedded resources in ``select``, filters
become ``column=op.value`` query parameters, and the exact row count is
read from the ``Content-Range`` header.

Invariants:
    - One httpx.AsyncClient per transport, reused for every request
    - The anon key is always sent; the session's access token, when known,
      replaces it as bearer credential
    - Unique violations (SQLSTATE 23505) raise ConflictError; network
      failures and timeouts raise TransportUnavailableError

How to change safely:
    - Keep select rendering in step with Join (see base.py)
    - Test new request shapes with httpx.MockTransport
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..config import ConnectionSettings
from ..errors import ConflictError, TransportError, TransportUnavailableError
from .base import Join, OrderBy

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
_RESERVED = set(',()"')


def render_select(columns: Optional[Sequence[str]], joins: Sequence[Join] = ()) -> str:
    """Render a PostgREST ``select`` expression.

    Example:
        >>> render_select(None, (Join("farmer_profile", "profiles", "farmer_id",
        ...                           "scans_farmer_id_fkey", ("id", "username")),))
        '*,farmer_profile:profiles!scans_farmer_id_fkey(id,username)'
    """
    parts = list(columns) if columns else ["*"]
    for join in joins:
        target = f"{join.table}!{join.constraint}" if join.constraint else join.table
        parts.append(f"{join.alias}:{target}({render_select(join.columns, join.joins)})")
    return ",".join(parts)


def render_filter(value: Any) -> str:
    """Render one filter value as a PostgREST operator expression."""
    if value is None:
        return "is.null"
    if isinstance(value, (list, tuple, set, frozenset)):
        return "in.(" + ",".join(_quote(v) for v in value) + ")"
    return f"eq.{value}"


def render_order(order: OrderBy) -> str:
    direction = "desc" if order.descending else "asc"
    return f"{order.column}.{direction}.nullslast"


def _quote(value: Any) -> str:
    text = str(value)
    if _RESERVED & set(text):
        return '"' + text.replace('"', '\\"') + '"'
    return text


def parse_content_range(header: Optional[str]) -> int:
    """Extract the total from a ``Content-Range`` header (``0-24/310``)."""
    if not header or "/" not in header:
        raise TransportError("Count response carries no Content-Range total")
    total = header.rsplit("/", 1)[1]
    if total == "*":
        raise TransportError("Count response has an unknown total")
    return int(total)


class PostgrestTransport:
    """QueryTransport implementation for a PostgREST endpoint.

    Attributes:
        settings: Connection settings

    Example:
        >>> async with PostgrestTransport(ConnectionSettings()) as transport:
        ...     rows = await transport.fetch_many("scans", order=OrderBy("created_at"))
    """

    def __init__(
        self,
        settings: ConnectionSettings,
        *,
        access_token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """Initialize the transport.

        Args:
            settings: Connection settings
            access_token: Session token for row-level security (optional)
            client: Pre-built client (tests inject one with a MockTransport)
        """
        self.settings = settings
        self._access_token = access_token
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> PostgrestTransport:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        """Create the HTTP client (idempotent)."""
        self._ensure_client()

    async def close(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def set_access_token(self, token: Optional[str]) -> None:
        self._access_token = token

    async def fetch_many(
        self,
        collection: str,
        *,
        joins: Sequence[Join] = (),
        filters: Optional[Dict[str, Any]] = None,
        order: Optional[OrderBy] = None,
        columns: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        params = {"select": render_select(columns, joins)}
        for column, value in (filters or {}).items():
            params[column] = render_filter(value)
        if order is not None:
            params["order"] = render_order(order)

        response = await self._request("GET", collection, params=params)
        return self._rows(response)

    async def fetch_one(
        self,
        collection: str,
        record_id: Any,
        *,
        joins: Sequence[Join] = (),
    ) -> Optional[Dict[str, Any]]:
        params = {
            "select": render_select(None, joins),
            "id": render_filter(record_id),
            "limit": "1",
        }
        response = await self._request("GET", collection, params=params)
        rows = self._rows(response)
        return rows[0] if rows else None

    async def count(self, collection: str) -> int:
        response = await self._request(
            "HEAD",
            collection,
            params={"select": "*"},
            headers={"Prefer": "count=exact"},
        )
        return parse_content_range(response.headers.get("content-range"))

    async def insert(self, collection: str, row: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request(
            "POST",
            collection,
            json=row,
            headers={"Prefer": "return=representation"},
        )
        rows = self._rows(response)
        return rows[0] if rows else dict(row)

    async def update(
        self,
        collection: str,
        patch: Dict[str, Any],
        *,
        match: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        if not match:
            raise ValueError("update requires at least one match column")
        params = {column: render_filter(value) for column, value in match.items()}
        response = await self._request(
            "PATCH",
            collection,
            params=params,
            json=patch,
            headers={"Prefer": "return=representation"},
        )
        return self._rows(response)

    # Internals

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.rest_url,
                timeout=self.settings.request_timeout,
            )
            self._owns_client = True
        return self._client

    def _headers(self, extra: Optional[Dict[str, str]]) -> Dict[str, str]:
        headers = {
            "apikey": self.settings.anon_key,
            "Authorization": f"Bearer {self._access_token or self.settings.anon_key}",
            "Accept-Profile": self.settings.schema_name,
            "Content-Profile": self.settings.schema_name,
        }
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        collection: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        client = self._ensure_client()
        try:
            response = await client.request(
                method,
                f"/{collection}",
                params=params,
                json=json,
                headers=self._headers(headers),
            )
        except httpx.TimeoutException as e:
            raise TransportUnavailableError(f"{method} {collection} timed out") from e
        except httpx.TransportError as e:
            raise TransportUnavailableError(f"{method} {collection} failed: {e}") from e

        if response.status_code >= 400:
            raise self._error(response)

        logger.debug(
            "PostgREST request",
            extra={"method": method, "collection": collection, "status": response.status_code},
        )
        return response

    @staticmethod
    def _rows(response: httpx.Response) -> List[Dict[str, Any]]:
        if not response.content:
            return []
        body = response.json()
        if isinstance(body, dict):
            return [body]
        return list(body)

    @staticmethod
    def _error(response: httpx.Response) -> TransportError:
        body: Dict[str, Any] = {}
        if response.content:
            try:
                parsed = response.json()
            except ValueError:
                parsed = None
            if isinstance(parsed, dict):
                body = parsed

        status = response.status_code
        message = body.get("message") or response.reason_phrase or f"HTTP {status}"
        pg_code = body.get("code")

        if pg_code == UNIQUE_VIOLATION or (status == 409 and pg_code is None):
            return ConflictError(message, status=status, pg_code=pg_code, detail=body.get("details"))
        if status in (502, 503, 504):
            return TransportUnavailableError(message, status=status)
        return TransportError(
            message,
            status=status,
            pg_code=pg_code,
            hint=body.get("hint"),
            detail=body.get("details"),
        )
