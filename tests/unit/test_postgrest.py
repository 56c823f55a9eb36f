"""
Unit tests for the PostgREST transport.

Requests are served by httpx.MockTransport; no network is used.

Tests cover:
- select/filter/order rendering
- Request shapes for fetch, count, insert and update
- Error mapping (conflict, unavailable, other)
"""

import json

import httpx
import pytest

from portal.review_sync.config import ConnectionSettings
from portal.review_sync.errors import ConflictError, TransportError, TransportUnavailableError
from portal.review_sync.sync.queries import SCAN_JOINS, SCAN_ORDER, VALIDATION_JOINS
from portal.review_sync.transport.base import Join
from portal.review_sync.transport.postgrest import (
    PostgrestTransport,
    parse_content_range,
    render_filter,
    render_select,
)


class TestRendering:
    def test_select_without_joins(self):
        assert render_select(None) == "*"
        assert render_select(("id", "full_name")) == "id,full_name"

    def test_select_with_nested_joins(self):
        assert render_select(None, VALIDATION_JOINS) == (
            "*,"
            "expert_profile:profiles!validation_history_expert_id_fkey(id,username,full_name,email),"
            "scan:scans!validation_history_scan_id_fkey("
            "*,farmer_profile:profiles!scans_farmer_id_fkey(id,username,full_name,email,profile_picture))"
        )

    def test_select_join_without_constraint(self):
        join = Join(alias="owner", table="profiles", local_key="owner_id")
        assert render_select(None, (join,)) == "*,owner:profiles(*)"

    def test_filters(self):
        assert render_filter(42) == "eq.42"
        assert render_filter(None) == "is.null"
        assert render_filter(["a", "b"]) == "in.(a,b)"
        assert render_filter(["x,y"]) == 'in.("x,y")'

    def test_content_range(self):
        assert parse_content_range("0-24/310") == 310
        assert parse_content_range("*/0") == 0
        with pytest.raises(TransportError):
            parse_content_range(None)
        with pytest.raises(TransportError):
            parse_content_range("0-24/*")


class TestPostgrestTransport:
    """Tests for request construction and response handling."""

    @pytest.fixture
    def settings(self):
        return ConnectionSettings(url="https://proj.supabase.co", anon_key="anon-key")

    @pytest.fixture
    def requests(self):
        return []

    def _transport(self, settings, requests, handler, token="user-token"):
        def record(request):
            requests.append(request)
            return handler(request)

        client = httpx.AsyncClient(base_url=settings.rest_url, transport=httpx.MockTransport(record))
        return PostgrestTransport(settings, access_token=token, client=client)

    @pytest.mark.asyncio
    async def test_fetch_many(self, settings, requests):
        transport = self._transport(
            settings, requests, lambda r: httpx.Response(200, json=[{"id": 1}, {"id": 2}])
        )

        rows = await transport.fetch_many("scans", joins=SCAN_JOINS, order=SCAN_ORDER)

        assert rows == [{"id": 1}, {"id": 2}]
        request = requests[0]
        assert request.method == "GET"
        assert request.url.path == "/rest/v1/scans"
        assert request.url.params["select"].startswith("*,farmer_profile:profiles!scans_farmer_id_fkey(")
        assert request.url.params["order"] == "created_at.desc.nullslast"
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["authorization"] == "Bearer user-token"
        assert request.headers["accept-profile"] == "public"

    @pytest.mark.asyncio
    async def test_fetch_many_with_in_filter(self, settings, requests):
        transport = self._transport(settings, requests, lambda r: httpx.Response(200, json=[]))

        await transport.fetch_many("profiles", filters={"id": ["a", "b"]}, columns=("id", "full_name"))

        params = requests[0].url.params
        assert params["id"] == "in.(a,b)"
        assert params["select"] == "id,full_name"

    @pytest.mark.asyncio
    async def test_anon_key_without_session(self, settings, requests):
        transport = self._transport(settings, requests, lambda r: httpx.Response(200, json=[]), token=None)

        await transport.fetch_many("scans")
        transport.set_access_token("later-token")
        await transport.fetch_many("scans")

        assert requests[0].headers["authorization"] == "Bearer anon-key"
        assert requests[1].headers["authorization"] == "Bearer later-token"

    @pytest.mark.asyncio
    async def test_fetch_one(self, settings, requests):
        transport = self._transport(settings, requests, lambda r: httpx.Response(200, json=[{"id": 7}]))

        row = await transport.fetch_one("validation_history", 7, joins=VALIDATION_JOINS)

        assert row == {"id": 7}
        params = requests[0].url.params
        assert params["id"] == "eq.7"
        assert params["limit"] == "1"
        assert "expert_profile:" in params["select"]

    @pytest.mark.asyncio
    async def test_fetch_one_missing(self, settings, requests):
        transport = self._transport(settings, requests, lambda r: httpx.Response(200, json=[]))
        assert await transport.fetch_one("scans", 404) is None

    @pytest.mark.asyncio
    async def test_count(self, settings, requests):
        transport = self._transport(
            settings, requests, lambda r: httpx.Response(200, headers={"Content-Range": "0-9/310"})
        )

        assert await transport.count("profiles") == 310
        assert requests[0].method == "HEAD"
        assert requests[0].headers["prefer"] == "count=exact"

    @pytest.mark.asyncio
    async def test_insert(self, settings, requests):
        transport = self._transport(
            settings, requests, lambda r: httpx.Response(201, json=[{"id": 11, "scan_id": 42}])
        )

        row = await transport.insert("validation_history", {"scan_id": 42})

        assert row == {"id": 11, "scan_id": 42}
        request = requests[0]
        assert request.method == "POST"
        assert json.loads(request.content) == {"scan_id": 42}
        assert request.headers["prefer"] == "return=representation"
        assert request.headers["content-profile"] == "public"

    @pytest.mark.asyncio
    async def test_update(self, settings, requests):
        transport = self._transport(
            settings, requests, lambda r: httpx.Response(200, json=[{"id": 3, "status": "Corrected"}])
        )

        rows = await transport.update(
            "validation_history",
            {"status": "Corrected"},
            match={"scan_id": 42, "expert_id": "expert-1"},
        )

        assert rows == [{"id": 3, "status": "Corrected"}]
        request = requests[0]
        assert request.method == "PATCH"
        assert request.url.params["scan_id"] == "eq.42"
        assert request.url.params["expert_id"] == "eq.expert-1"

    @pytest.mark.asyncio
    async def test_update_requires_match(self, settings, requests):
        transport = self._transport(settings, requests, lambda r: httpx.Response(200, json=[]))

        with pytest.raises(ValueError):
            await transport.update("scans", {"status": "Validated"}, match={})
        assert requests == []

    @pytest.mark.asyncio
    async def test_unique_violation_is_conflict(self, settings, requests):
        body = {
            "code": "23505",
            "message": 'duplicate key value violates unique constraint "validation_history_scan_id_expert_id_key"',
            "details": "Key (scan_id, expert_id)=(42, expert-1) already exists.",
            "hint": None,
        }
        transport = self._transport(settings, requests, lambda r: httpx.Response(409, json=body))

        with pytest.raises(ConflictError) as exc_info:
            await transport.insert("validation_history", {"scan_id": 42})

        assert exc_info.value.pg_code == "23505"
        assert "already exists" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_other_errors_carry_details(self, settings, requests):
        body = {"code": "42501", "message": "permission denied", "details": None, "hint": "Check RLS"}
        transport = self._transport(settings, requests, lambda r: httpx.Response(403, json=body))

        with pytest.raises(TransportError) as exc_info:
            await transport.fetch_many("scans")

        error = exc_info.value
        assert not isinstance(error, ConflictError)
        assert error.status == 403
        assert error.pg_code == "42501"
        assert error.hint == "Check RLS"

    @pytest.mark.asyncio
    async def test_non_json_error_body(self, settings, requests):
        transport = self._transport(settings, requests, lambda r: httpx.Response(500, text="<html>oops</html>"))

        with pytest.raises(TransportError) as exc_info:
            await transport.count("scans")

        assert exc_info.value.status == 500

    @pytest.mark.asyncio
    async def test_gateway_errors_are_unavailable(self, settings, requests):
        transport = self._transport(settings, requests, lambda r: httpx.Response(503))

        with pytest.raises(TransportUnavailableError):
            await transport.fetch_many("scans")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "exc_type",
        [httpx.ConnectError, httpx.ReadTimeout],
    )
    async def test_network_errors_are_unavailable(self, settings, requests, exc_type):
        def handler(request):
            raise exc_type("network down", request=request)

        transport = self._transport(settings, requests, handler)

        with pytest.raises(TransportUnavailableError):
            await transport.fetch_many("scans")

    @pytest.mark.asyncio
    async def test_context_manager_owns_client(self, settings):
        async with PostgrestTransport(settings) as transport:
            assert transport._client is not None
        assert transport._client is None
