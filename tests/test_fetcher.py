"""
Tests for the storefront session handshake, rate limiting and catalog reads.
"""
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import requests
from requests.cookies import RequestsCookieJar

from fetcher import CatalogClient, CatalogError, SessionError, SessionManager
from settings import fallback_ttl_for


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value


def _landing(clock, lifetime=timedelta(hours=24), credential="abc", expires=True):
    resp = MagicMock()
    resp.ok = True
    resp.status_code = 200
    jar = RequestsCookieJar()
    if credential is not None:
        ts = int((clock() + lifetime).timestamp()) if expires else None
        jar.set("jsessionid", credential, expires=ts)
    resp.cookies = jar
    return resp


def _status(code, payload=None):
    resp = MagicMock()
    resp.ok = code < 400
    resp.status_code = code
    resp.json.return_value = payload
    return resp


def _manager(http, clock, **kwargs):
    kwargs.setdefault("sleep", AsyncMock())
    return SessionManager(
        base_url="https://shop.example",
        http=http,
        refresh_margin=timedelta(hours=1),
        fallback_ttl=timedelta(hours=24),
        min_interval=0,
        clock=clock,
        **kwargs,
    )


def _methods(http):
    return [(c.args[0], c.args[1]) for c in http.request.call_args_list]


class TestSessionHandshake:
    """Landing GET followed by store binding PUT."""

    @pytest.mark.asyncio
    async def test_initial_handshake(self, clock):
        http = MagicMock()
        http.request.side_effect = [_landing(clock), _status(200)]
        sessions = _manager(http, clock)

        await sessions.ensure_session("north")

        assert _methods(http) == [
            ("GET", "https://shop.example/en/"),
            ("PUT", "https://shop.example/entity/ms.settings/_/setPreferences"),
        ]
        put = http.request.call_args_list[1]
        assert put.kwargs["json"] == {"data": {"store": "north"}}
        assert sessions.session.credential == "abc"
        assert sessions.session.store_code == "north"
        assert sessions.session.remaining(clock()) > timedelta(hours=23)

    @pytest.mark.asyncio
    async def test_valid_session_is_reused(self, clock):
        http = MagicMock()
        http.request.side_effect = [_landing(clock), _status(200)]
        sessions = _manager(http, clock)

        await sessions.ensure_session("north")
        clock.advance(hours=10)
        await sessions.ensure_session("north")

        assert http.request.call_count == 2

    @pytest.mark.asyncio
    async def test_store_change_rebinds_only(self, clock):
        http = MagicMock()
        http.request.side_effect = [_landing(clock), _status(200), _status(200)]
        sessions = _manager(http, clock)

        await sessions.ensure_session("north")
        await sessions.ensure_session("south")

        assert _methods(http)[2][0] == "PUT"
        assert http.request.call_args_list[2].kwargs["json"] == {"data": {"store": "south"}}
        assert sessions.session.store_code == "south"
        assert sessions.session.credential == "abc"

    @pytest.mark.asyncio
    async def test_refresh_inside_margin(self, clock):
        http = MagicMock()
        http.request.side_effect = [
            _landing(clock, credential="old"),
            _status(200),
            _landing(clock, lifetime=timedelta(hours=47), credential="new"),
            _status(200),
        ]
        sessions = _manager(http, clock)

        await sessions.ensure_session("north")
        clock.advance(hours=23, minutes=30)
        await sessions.ensure_session("north")

        assert [m for m, _ in _methods(http)] == ["GET", "PUT", "GET", "PUT"]
        assert sessions.session.credential == "new"

    @pytest.mark.asyncio
    async def test_missing_expiry_uses_fallback(self, clock):
        http = MagicMock()
        http.request.side_effect = [_landing(clock, expires=False), _status(200)]
        sessions = _manager(http, clock)

        await sessions.ensure_session("north")

        assert sessions.session.expires_at == clock() + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_rejected_binding_raises(self, clock):
        http = MagicMock()
        http.request.side_effect = [_landing(clock), _status(403)]
        sessions = _manager(http, clock)

        with pytest.raises(SessionError):
            await sessions.ensure_session("north")
        assert sessions.session is None

    @pytest.mark.asyncio
    async def test_short_lived_session_raises(self, clock):
        http = MagicMock()
        http.request.side_effect = [_landing(clock, lifetime=timedelta(minutes=30))]
        sessions = _manager(http, clock)

        with pytest.raises(SessionError):
            await sessions.ensure_session("north")
        assert http.request.call_count == 1

    @pytest.mark.asyncio
    async def test_lifetime_equal_to_margin_is_accepted(self, clock):
        http = MagicMock()
        http.request.side_effect = [_landing(clock, lifetime=timedelta(hours=1)), _status(200)]
        sessions = _manager(http, clock)

        await sessions.ensure_session("north")

        assert sessions.session.expires_at == clock() + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_fallback_ttl_longer_than_large_margin(self, clock):
        """A cookie without expiry still yields a session when the margin is large."""
        margin = timedelta(hours=90)
        fallback = timedelta(seconds=fallback_ttl_for(margin.total_seconds(), 86400.0))
        http = MagicMock()
        http.request.side_effect = [_landing(clock, expires=False), _status(200)]
        sessions = SessionManager(
            base_url="https://shop.example", http=http, refresh_margin=margin,
            fallback_ttl=fallback, min_interval=0, clock=clock, sleep=AsyncMock(),
        )

        await sessions.ensure_session("north")

        assert sessions.session.remaining(clock()) > margin

    @pytest.mark.asyncio
    async def test_missing_cookie_raises(self, clock):
        http = MagicMock()
        http.request.side_effect = [_landing(clock, credential=None)]
        with pytest.raises(SessionError):
            await _manager(http, clock).ensure_session("north")

    @pytest.mark.asyncio
    async def test_landing_error_raises(self, clock):
        http = MagicMock()
        http.request.side_effect = requests.ConnectionError("boom")
        with pytest.raises(SessionError):
            await _manager(http, clock).ensure_session("north")


class TestRateLimit:
    """Minimum spacing between upstream calls."""

    @pytest.mark.asyncio
    async def test_waits_for_remaining_interval(self, clock):
        monotonic = FakeMonotonic()
        sleep = AsyncMock()
        sessions = SessionManager(http=MagicMock(), min_interval=5.0, clock=clock, monotonic=monotonic, sleep=sleep)

        await sessions.enforce_rate_limit()
        sleep.assert_not_awaited()

        monotonic.value += 2.0
        await sessions.enforce_rate_limit()
        sleep.assert_awaited_once()
        assert sleep.await_args.args[0] == pytest.approx(3.0)

    @pytest.mark.asyncio
    async def test_no_wait_after_interval(self, clock):
        monotonic = FakeMonotonic()
        sleep = AsyncMock()
        sessions = SessionManager(http=MagicMock(), min_interval=5.0, clock=clock, monotonic=monotonic, sleep=sleep)

        await sessions.enforce_rate_limit()
        monotonic.value += 6.0
        await sessions.enforce_rate_limit()
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_handshake_calls_are_spaced(self, clock):
        http = MagicMock()
        http.request.side_effect = [_landing(clock), _status(200)]
        sleep = AsyncMock()
        sessions = SessionManager(
            base_url="https://shop.example", http=http, min_interval=5.0,
            clock=clock, monotonic=FakeMonotonic(), sleep=sleep,
        )

        await sessions.ensure_session("north")

        sleep.assert_awaited_once_with(5.0)


class TestCatalogClient:
    """Bulk catalog read through the session."""

    def _client(self, clock, catalog_response):
        http = MagicMock()
        http.request.side_effect = [_landing(clock), _status(200), catalog_response]
        return CatalogClient(_manager(http, clock), "https://shop.example/api/products"), http

    @pytest.mark.asyncio
    async def test_fetch_snapshot(self, clock, sample_payload):
        client, http = self._client(clock, _status(200, sample_payload))

        items = await client.fetch_snapshot("north")

        assert [i.item_id for i in items] == ["HPPCP01_02", "WPCCP01_01"]
        assert _methods(http)[-1] == ("GET", "https://shop.example/api/products")

    @pytest.mark.asyncio
    async def test_non_ok_status(self, clock):
        client, _ = self._client(clock, _status(500))
        with pytest.raises(CatalogError):
            await client.fetch_snapshot("north")

    @pytest.mark.asyncio
    async def test_invalid_json(self, clock):
        resp = _status(200)
        resp.json.side_effect = ValueError("not json")
        client, _ = self._client(clock, resp)
        with pytest.raises(CatalogError):
            await client.fetch_snapshot("north")

    @pytest.mark.asyncio
    async def test_payload_without_data(self, clock):
        client, _ = self._client(clock, _status(200, {"messages": []}))
        with pytest.raises(CatalogError):
            await client.fetch_snapshot("north")

    @pytest.mark.asyncio
    async def test_transport_error(self, clock):
        client, _ = self._client(clock, requests.Timeout("slow"))
        with pytest.raises(CatalogError):
            await client.fetch_snapshot("north")

    @pytest.mark.asyncio
    async def test_session_failure_propagates(self, clock):
        http = MagicMock()
        http.request.side_effect = [_landing(clock), _status(401)]
        client = CatalogClient(_manager(http, clock), "https://shop.example/api/products")
        with pytest.raises(SessionError):
            await client.fetch_snapshot("north")
