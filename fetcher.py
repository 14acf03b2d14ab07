"""Upstream catalog access.

`SessionManager` keeps an authenticated, store-bound session with the
storefront and spaces every upstream call by a minimum interval.
`CatalogClient` performs the bulk product read through it.

Session handshake:
1. GET {API_BASE_URL}/en/ without credentials; the `jsessionid` cookie in the
   response is the credential, its Expires attribute the session expiry.
2. PUT {API_BASE_URL}/entity/ms.settings/_/setPreferences with
   {"data": {"store": <store code>}} to bind and validate the session.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import requests

from stock_checker import Item, PayloadError, parse_products

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


SESSION_COOKIE = "jsessionid"

BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/135.0.0.0 Safari/537.36",
    "Accept-Language": "en-US,en;q=0.9",
}


class SessionError(Exception):
    """The storefront session could not be established or rebound."""


class CatalogError(Exception):
    """A catalog read failed; the current cycle should be abandoned."""


@dataclass
class Session:
    credential: str
    expires_at: datetime
    store_code: Optional[str] = None

    def remaining(self, now: datetime) -> timedelta:
        return self.expires_at - now


class SessionManager:
    def __init__(
        self,
        base_url: str = "https://shop.amul.com",
        http: Optional[requests.Session] = None,
        refresh_margin: timedelta = timedelta(hours=1),
        fallback_ttl: timedelta = timedelta(hours=24),
        min_interval: float = 5.0,
        timeout: float = 15.0,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.http = http if http is not None else requests.Session()
        self.refresh_margin = refresh_margin
        self.fallback_ttl = fallback_ttl
        self.min_interval = min_interval
        self.timeout = timeout
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep
        self._session: Optional[Session] = None
        self._last_call: Optional[float] = None
        self._refresh_lock = asyncio.Lock()
        self._rate_lock = asyncio.Lock()
        self._call_lock = asyncio.Lock()

    @property
    def session(self) -> Optional[Session]:
        return self._session

    async def ensure_session(self, store_code: str) -> None:
        """Make sure a valid session bound to `store_code` is active.

        Raises SessionError if a needed refresh or rebind fails; the previous
        (possibly stale) session is kept in that case.
        """
        async with self._refresh_lock:
            now = self._clock()
            current = self._session
            if current is None or current.remaining(now) < self.refresh_margin:
                await self._refresh(store_code)
            elif current.store_code != store_code:
                await self._bind_store(store_code)
                current.store_code = store_code

    async def enforce_rate_limit(self) -> None:
        """Block until `min_interval` has passed since the previous upstream call."""
        async with self._rate_lock:
            if self._last_call is not None:
                wait = self.min_interval - (self._monotonic() - self._last_call)
                if wait > 0:
                    logger.debug("Rate limiter sleeping %.2fs", wait)
                    await self._sleep(wait)
            self._last_call = self._monotonic()

    async def call(self, store_code: str, method: str, url: str, **kwargs: Any) -> requests.Response:
        """Perform one upstream call on a session bound to `store_code`."""
        async with self._call_lock:
            await self.ensure_session(store_code)
            await self.enforce_rate_limit()
            return await self._send(method, url, **kwargs)

    async def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        return await asyncio.to_thread(self.http.request, method, url, **kwargs)

    async def _refresh(self, store_code: str) -> None:
        logger.info("Refreshing storefront session (store=%s)...", store_code)
        await self.enforce_rate_limit()
        try:
            resp = await self._send("GET", f"{self.base_url}/en/", headers=BROWSER_HEADERS)
        except requests.RequestException as e:
            raise SessionError(f"landing request failed: {e}") from e
        if not resp.ok:
            raise SessionError(f"landing request returned status {resp.status_code}")

        credential, expires_at = self._read_session_cookie(resp)
        now = self._clock()
        if expires_at - now < self.refresh_margin:
            raise SessionError(
                f"session expiring at {expires_at.isoformat()} is shorter than the refresh margin {self.refresh_margin}"
            )

        await self._bind_store(store_code)
        self._session = Session(credential=credential, expires_at=expires_at, store_code=store_code)
        logger.info("Session refreshed and validated; expires at %s", expires_at.isoformat())

    def _read_session_cookie(self, resp: requests.Response) -> Tuple[str, datetime]:
        cookie = next((c for c in resp.cookies if c.name == SESSION_COOKIE), None)
        if cookie is None or not cookie.value:
            raise SessionError("landing response did not set a session cookie")
        if cookie.expires:
            try:
                return cookie.value, datetime.fromtimestamp(cookie.expires, tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                pass
        logger.warning("Could not parse session cookie expiry; assuming %s", self.fallback_ttl)
        return cookie.value, self._clock() + self.fallback_ttl

    async def _bind_store(self, store_code: str) -> None:
        headers = dict(BROWSER_HEADERS)
        headers.update(
            {
                "Accept": "application/json, text/plain, */*",
                "frontend": "1",
                "Origin": self.base_url,
                "Referer": f"{self.base_url}/",
            }
        )
        await self.enforce_rate_limit()
        try:
            resp = await self._send(
                "PUT",
                f"{self.base_url}/entity/ms.settings/_/setPreferences",
                json={"data": {"store": store_code}},
                headers=headers,
            )
        except requests.RequestException as e:
            raise SessionError(f"store preference request failed: {e}") from e
        if resp.status_code != 200:
            raise SessionError(f"store preference for {store_code!r} rejected with status {resp.status_code}")
        logger.debug("Session bound to store %s", store_code)


class CatalogClient:
    def __init__(self, sessions: SessionManager, catalog_url: str) -> None:
        self.sessions = sessions
        self.catalog_url = catalog_url

    async def fetch_payload(self, store_code: str) -> Dict[str, Any]:
        headers = {
            "Accept": "application/json",
            "Referer": f"{self.sessions.base_url}/",
            "frontend": "1",
        }
        try:
            resp = await self.sessions.call(store_code, "GET", self.catalog_url, headers=headers)
        except requests.RequestException as e:
            raise CatalogError(f"catalog request failed: {e}") from e
        if resp.status_code != 200:
            raise CatalogError(f"catalog returned non-OK status {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            raise CatalogError(f"catalog response is not JSON: {e}") from e

    async def fetch_snapshot(self, store_code: str) -> List[Item]:
        payload = await self.fetch_payload(store_code)
        try:
            items = parse_products(payload)
        except PayloadError as e:
            raise CatalogError(str(e)) from e
        logger.info("Received %d products in API response.", len(items))
        return items


__all__ = ["CatalogClient", "CatalogError", "Session", "SessionError", "SessionManager"]
