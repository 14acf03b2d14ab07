"""Runtime configuration.

All settings come from environment variables; an optional `.env` file in the
working directory is loaded first.

Environment variables:
- TELEGRAM_BOT_TOKEN (required), TELEGRAM_CHAT_ID (optional operator chat)
- MONITORED_SKUS: comma-separated SKUs always reported to the operator chat
- POLL_INTERVAL (seconds, default 900)
- TIMEZONE: IANA name used for quiet hours; unset disables quiet hours
- DEFAULT_STORE, API_BASE_URL, CATALOG_URL, PRODUCT_BASE_URL
- SESSION_REFRESH_MARGIN, SESSION_FALLBACK_TTL, MIN_REQUEST_INTERVAL, FETCH_TIMEOUT
- NOTIFY_ATTEMPTS, NOTIFY_RETRY_DELAY, MANUAL_CHECK_COOLDOWN
- SUBSCRIPTIONS_FILE, STOCK_STATE_FILE
- LOG_LEVEL
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Bulk read of the protein category (up to 100 products in one page).
DEFAULT_CATALOG_URL = (
    "https://shop.amul.com/api/1/entity/ms.products?fields[name]=1&fields[brand]=1"
    "&fields[categories]=1&fields[collections]=1&fields[alias]=1&fields[sku]=1"
    "&fields[price]=1&fields[compare_price]=1&fields[original_price]=1&fields[images]=1"
    "&fields[metafields]=1&fields[discounts]=1&fields[catalog_only]=1&fields[is_catalog]=1"
    "&fields[seller]=1&fields[available]=1&fields[inventory_quantity]=1&fields[net_quantity]=1"
    "&fields[num_reviews]=1&fields[avg_rating]=1&fields[inventory_low_stock_quantity]=1"
    "&fields[inventory_allow_out_of_stock]=1&filters[0][field]=categories"
    "&filters[0][value][0]=protein&filters[0][operator]=in&facets=true"
    "&facetgroup=default_category_facet&limit=100&total=1&start=0"
)


class ConfigError(Exception):
    """Raised when a required setting is missing."""


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid value for %s=%r; using default %s", name, raw, default)
        return default


def _get_int(name: str, default: int) -> int:
    return int(_get_float(name, default))


def fallback_ttl_for(margin: float, fallback_ttl: float) -> float:
    """Keep the fallback session lifetime longer than the refresh margin."""
    if fallback_ttl > margin:
        return fallback_ttl
    clamped = margin * 2
    logger.warning(
        "SESSION_FALLBACK_TTL=%ss does not exceed SESSION_REFRESH_MARGIN=%ss; using %ss", fallback_ttl, margin, clamped
    )
    return clamped


def parse_skus(raw: str) -> FrozenSet[str]:
    return frozenset(s.strip() for s in raw.split(",") if s.strip())


def load_timezone(name: str) -> Optional[ZoneInfo]:
    """Return the zone for `name`, or None (quiet hours disabled) when unset or unknown."""
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Failed to load timezone %r, disabling quiet hours", name)
        return None


@dataclass
class Settings:
    telegram_bot_token: str = ""
    telegram_chat_id: Optional[str] = None
    monitored_skus: FrozenSet[str] = field(default_factory=frozenset)
    poll_interval: float = 900.0
    timezone: Optional[ZoneInfo] = None
    default_store: str = "gujarat"
    api_base_url: str = "https://shop.amul.com"
    catalog_url: str = DEFAULT_CATALOG_URL
    product_base_url: str = "https://shop.amul.com/en/product/"
    session_refresh_margin: float = 3600.0
    session_fallback_ttl: float = 86400.0
    min_request_interval: float = 5.0
    fetch_timeout: float = 15.0
    notify_attempts: int = 3
    notify_retry_delay: float = 2.0
    manual_check_cooldown: float = 120.0
    subscriptions_file: Path = Path("subscriptions.json")
    stock_state_file: Path = Path("stock_state.json")
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv()
        chat_id = (os.getenv("TELEGRAM_CHAT_ID") or "").strip()
        refresh_margin = _get_float("SESSION_REFRESH_MARGIN", 3600.0)
        return cls(
            telegram_bot_token=(os.getenv("TELEGRAM_BOT_TOKEN") or "").strip(),
            telegram_chat_id=chat_id or None,
            monitored_skus=parse_skus(os.getenv("MONITORED_SKUS", "")),
            poll_interval=_get_float("POLL_INTERVAL", 900.0),
            timezone=load_timezone((os.getenv("TIMEZONE") or "").strip()),
            default_store=os.getenv("DEFAULT_STORE", "gujarat").strip().lower(),
            api_base_url=os.getenv("API_BASE_URL", "https://shop.amul.com").rstrip("/"),
            catalog_url=os.getenv("CATALOG_URL", DEFAULT_CATALOG_URL),
            product_base_url=os.getenv("PRODUCT_BASE_URL", "https://shop.amul.com/en/product/"),
            session_refresh_margin=refresh_margin,
            session_fallback_ttl=fallback_ttl_for(refresh_margin, _get_float("SESSION_FALLBACK_TTL", 86400.0)),
            min_request_interval=_get_float("MIN_REQUEST_INTERVAL", 5.0),
            fetch_timeout=_get_float("FETCH_TIMEOUT", 15.0),
            notify_attempts=max(1, _get_int("NOTIFY_ATTEMPTS", 3)),
            notify_retry_delay=_get_float("NOTIFY_RETRY_DELAY", 2.0),
            manual_check_cooldown=_get_float("MANUAL_CHECK_COOLDOWN", 120.0),
            subscriptions_file=Path(os.getenv("SUBSCRIPTIONS_FILE", "subscriptions.json")),
            stock_state_file=Path(os.getenv("STOCK_STATE_FILE", "stock_state.json")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    def require_token(self) -> str:
        if not self.telegram_bot_token:
            raise ConfigError("TELEGRAM_BOT_TOKEN not set")
        return self.telegram_bot_token


__all__ = ["ConfigError", "Settings", "fallback_ttl_for", "load_timezone", "parse_skus"]
