"""Subscription registry: who wants to hear about which items, and how often.

One `SubscriptionRegistry` owns every recipient's Subscription. Reads may run
concurrently; writes are exclusive. Each mutation rewrites the whole
subscriptions file once the write lock has been released.
"""
from __future__ import annotations

import asyncio
import contextlib
import copy
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Tuple

from persistent_state import JsonStateFile

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationFrequency(enum.Enum):
    IMMEDIATE = "every_check"
    EVERY_30_MIN = "every_30_minutes"
    HOURLY = "hourly"
    EVERY_3H = "every_3_hours"
    EVERY_6H = "every_6_hours"
    EVERY_12H = "every_12_hours"
    DAILY = "daily"
    EVERY_3_DAYS = "every_3_days"

    @property
    def min_interval(self) -> timedelta:
        return _MIN_INTERVALS[self]

    @property
    def label(self) -> str:
        return _LABELS[self]

    @classmethod
    def parse(cls, code: Optional[str]) -> Optional["NotificationFrequency"]:
        if not code:
            return None
        try:
            return cls(code)
        except ValueError:
            return None


_MIN_INTERVALS = {
    NotificationFrequency.IMMEDIATE: timedelta(0),
    NotificationFrequency.EVERY_30_MIN: timedelta(minutes=30),
    NotificationFrequency.HOURLY: timedelta(hours=1),
    NotificationFrequency.EVERY_3H: timedelta(hours=3),
    NotificationFrequency.EVERY_6H: timedelta(hours=6),
    NotificationFrequency.EVERY_12H: timedelta(hours=12),
    NotificationFrequency.DAILY: timedelta(days=1),
    NotificationFrequency.EVERY_3_DAYS: timedelta(days=3),
}

_LABELS = {
    NotificationFrequency.IMMEDIATE: "Every Check",
    NotificationFrequency.EVERY_30_MIN: "Every 30 Minutes (Default)",
    NotificationFrequency.HOURLY: "Every Hour",
    NotificationFrequency.EVERY_3H: "Every 3 Hours",
    NotificationFrequency.EVERY_6H: "Every 6 Hours",
    NotificationFrequency.EVERY_12H: "Every 12 Hours",
    NotificationFrequency.DAILY: "Daily",
    NotificationFrequency.EVERY_3_DAYS: "Every 3 Days",
}

DEFAULT_FREQUENCY = NotificationFrequency.EVERY_30_MIN


class SubscribeResult(enum.Enum):
    OK = "ok"
    LOCATION_REQUIRED = "location_required"
    ALREADY_SUBSCRIBED = "already_subscribed"
    NOT_SUBSCRIBED = "not_subscribed"


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt_from_str(value: Any) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Subscription:
    recipient_id: int
    display_name: str = ""
    items: Set[str] = field(default_factory=set)
    store_code: Optional[str] = None
    location: Optional[str] = None
    frequency: Optional[NotificationFrequency] = None
    last_notified: Dict[str, datetime] = field(default_factory=dict)
    last_manual_check: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "display_name": self.display_name,
            "items": sorted(self.items),
            "location": self.location,
            "store_code": self.store_code,
            "frequency": self.frequency.value if self.frequency else None,
            "last_notified": {k: v.isoformat() for k, v in self.last_notified.items()},
            "last_manual_check": _dt_to_str(self.last_manual_check),
            "created_at": _dt_to_str(self.created_at),
            "updated_at": _dt_to_str(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Subscription":
        items = set(map(str, data.get("items") or []))
        last_notified = data.get("last_notified")
        if not isinstance(last_notified, dict):
            last_notified = {}
        return cls(
            recipient_id=int(data["recipient_id"]),
            display_name=str(data.get("display_name") or ""),
            items=items,
            store_code=data.get("store_code") or None,
            location=data.get("location") or None,
            frequency=NotificationFrequency.parse(data.get("frequency")),
            last_notified={
                str(k): _dt_from_str(v)
                for k, v in last_notified.items()
                if v and str(k) in items
            },
            last_manual_check=_dt_from_str(data.get("last_manual_check")),
            created_at=_dt_from_str(data.get("created_at")) or utcnow(),
            updated_at=_dt_from_str(data.get("updated_at")) or utcnow(),
        )


class ReadWriteLock:
    """asyncio reader/writer lock; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextlib.asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and not self._writers_waiting)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextlib.asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            self._writers_waiting += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and not self._readers)
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


class SubscriptionRegistry:
    def __init__(self, path: Path, clock=utcnow) -> None:
        self._file = JsonStateFile(path)
        self._clock = clock
        self._lock = ReadWriteLock()
        self._save_lock = asyncio.Lock()
        self._subs: Dict[int, Subscription] = {}
        self._load()

    def _load(self) -> None:
        for key, raw in self._file.load().items():
            if not isinstance(raw, dict):
                logger.warning("Skipping malformed subscription %s: not an object", key)
                continue
            try:
                sub = Subscription.from_dict(raw)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed subscription %s: %s", key, e)
                continue
            self._subs[sub.recipient_id] = sub
        total = sum(len(s.items) for s in self._subs.values())
        logger.info("Loaded %d users with %d total subscriptions", len(self._subs), total)

    async def _persist(self) -> None:
        # Snapshot inside the save lock so the newest state is always written last.
        async with self._save_lock:
            async with self._lock.read():
                snapshot = {str(rid): sub.to_dict() for rid, sub in self._subs.items()}
            if await asyncio.to_thread(self._file.save, snapshot):
                logger.debug("Subscriptions saved (%d users)", len(snapshot))

    def _get_or_create(self, recipient_id: int, display_name: Optional[str]) -> Subscription:
        sub = self._subs.get(recipient_id)
        if sub is None:
            now = self._clock()
            sub = self._subs[recipient_id] = Subscription(
                recipient_id=recipient_id, display_name=display_name or "", created_at=now, updated_at=now
            )
        elif display_name:
            sub.display_name = display_name
        return sub

    async def set_location(
        self, recipient_id: int, store_code: str, location: Optional[str] = None, display_name: Optional[str] = None
    ) -> None:
        async with self._lock.write():
            created = recipient_id not in self._subs
            sub = self._get_or_create(recipient_id, display_name)
            if created:
                sub.frequency = DEFAULT_FREQUENCY
            sub.store_code = store_code
            sub.location = location or store_code
            sub.updated_at = self._clock()
        logger.info("Recipient %s location set to %s", recipient_id, store_code)
        await self._persist()

    async def set_frequency(self, recipient_id: int, frequency: NotificationFrequency) -> None:
        async with self._lock.write():
            sub = self._get_or_create(recipient_id, None)
            sub.frequency = frequency
            sub.updated_at = self._clock()
        await self._persist()

    async def subscribe(self, recipient_id: int, item_id: str, display_name: Optional[str] = None) -> SubscribeResult:
        async with self._lock.write():
            sub = self._subs.get(recipient_id)
            if sub is None or not sub.store_code:
                return SubscribeResult.LOCATION_REQUIRED
            if item_id in sub.items:
                return SubscribeResult.ALREADY_SUBSCRIBED
            if display_name:
                sub.display_name = display_name
            sub.items.add(item_id)
            sub.updated_at = self._clock()
        logger.info("Recipient %s subscribed to %s", recipient_id, item_id)
        await self._persist()
        return SubscribeResult.OK

    async def unsubscribe(self, recipient_id: int, item_id: str) -> SubscribeResult:
        async with self._lock.write():
            sub = self._subs.get(recipient_id)
            if sub is None or item_id not in sub.items:
                return SubscribeResult.NOT_SUBSCRIBED
            sub.items.discard(item_id)
            sub.last_notified.pop(item_id, None)
            sub.updated_at = self._clock()
        logger.info("Recipient %s unsubscribed from %s", recipient_id, item_id)
        await self._persist()
        return SubscribeResult.OK

    async def update_last_notified(self, recipient_id: int, item_id: str, timestamp: datetime) -> None:
        async with self._lock.write():
            sub = self._subs.get(recipient_id)
            # Ignore items the recipient dropped while the notice was in flight.
            if sub is None or item_id not in sub.items:
                return
            sub.last_notified[item_id] = timestamp
            sub.updated_at = self._clock()
        await self._persist()

    async def claim_manual_check(self, recipient_id: int, now: datetime, cooldown: timedelta) -> Tuple[bool, timedelta]:
        """Stamp a manual check unless one ran within `cooldown`.

        Returns (claimed, remaining_cooldown).
        """
        async with self._lock.write():
            sub = self._subs.get(recipient_id)
            if sub is None:
                return False, timedelta(0)
            if sub.last_manual_check is not None:
                elapsed = now - sub.last_manual_check
                if elapsed < cooldown:
                    return False, cooldown - elapsed
            sub.last_manual_check = now
            sub.updated_at = now
        await self._persist()
        return True, timedelta(0)

    async def get(self, recipient_id: int) -> Optional[Subscription]:
        async with self._lock.read():
            sub = self._subs.get(recipient_id)
            return copy.deepcopy(sub) if sub else None

    async def get_subscribers_for(self, item_id: str) -> List[Subscription]:
        async with self._lock.read():
            return [copy.deepcopy(s) for s in self._subs.values() if item_id in s.items]

    async def get_all_subscribed_item_ids(self) -> Set[str]:
        async with self._lock.read():
            result: Set[str] = set()
            for sub in self._subs.values():
                result.update(sub.items)
            return result

    async def get_all_subscriptions(self) -> Dict[int, Subscription]:
        async with self._lock.read():
            return {rid: copy.deepcopy(sub) for rid, sub in self._subs.items()}


__all__ = [
    "DEFAULT_FREQUENCY",
    "NotificationFrequency",
    "ReadWriteLock",
    "SubscribeResult",
    "Subscription",
    "SubscriptionRegistry",
    "utcnow",
]
