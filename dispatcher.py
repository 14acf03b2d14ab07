"""Fan-out of stock events to subscribed recipients.

Delivery order for one recipient: quiet hours, then frequency throttling, then
up to `attempts` sends with a fixed delay. A recipient's last-notified time is
recorded once, after the first successful send. Exhausted retries are logged
and dropped.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Protocol, Set
from zoneinfo import ZoneInfo

from telegram import InlineKeyboardMarkup

from notifier import ChatId
from stock_checker import StockEvent
from subscriptions import Subscription, utcnow
from throttle import is_quiet_hours, should_notify

logger = logging.getLogger(__name__)


class SubscriberSource(Protocol):
    async def get_all_subscribed_item_ids(self) -> Set[str]: ...

    async def get_subscribers_for(self, item_id: str) -> List[Subscription]: ...

    async def get(self, recipient_id: int) -> Optional[Subscription]: ...

    async def update_last_notified(self, recipient_id: int, item_id: str, timestamp: datetime) -> None: ...


class Gateway(Protocol):
    async def send(self, chat_id: ChatId, text: str, reply_markup: Optional[InlineKeyboardMarkup] = None) -> bool: ...


class Dispatcher:
    def __init__(
        self,
        subscribers: SubscriberSource,
        gateway: Gateway,
        render: Callable[[StockEvent], str],
        tz: Optional[ZoneInfo] = None,
        attempts: int = 3,
        retry_delay: float = 2.0,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.subscribers = subscribers
        self.gateway = gateway
        self.render = render
        self.tz = tz
        self.attempts = max(1, attempts)
        self.retry_delay = retry_delay
        self._clock = clock
        self._sleep = sleep

    def quiet_hours(self) -> bool:
        return is_quiet_hours(self._clock(), self.tz)

    async def deliver(
        self, chat_id: ChatId, text: str, label: str = "notification", reply_markup: Optional[InlineKeyboardMarkup] = None
    ) -> bool:
        """Send with retries; every attempt is subject to quiet hours."""
        for attempt in range(1, self.attempts + 1):
            if self.quiet_hours():
                logger.info("%s to %s suppressed due to quiet hours.", label, chat_id)
                return False
            if await self.gateway.send(chat_id, text, reply_markup):
                logger.info("Telegram %s sent to %s (attempt %d).", label, chat_id, attempt)
                return True
            logger.warning("Attempt %d: error sending %s to %s", attempt, label, chat_id)
            if attempt < self.attempts:
                await self._sleep(self.retry_delay)
        logger.error("FAILED to send %s to %s after %d attempts", label, chat_id, self.attempts)
        return False

    async def is_eligible(self, recipient_id: int, item_id: str, now: Optional[datetime] = None) -> bool:
        sub = await self.subscribers.get(recipient_id)
        if sub is None or item_id not in sub.items:
            return False
        return should_notify(sub, item_id, now or self._clock())

    async def notify(self, sub: Subscription, event: StockEvent, text: str) -> bool:
        if self.quiet_hours():
            logger.info("Skipping notification to user %s due to quiet hours", sub.recipient_id)
            return False
        if not should_notify(sub, event.item_id, self._clock()):
            logger.info("Skipping notification to user %s due to frequency settings", sub.recipient_id)
            return False
        label = f"{event.kind.value} alert for {event.item_id}"
        if not await self.deliver(sub.recipient_id, text, label):
            return False
        await self.subscribers.update_last_notified(sub.recipient_id, event.item_id, self._clock())
        return True

    async def dispatch(self, event: StockEvent) -> List[int]:
        """Notify every eligible subscriber of `event`; returns the recipients reached."""
        recipients = await self.subscribers.get_subscribers_for(event.item_id)
        if not recipients:
            return []
        text = self.render(event)
        reached: List[int] = []
        for sub in recipients:
            if await self.notify(sub, event, text):
                reached.append(sub.recipient_id)
        if reached:
            logger.info("Sent stock notification for %s to %d subscribers", event.item_id, len(reached))
        return reached


__all__ = ["Dispatcher", "Gateway", "SubscriberSource"]
