"""Per-recipient notification throttling and the global quiet-hours window."""
from __future__ import annotations

from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from subscriptions import NotificationFrequency, Subscription

QUIET_HOUR_START = 0  # 12:00 AM
QUIET_HOUR_END = 7  # up to 6:59:59 AM (exclusive of 7)


def should_notify(subscription: Subscription, item_id: str, now: datetime) -> bool:
    """Whether the recipient's frequency setting allows another notice for item_id.

    The first notice for an item is never suppressed.
    """
    frequency = subscription.frequency
    if frequency is None or frequency is NotificationFrequency.IMMEDIATE:
        return True
    last = subscription.last_notified.get(item_id)
    if last is None:
        return True
    return now - last >= frequency.min_interval


def is_quiet_hours(now: datetime, tz: Optional[ZoneInfo]) -> bool:
    # No timezone means quiet hours are disabled.
    if tz is None:
        return False
    hour = now.astimezone(tz).hour
    return QUIET_HOUR_START <= hour < QUIET_HOUR_END


def describe_quiet_hours(tz: Optional[ZoneInfo]) -> str:
    if tz is None:
        return "disabled"
    return f"{QUIET_HOUR_START}:00-{QUIET_HOUR_END}:00 {tz.key}"


__all__ = ["QUIET_HOUR_END", "QUIET_HOUR_START", "describe_quiet_hours", "is_quiet_hours", "should_notify"]
