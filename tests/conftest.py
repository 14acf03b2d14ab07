"""
Pytest configuration and fixtures for testing.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from stock_checker import Item
from subscriptions import SubscriptionRegistry


class FakeClock:
    """Callable clock returning a controllable UTC instant."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_item(item_id="A1", available=True, name=None, quantity=10, alias="a1-alias"):
    return Item(
        item_id=item_id,
        name=name or f"Product {item_id}",
        category="protein",
        alias=alias,
        available=available,
        inventory_quantity=quantity,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(tmp_path, clock):
    """Registry persisted into a temporary directory."""
    return SubscriptionRegistry(tmp_path / "subscriptions.json", clock=clock)


@pytest.fixture
def gateway():
    """Messaging gateway whose sends always succeed."""
    gw = AsyncMock()
    gw.send = AsyncMock(return_value=True)
    return gw


@pytest.fixture
def sample_payload():
    return {
        "data": [
            {
                "_id": "6636020d5c0420e92d79ebdd",
                "sku": "HPPCP01_02",
                "name": "Amul High Protein Paneer, 400 g | Pack of 2",
                "alias": "amul-high-protein-paneer-400-g-or-pack-of-2",
                "categories": ["protein"],
                "available": 1,
                "inventory_quantity": 1079,
            },
            {
                "_id": "6636020d5c0420e92d79ebde",
                "sku": "WPCCP01_01",
                "name": "Amul Whey Protein, 32 g | Pack of 30 Sachets",
                "alias": "amul-whey-protein-32-g-or-pack-of-30-sachets",
                "categories": ["protein"],
                "available": 0,
                "inventory_quantity": 0,
            },
        ]
    }
