"""Stock checking logic.

This module parses the Amul product list JSON response and turns each catalog
snapshot into availability-change events for the tracked items.

The JSON structure (simplified) expected:
{
    "data": [
        {
            "_id": "6636020d5c0420e92d79ebdd",
            "sku": "HPPCP01_02",
            "name": "Product Name",
            "alias": "amul-high-protein-paneer-400-g-or-pack-of-2",
            "categories": ["protein"],
            "available": 1,                # 1 / 0 (sometimes string)
            "inventory_quantity": 1079,
            ... other fields ...
        }
    ]
}

The catalog only lists actively published items, so an item missing from a
snapshot is treated as unavailable.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class PayloadError(ValueError):
    """Raised when a catalog payload does not carry a `data` list."""


@dataclass(frozen=True)
class Item:
    item_id: str
    name: str
    category: str = ""
    alias: str = ""
    available: bool = False
    inventory_quantity: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def human_status(self) -> str:
        return "IN STOCK" if self.available else "OUT OF STOCK"


@dataclass
class StockRecord:
    item_id: str
    in_stock: bool
    last_seen: Optional[Item] = None


class EventKind(enum.Enum):
    BECAME_AVAILABLE = "became_available"
    WENT_UNAVAILABLE = "went_unavailable"


@dataclass(frozen=True)
class StockEvent:
    kind: EventKind
    item_id: str
    item: Optional[Item] = None
    # True when the event was inferred from the item missing in the snapshot.
    assumed: bool = False

    @property
    def name(self) -> str:
        return self.item.name if self.item else self.item_id


def _normalize_available(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    try:
        return int(float(str(value).strip())) == 1
    except (TypeError, ValueError):
        return False


def _parse_quantity(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (ValueError, TypeError):
        return None


def parse_products(payload: Mapping[str, Any]) -> List[Item]:
    """Parse the JSON payload into Items.

    Raises PayloadError when the payload has no `data` list; malformed entries
    inside the list are skipped.
    """
    data = payload.get("data") if isinstance(payload, Mapping) else None
    if not isinstance(data, list):
        raise PayloadError(f"payload missing 'data' list; got {type(data).__name__}")

    items: List[Item] = []
    for obj in data:
        if not isinstance(obj, dict):
            continue
        item_id = obj.get("sku") or obj.get("_id")
        if not item_id:
            logger.debug("Skipping catalog entry without id: %s", obj.get("name"))
            continue
        categories = obj.get("categories")
        category = str(categories[0]) if isinstance(categories, list) and categories else ""
        items.append(
            Item(
                item_id=str(item_id),
                name=str(obj.get("name", "Unnamed Product")),
                category=category,
                alias=str(obj.get("alias") or ""),
                available=_normalize_available(obj.get("available")),
                inventory_quantity=_parse_quantity(obj.get("inventory_quantity")),
                raw=obj,
            )
        )
    return items


def diff_snapshot(
    snapshot: Iterable[Item],
    target_ids: Iterable[str],
    prior: Mapping[str, bool],
    last_seen: Optional[Mapping[str, Item]] = None,
) -> Tuple[List[StockEvent], Dict[str, bool]]:
    """Compare a snapshot with prior availability for every target id.

    Returns (events, new_states); new_states holds the availability to record
    for every target id, present in the snapshot or not.
    """
    by_id = {item.item_id: item for item in snapshot}
    last_seen = last_seen or {}
    events: List[StockEvent] = []
    new_states: Dict[str, bool] = {}

    for item_id in sorted(set(target_ids)):
        previous = prior.get(item_id)
        item = by_id.get(item_id)
        if item is not None:
            now_available = item.available
            logger.debug("Processing %s (SKU: %s): Status=%s", item.name, item_id, item.human_status())
            if now_available and not previous:
                events.append(StockEvent(EventKind.BECAME_AVAILABLE, item_id, item))
            elif previous and not now_available:
                events.append(StockEvent(EventKind.WENT_UNAVAILABLE, item_id, item))
            new_states[item_id] = now_available
            continue

        if previous:
            logger.warning("Tracked SKU %s was NOT found in API response. Assuming OUT OF STOCK.", item_id)
            events.append(StockEvent(EventKind.WENT_UNAVAILABLE, item_id, last_seen.get(item_id), assumed=True))
        else:
            logger.debug("Tracked SKU %s not in API response; recording OUT OF STOCK.", item_id)
        new_states[item_id] = False

    return events, new_states


class StockState:
    """Tracks last known stock status per item to suppress duplicate alerts.

    Only `apply` writes records; items that drop out of the target set keep
    their stale record.
    """

    def __init__(self, initial: Optional[Mapping[str, bool]] = None) -> None:
        self._records: Dict[str, StockRecord] = {
            item_id: StockRecord(item_id, bool(in_stock)) for item_id, in_stock in (initial or {}).items()
        }

    def prior(self) -> Dict[str, bool]:
        return {item_id: rec.in_stock for item_id, rec in self._records.items()}

    def get(self, item_id: str) -> Optional[StockRecord]:
        return self._records.get(item_id)

    def apply(self, snapshot: List[Item], target_ids: Set[str]) -> List[StockEvent]:
        last_seen = {i: rec.last_seen for i, rec in self._records.items() if rec.last_seen is not None}
        events, new_states = diff_snapshot(snapshot, target_ids, self.prior(), last_seen)
        by_id = {item.item_id: item for item in snapshot}
        for item_id, in_stock in new_states.items():
            record = self._records.get(item_id)
            if record is None:
                record = self._records[item_id] = StockRecord(item_id, in_stock)
            record.in_stock = in_stock
            if item_id in by_id:
                record.last_seen = by_id[item_id]
        return events

    def snapshot(self) -> Dict[str, bool]:
        return self.prior()


__all__ = [
    "EventKind",
    "Item",
    "PayloadError",
    "StockEvent",
    "StockRecord",
    "StockState",
    "diff_snapshot",
    "parse_products",
]
