"""Poll scheduler: periodic poll-and-notify cycles and on-demand stock checks.

Data flow of one cycle: union of subscribed ids -> catalog snapshot through
the rate-limited session -> StockState diff -> Dispatcher fan-out.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Set

from dispatcher import Dispatcher
from fetcher import CatalogClient, CatalogError, SessionError
from notifier import ChatId, render_in_stock_summary
from persistent_state import PersistentStockState
from stock_checker import Item, StockEvent, StockState
from subscriptions import SubscriptionRegistry, utcnow
from throttle import describe_quiet_hours

logger = logging.getLogger(__name__)

StockReport = Callable[[int, Dict[str, Optional[Item]]], Awaitable[None]]


class ManualCheckStatus(enum.Enum):
    STARTED = "started"
    NO_SUBSCRIPTIONS = "no_subscriptions"
    COOLDOWN = "cooldown"


@dataclass(frozen=True)
class ManualCheck:
    status: ManualCheckStatus
    remaining: timedelta = timedelta(0)


class StockMonitor:
    """Runs poll-and-notify cycles and on-demand checks.

    Cycles never overlap; a trigger that arrives while one is running is skipped.
    """

    def __init__(
        self,
        catalog: CatalogClient,
        registry: SubscriptionRegistry,
        dispatcher: Dispatcher,
        stock_state: Optional[StockState] = None,
        stock_store: Optional[PersistentStockState] = None,
        default_store: str = "gujarat",
        operator_chat_id: Optional[ChatId] = None,
        monitored_skus: FrozenSet[str] = frozenset(),
        manual_check_cooldown: timedelta = timedelta(minutes=2),
        product_base_url: str = "",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.catalog = catalog
        self.registry = registry
        self.dispatcher = dispatcher
        self.stock_store = stock_store
        if stock_state is None:
            stock_state = StockState(stock_store.load() if stock_store else None)
        self.stock_state = stock_state
        self.default_store = default_store
        self.operator_chat_id = operator_chat_id
        self.monitored_skus = frozenset(monitored_skus)
        self.manual_check_cooldown = manual_check_cooldown
        self.product_base_url = product_base_url
        self._clock = clock
        self._cycle_lock = asyncio.Lock()
        self._cycles_completed = 0
        self._tasks: Set[asyncio.Task] = set()

    async def start(self) -> None:
        """Establish the storefront session; a failure here is fatal."""
        await self.catalog.sessions.ensure_session(self.default_store)
        await self.send_startup_notice()

    async def send_startup_notice(self) -> None:
        if not self.operator_chat_id:
            return
        tracked = await self.target_ids()
        text = (
            f"Amul Stock Notifier started successfully! Monitoring {len(tracked)} SKUs. "
            f"Quiet hours: {describe_quiet_hours(self.dispatcher.tz)}."
        )
        if not await self.dispatcher.deliver(self.operator_chat_id, text, "startup notice"):
            logger.warning("Startup notice was not delivered.")

    async def target_ids(self) -> Set[str]:
        return await self.registry.get_all_subscribed_item_ids() | set(self.monitored_skus)

    async def run_cycle(self) -> Optional[List[StockEvent]]:
        """One poll-and-notify cycle. Returns the emitted events, or None if aborted."""
        if self._cycle_lock.locked():
            logger.warning("Previous stock check still running; skipping this trigger.")
            return None
        async with self._cycle_lock:
            targets = await self.target_ids()
            if not targets:
                logger.info("No subscribed products; nothing to check.")
                return []
            logger.info("Checking stock for %d monitored products...", len(targets))
            try:
                snapshot = await self.catalog.fetch_snapshot(self.default_store)
            except (CatalogError, SessionError) as e:
                logger.warning("Stock check aborted: %s", e)
                return None

            events = self.stock_state.apply(snapshot, targets)
            if self.stock_store is not None:
                await asyncio.to_thread(self.stock_store.save, self.stock_state.snapshot())

            for event in events:
                logger.info("STOCK UPDATE: %s (SKU: %s) %s", event.name, event.item_id, event.kind.value)
                reached = await self.dispatcher.dispatch(event)
                if self._operator_wants(event, reached):
                    await self.dispatcher.deliver(
                        self.operator_chat_id, self.dispatcher.render(event), f"{event.kind.value} for {event.item_id}"
                    )

            if self._cycles_completed == 0:
                await self._send_initial_summary(snapshot, targets)
            self._cycles_completed += 1
            logger.info("Cycle complete: products=%d tracked=%d events=%d", len(snapshot), len(targets), len(events))
            return events

    def _operator_wants(self, event: StockEvent, reached: List[int]) -> bool:
        if not self.operator_chat_id or event.item_id not in self.monitored_skus:
            return False
        # The operator chat may also subscribe to the item itself.
        return str(self.operator_chat_id) not in {str(rid) for rid in reached}

    async def _send_initial_summary(self, snapshot: List[Item], targets: Set[str]) -> None:
        if not self.operator_chat_id:
            return
        in_stock = sorted((i for i in snapshot if i.item_id in targets and i.available), key=lambda i: i.name)
        if not in_stock:
            logger.info("No monitored products found in stock at startup.")
            return
        text = render_in_stock_summary(in_stock, self.product_base_url)
        await self.dispatcher.deliver(self.operator_chat_id, text, "initial stock summary")

    async def check_items(self, item_ids: Iterable[str], store_code: Optional[str] = None) -> Dict[str, Optional[Item]]:
        """Read current availability for item_ids without touching stock state.

        Ids missing from the catalog map to None.
        """
        snapshot = await self.catalog.fetch_snapshot(store_code or self.default_store)
        by_id = {item.item_id: item for item in snapshot}
        return {item_id: by_id.get(item_id) for item_id in item_ids}

    async def request_manual_check(self, recipient_id: int, report: StockReport) -> ManualCheck:
        """Start a background check of the recipient's items.

        `report` receives the results once the check finishes; an empty result
        means the check failed.
        """
        sub = await self.registry.get(recipient_id)
        if sub is None or not sub.items:
            return ManualCheck(ManualCheckStatus.NO_SUBSCRIPTIONS)
        claimed, remaining = await self.registry.claim_manual_check(
            recipient_id, self._clock(), self.manual_check_cooldown
        )
        if not claimed:
            return ManualCheck(ManualCheckStatus.COOLDOWN, remaining)

        task = asyncio.create_task(
            self._run_manual_check(recipient_id, sorted(sub.items), sub.store_code, report)
        )
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return ManualCheck(ManualCheckStatus.STARTED)

    async def _run_manual_check(
        self, recipient_id: int, item_ids: List[str], store_code: Optional[str], report: StockReport
    ) -> None:
        try:
            results = await self.check_items(item_ids, store_code)
        except (CatalogError, SessionError) as e:
            logger.warning("Manual stock check for user %s failed: %s", recipient_id, e)
            results = {}
        await report(recipient_id, results)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Manual stock check task failed", exc_info=task.exception())

    def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()


__all__ = ["ManualCheck", "ManualCheckStatus", "StockMonitor", "StockReport"]
