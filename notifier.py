"""Telegram messaging gateway.

Uses python-telegram-bot >= 20 (async based). `send` reports success only when
Telegram returned the sent message; API and transport errors are logged and
reported as a failed attempt so callers can retry.
"""
from __future__ import annotations

import html
import logging
from typing import Iterable, Optional, Union

from telegram import Bot, InlineKeyboardMarkup
from telegram.constants import ParseMode
from telegram.error import TelegramError

from stock_checker import EventKind, Item, StockEvent

logger = logging.getLogger(__name__)

ChatId = Union[int, str]


class TelegramNotifier:
    def __init__(self, bot: Optional[Bot] = None, token: Optional[str] = None) -> None:
        if bot is None and token:
            bot = Bot(token)
        if bot is None:
            logger.warning("No Telegram bot configured; notifications disabled.")
        self._bot = bot

    async def send(self, chat_id: ChatId, text: str, reply_markup: Optional[InlineKeyboardMarkup] = None) -> bool:
        if self._bot is None:
            logger.debug("Notifier inactive; skipping send to %s", chat_id)
            return False
        try:
            message = await self._bot.send_message(
                chat_id=chat_id,
                text=text,
                parse_mode=ParseMode.HTML,
                disable_web_page_preview=True,
                reply_markup=reply_markup,
            )
        except TelegramError as e:
            logger.error("Error sending Telegram message to %s: %s", chat_id, e)
            return False
        return message is not None


def product_link(item: Optional[Item], product_base_url: str) -> str:
    if item is None or not item.alias:
        return ""
    return f'\n\n🔗 <a href="{html.escape(product_base_url + item.alias)}">View on Amul Shop</a>'


def render_event(event: StockEvent, product_base_url: str) -> str:
    name = html.escape(event.name)
    sku = html.escape(event.item_id)
    if event.kind is EventKind.BECAME_AVAILABLE:
        qty = event.item.inventory_quantity if event.item and event.item.inventory_quantity is not None else "unknown"
        return (
            "🎉 <b>Stock Alert!</b>\n\n"
            f"<b>{name}</b> is now <b>IN STOCK!</b>\n\n"
            f"• <b>Quantity Available:</b> {qty}\n"
            f"• <b>SKU:</b> <code>{sku}</code>\n\n"
            "🛒 <b>Order now before it runs out!</b>"
            f"{product_link(event.item, product_base_url)}"
        )
    if event.assumed:
        return (
            "ℹ️ <b>Stock Update (Not Found)</b>\n\n"
            f"Product: <b>{name}</b>\n"
            "Status: <b>Assumed OUT OF STOCK</b> (not in API response)\n"
            f"SKU: <code>{sku}</code>"
        )
    return (
        "😔 <b>Stock Update</b>\n\n"
        f"<b>{name}</b> is now <b>OUT OF STOCK</b>\n\n"
        f"<b>SKU:</b> <code>{sku}</code>\n\n"
        "📬 You'll be notified as soon as it's back in stock."
    )


def render_in_stock_summary(items: Iterable[Item], product_base_url: str) -> str:
    lines = ["<b>Initial Stock Alert!</b>\n\nThese monitored products are currently IN STOCK:"]
    for item in items:
        qty = item.inventory_quantity if item.inventory_quantity is not None else "?"
        link = ""
        if item.alias:
            link = f' <a href="{html.escape(product_base_url + item.alias)}">🔗</a>'
        lines.append(f"• <b>{html.escape(item.name)}</b> (SKU: {html.escape(item.item_id)}) - Qty: {qty}{link}")
    return "\n".join(lines)


__all__ = ["TelegramNotifier", "product_link", "render_event", "render_in_stock_summary"]
