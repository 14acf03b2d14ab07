"""Interactive Telegram bot handlers.

Behavior:
- /start : Greets the user and asks for their state (store location).
- /menu, /help, /mystatus : Main menu, usage help, subscription overview.
- Inline buttons : browse products by category, subscribe/unsubscribe,
  notification frequency, change state, check stock now.
- Free text that looks like a state name sets the user's location.

All state lives in the SubscriptionRegistry owned by the StockMonitor stored
in `application.bot_data["monitor"]`; these handlers only render text and
keyboards around the registry and monitor entry points.
"""
from __future__ import annotations

import html
import logging
import re
from typing import Dict, List, Optional, Tuple

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update, User
from telegram.constants import ParseMode
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from monitor import ManualCheckStatus, StockMonitor
from products import KNOWN_PRODUCTS, categories, category_emoji, display_name, products_in
from stock_checker import Item
from subscriptions import NotificationFrequency, SubscribeResult, Subscription

logger = logging.getLogger("bot")

PRESET_STATES: Dict[str, str] = {
    "gujarat": "Gujarat",
    "maharashtra": "Maharashtra",
    "punjab": "Punjab",
    "tamil_nadu": "Tamil Nadu",
    "karnataka": "Karnataka",
    "west_bengal": "West Bengal",
}

STATE_NAME_REGEX = re.compile(r"^[a-z _]{3,25}$")


# ---------- Rendering helpers ----------
def is_valid_state_name(text: str) -> bool:
    return bool(STATE_NAME_REGEX.fullmatch(text.strip().lower()))


def normalize_state(text: str) -> Tuple[str, str]:
    """Return (store_code, label) for a preset code or a typed state name."""
    code = text.strip().lower().replace(" ", "_")
    label = PRESET_STATES.get(code) or code.replace("_", " ").title()
    return code, label


def user_display_name(user: Optional[User]) -> str:
    if user is None:
        return ""
    if user.username:
        return user.username
    return " ".join(p for p in (user.first_name, user.last_name) if p)


def _button(text: str, data: str) -> List[InlineKeyboardButton]:
    return [InlineKeyboardButton(text, callback_data=data)]


def location_keyboard(back: bool = False) -> InlineKeyboardMarkup:
    codes = list(PRESET_STATES)
    rows = [
        [InlineKeyboardButton(f"🇮🇳 {PRESET_STATES[c]}", callback_data=f"location_{c}") for c in codes[i:i + 2]]
        for i in range(0, len(codes), 2)
    ]
    rows.append(_button("✏️ Enter Custom State", "location_custom"))
    if back:
        rows.append(_button("🏠 Back to Menu", "main_menu"))
    return InlineKeyboardMarkup(rows)


def main_menu_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [
            [
                InlineKeyboardButton("🛍️ Browse Products", callback_data="browse_products"),
                InlineKeyboardButton("📊 My Status", callback_data="my_status"),
            ],
            _button("⚙️ Manage Subscriptions", "manage_subscriptions"),
            [
                InlineKeyboardButton("🔍 Check Stock Now", callback_data="check_stock_now"),
                InlineKeyboardButton("🔔 Notification Settings", callback_data="notification_settings"),
            ],
            [
                InlineKeyboardButton("📍 Change State", callback_data="change_location"),
                InlineKeyboardButton("❓ Help", callback_data="help"),
            ],
        ]
    )


def menu_only_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([_button("🏠 Main Menu", "main_menu")])


WELCOME_TEXT = (
    "🎉 <b>Welcome to Amul Protein Stock Notifier!</b>\n\n"
    "I'll tell you when your favourite Amul protein products are back in stock.\n\n"
    "<b>📍 First, choose your state or type its name:</b>"
)

HELP_TEXT = (
    "<b>📚 How to use this bot:</b>\n\n"
    "<b>🛍️ Browse Products:</b> pick a category and subscribe to products.\n"
    "<b>🔍 Check Stock Now:</b> check your subscribed products right away.\n"
    "<b>📊 My Status:</b> see and manage your subscriptions.\n"
    "<b>🔔 Notification Settings:</b> choose how often you are notified (every check to every 3 days).\n\n"
    "<b>💡 Commands:</b>\n"
    "• /start - Welcome message\n"
    "• /menu - Main menu\n"
    "• /mystatus - Your subscription status\n"
    "• /help - This help message\n\n"
    "No notifications are sent during quiet hours (00:00-07:00)."
)


def stock_badge(monitor: StockMonitor, sku: str) -> str:
    record = monitor.stock_state.get(sku)
    if record is None:
        return "🔍"
    return "✅" if record.in_stock else "❌"


def render_status(sub: Optional[Subscription], monitor: StockMonitor) -> str:
    if sub is None or not sub.items:
        return (
            "<b>📊 Your Subscription Status</b>\n\n"
            "❌ You don't have any active subscriptions yet.\n\n"
            "Browse our products and subscribe to get notified when they're back in stock!"
        )
    frequency = sub.frequency.label if sub.frequency else NotificationFrequency.IMMEDIATE.label
    lines = [
        "<b>📊 Your Subscription Status</b>\n",
        f"<b>👤 User:</b> {html.escape(sub.display_name or str(sub.recipient_id))}",
        f"<b>📍 Location:</b> {html.escape(sub.location or 'Not set')}",
        f"<b>🔔 Frequency:</b> {frequency}",
        f"<b>📅 Member since:</b> {sub.created_at:%b %d, %Y}",
        f"<b>🔔 Active subscriptions:</b> {len(sub.items)}\n",
        "<b>📋 Your subscribed products:</b>",
    ]
    entries = sorted(
        f"{stock_badge(monitor, sku)} {html.escape(display_name(sku, 40))}" for sku in sub.items
    )
    lines.extend(f"{i}. {entry}" for i, entry in enumerate(entries, 1))
    lines.append("\n<b>Legend:</b> ✅ In Stock | ❌ Out of Stock | 🔍 Checking")
    return "\n".join(lines)


def render_stock_report(results: Dict[str, Optional[Item]]) -> str:
    if not results:
        return "❌ Could not retrieve stock information at this time. Please try again later."
    in_stock = 0
    lines = ["📊 <b>Current Stock Status</b>\n"]
    for sku in sorted(results, key=display_name):
        item = results[sku]
        name = html.escape(item.name if item else display_name(sku))
        if item is not None and item.available:
            in_stock += 1
            qty = item.inventory_quantity if item.inventory_quantity is not None else "?"
            lines.append(f"• ✅ {name}\n  <b>IN STOCK ({qty} available)</b>")
        elif item is None:
            lines.append(f"• ❌ {name}\n  <b>NOT LISTED</b>")
        else:
            lines.append(f"• ❌ {name}\n  <b>OUT OF STOCK</b>")
    lines.append(
        f"\n<b>📈 Summary:</b>\n✅ In Stock: {in_stock} products\n❌ Out of Stock: {len(results) - in_stock} products"
    )
    return "\n".join(lines)


async def send_message(context: ContextTypes.DEFAULT_TYPE, chat_id: int, text: str,
                       keyboard: Optional[InlineKeyboardMarkup] = None) -> None:
    try:
        await context.bot.send_message(
            chat_id, text, parse_mode=ParseMode.HTML, disable_web_page_preview=True, reply_markup=keyboard
        )
    except TelegramError as e:
        logger.error("Error sending message to user %s: %s", chat_id, e)


def _monitor(context: ContextTypes.DEFAULT_TYPE) -> StockMonitor:
    return context.bot_data["monitor"]


# ---------- Screens ----------
async def show_main_menu(context: ContextTypes.DEFAULT_TYPE, chat_id: int) -> None:
    await send_message(context, chat_id, "<b>🏠 Main Menu</b>\n\nChoose what you'd like to do:", main_menu_keyboard())


async def show_status(context: ContextTypes.DEFAULT_TYPE, chat_id: int) -> None:
    monitor = _monitor(context)
    sub = await monitor.registry.get(chat_id)
    keyboard = InlineKeyboardMarkup(
        [_button("⚙️ Manage Subscriptions", "manage_subscriptions"), _button("🏠 Main Menu", "main_menu")]
    )
    await send_message(context, chat_id, render_status(sub, monitor), keyboard)


async def show_categories(context: ContextTypes.DEFAULT_TYPE, chat_id: int) -> None:
    rows = [
        _button(f"{category_emoji(name)} {name} ({count})", f"category_{name}")
        for name, count in sorted(categories().items())
    ]
    rows.append(_button("🏠 Main Menu", "main_menu"))
    await send_message(
        context, chat_id, "<b>🛍️ Product Categories</b>\n\nChoose a category to browse:", InlineKeyboardMarkup(rows)
    )


async def show_category(context: ContextTypes.DEFAULT_TYPE, chat_id: int, category: str) -> None:
    rows = [_button(display_name(p.sku, 50), f"product_{p.sku}") for p in products_in(category)]
    rows.append(_button("⬅️ Back to Categories", "browse_products"))
    text = f"<b>{category_emoji(category)} {html.escape(category)} Products</b>\n\nSelect a product to view details:"
    await send_message(context, chat_id, text, InlineKeyboardMarkup(rows))


async def show_product(context: ContextTypes.DEFAULT_TYPE, chat_id: int, sku: str) -> None:
    product = KNOWN_PRODUCTS.get(sku)
    if product is None:
        await send_message(context, chat_id, "❌ Product not found.")
        return
    monitor = _monitor(context)
    sub = await monitor.registry.get(chat_id)
    subscribed = bool(sub and sku in sub.items)
    record = monitor.stock_state.get(sku)
    if record is None:
        stock = "🔍 Checking..."
    elif record.in_stock:
        qty = record.last_seen.inventory_quantity if record.last_seen else None
        stock = f"✅ In Stock ({qty if qty is not None else '?'} available)"
    else:
        stock = "❌ Out of Stock"
    text = (
        f"<b>{category_emoji(product.category)} Product Details</b>\n\n"
        f"<b>📝 Name:</b> {html.escape(product.name)}\n"
        f"<b>🏷️ SKU:</b> <code>{sku}</code>\n"
        f"<b>📂 Category:</b> {html.escape(product.category)}\n"
        f"<b>📊 Stock Status:</b> {stock}\n"
        f"<b>🔔 Notification Status:</b> {'✅ Subscribed' if subscribed else '❌ Not Subscribed'}"
    )
    action = _button("🔕 Unsubscribe", f"unsubscribe_{sku}") if subscribed else _button("🔔 Subscribe", f"subscribe_{sku}")
    keyboard = InlineKeyboardMarkup(
        [action, [InlineKeyboardButton("⬅️ Back", callback_data=f"category_{product.category}"),
                  InlineKeyboardButton("🏠 Main Menu", callback_data="main_menu")]]
    )
    await send_message(context, chat_id, text, keyboard)


async def show_manage(context: ContextTypes.DEFAULT_TYPE, chat_id: int) -> None:
    sub = await _monitor(context).registry.get(chat_id)
    if sub is None or not sub.items:
        await send_message(context, chat_id, "❌ You don't have any subscriptions to manage.", menu_only_keyboard())
        return
    rows = [_button(display_name(sku, 45), f"product_{sku}") for sku in sorted(sub.items, key=display_name)]
    rows.append(_button("🏠 Main Menu", "main_menu"))
    await send_message(
        context, chat_id, "<b>⚙️ Manage Subscriptions</b>\n\nSelect a product to unsubscribe:", InlineKeyboardMarkup(rows)
    )


async def show_frequency_settings(context: ContextTypes.DEFAULT_TYPE, chat_id: int) -> None:
    sub = await _monitor(context).registry.get(chat_id)
    current = sub.frequency if sub and sub.frequency else None
    rows = [
        _button(f"{'✅' if freq is current else '⭕'} {freq.label}", f"freq_{freq.value}")
        for freq in NotificationFrequency
    ]
    rows.append(_button("🏠 Back to Menu", "main_menu"))
    label = current.label if current else NotificationFrequency.IMMEDIATE.label
    text = f"🔔 <b>Notification Settings</b>\n\n<b>Current Frequency:</b> {label}\n\nChoose how often to be notified:"
    await send_message(context, chat_id, text, InlineKeyboardMarkup(rows))


# ---------- Actions ----------
async def set_location(context: ContextTypes.DEFAULT_TYPE, chat_id: int, user: Optional[User], raw: str) -> None:
    if raw == "custom":
        await send_message(
            context,
            chat_id,
            "✏️ <b>Enter Custom State</b>\n\nPlease type your state name (e.g. \"rajasthan\", \"uttar pradesh\").",
            menu_only_keyboard(),
        )
        return
    code, label = normalize_state(raw)
    await _monitor(context).registry.set_location(chat_id, code, label, user_display_name(user))
    keyboard = InlineKeyboardMarkup(
        [[InlineKeyboardButton("🛍️ Browse Products", callback_data="browse_products"),
          InlineKeyboardButton("📊 My Status", callback_data="my_status")],
         _button("🏠 Main Menu", "main_menu")]
    )
    await send_message(context, chat_id, f"✅ <b>State Set Successfully!</b>\n\n<b>📍 Your State:</b> {html.escape(label)}",
                       keyboard)


async def subscribe_product(context: ContextTypes.DEFAULT_TYPE, chat_id: int, user: Optional[User], sku: str) -> None:
    if sku not in KNOWN_PRODUCTS:
        await send_message(context, chat_id, "❌ Product not found.")
        return
    result = await _monitor(context).registry.subscribe(chat_id, sku, user_display_name(user))
    if result is SubscribeResult.LOCATION_REQUIRED:
        await send_message(
            context, chat_id, "⚠️ <b>Location Required</b>\n\nPlease set your state first.\n\n<b>📍 Select your state:</b>",
            location_keyboard(),
        )
    elif result is SubscribeResult.ALREADY_SUBSCRIBED:
        await send_message(context, chat_id, "⚠️ You're already subscribed to this product!")
    else:
        await send_message(
            context, chat_id,
            f"✅ <b>Successfully Subscribed!</b>\n\n<b>Product:</b> {html.escape(display_name(sku))}\n"
            "🔔 You'll be notified when this product is back in stock!",
            InlineKeyboardMarkup([_button("📊 My Status", "my_status"), _button("🏠 Main Menu", "main_menu")]),
        )


async def unsubscribe_product(context: ContextTypes.DEFAULT_TYPE, chat_id: int, sku: str) -> None:
    result = await _monitor(context).registry.unsubscribe(chat_id, sku)
    if result is SubscribeResult.NOT_SUBSCRIBED:
        await send_message(context, chat_id, "⚠️ You're not subscribed to this product!")
        return
    await send_message(
        context, chat_id,
        f"🔕 <b>Successfully Unsubscribed!</b>\n\n<b>Product:</b> {html.escape(display_name(sku))}",
        InlineKeyboardMarkup([_button("⚙️ Manage Subscriptions", "manage_subscriptions"), _button("🏠 Main Menu", "main_menu")]),
    )


async def set_frequency(context: ContextTypes.DEFAULT_TYPE, chat_id: int, code: str) -> None:
    frequency = NotificationFrequency.parse(code)
    if frequency is None:
        await send_message(context, chat_id, "❌ Invalid frequency selected.")
        return
    await _monitor(context).registry.set_frequency(chat_id, frequency)
    await send_message(
        context, chat_id, f"✅ <b>Notification Frequency Updated!</b>\n\n<b>🔔 New Setting:</b> {frequency.label}",
        menu_only_keyboard(),
    )


async def check_stock_now(context: ContextTypes.DEFAULT_TYPE, chat_id: int) -> None:
    async def report(recipient_id: int, results: Dict[str, Optional[Item]]) -> None:
        keyboard = InlineKeyboardMarkup(
            [[InlineKeyboardButton("🔄 Check Again", callback_data="check_stock_now"),
              InlineKeyboardButton("🏠 Main Menu", callback_data="main_menu")]]
        )
        await send_message(context, recipient_id, render_stock_report(results), keyboard)

    check = await _monitor(context).request_manual_check(chat_id, report)
    if check.status is ManualCheckStatus.NO_SUBSCRIPTIONS:
        await send_message(context, chat_id, "❌ You don't have any subscriptions to check. Subscribe to some products first.")
    elif check.status is ManualCheckStatus.COOLDOWN:
        seconds = int(check.remaining.total_seconds()) + 1
        await send_message(context, chat_id, f"⏰ Please wait {seconds} seconds before checking stock again.")
    else:
        await send_message(context, chat_id, "🔍 <b>Checking Stock Now...</b>\n\nI'll send the results in a moment.")


# ---------- Handlers ----------
async def start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    chat_id = update.effective_chat.id
    sub = await _monitor(context).registry.get(chat_id)
    if sub is not None and sub.store_code:
        await show_main_menu(context, chat_id)
        return
    await send_message(context, chat_id, WELCOME_TEXT, location_keyboard())


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await send_message(context, update.effective_chat.id, HELP_TEXT, menu_only_keyboard())


async def menu_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await show_main_menu(context, update.effective_chat.id)


async def mystatus_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await show_status(context, update.effective_chat.id)


async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message:
        return
    text = (update.message.text or "").strip()
    chat_id = update.effective_chat.id
    logger.info("Received message from %s: %s", chat_id, text)
    if is_valid_state_name(text):
        await set_location(context, chat_id, update.effective_user, text)
    else:
        await show_main_menu(context, chat_id)


async def handle_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if query is None:
        return
    await query.answer()
    data = query.data or ""
    chat_id = update.effective_chat.id
    user = update.effective_user
    logger.info("Callback from %s: %s", chat_id, data)

    screens = {
        "main_menu": show_main_menu,
        "browse_products": show_categories,
        "my_status": show_status,
        "manage_subscriptions": show_manage,
        "notification_settings": show_frequency_settings,
        "check_stock_now": check_stock_now,
    }
    if data in screens:
        await screens[data](context, chat_id)
    elif data == "help":
        await send_message(context, chat_id, HELP_TEXT, menu_only_keyboard())
    elif data == "change_location":
        sub = await _monitor(context).registry.get(chat_id)
        current = html.escape(sub.location) if sub and sub.location else "Not set"
        await send_message(context, chat_id, f"📍 <b>Change Your State</b>\n\n<b>Current State:</b> {current}",
                           location_keyboard(back=True))
    elif data.startswith("freq_"):
        await set_frequency(context, chat_id, data[len("freq_"):])
    elif data.startswith("location_"):
        await set_location(context, chat_id, user, data[len("location_"):])
    elif data.startswith("category_"):
        await show_category(context, chat_id, data[len("category_"):])
    elif data.startswith("product_"):
        await show_product(context, chat_id, data[len("product_"):])
    elif data.startswith("subscribe_"):
        await subscribe_product(context, chat_id, user, data[len("subscribe_"):])
    elif data.startswith("unsubscribe_"):
        await unsubscribe_product(context, chat_id, data[len("unsubscribe_"):])
    else:
        await show_main_menu(context, chat_id)


async def on_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error("Unhandled error while processing %s", update, exc_info=context.error)


# ---------- App Builder ----------
def build_application(token: str, post_init=None, post_shutdown=None) -> Application:
    builder = ApplicationBuilder().token(token)
    if post_init is not None:
        builder = builder.post_init(post_init)
    if post_shutdown is not None:
        builder = builder.post_shutdown(post_shutdown)
    app = builder.build()

    app.add_handler(CommandHandler("start", start))
    app.add_handler(CommandHandler("help", help_command))
    app.add_handler(CommandHandler("menu", menu_command))
    app.add_handler(CommandHandler("mystatus", mystatus_command))
    app.add_handler(CallbackQueryHandler(handle_callback))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text))
    app.add_error_handler(on_error)
    return app


__all__ = ["build_application", "is_valid_state_name", "normalize_state", "render_status", "render_stock_report"]
