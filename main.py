"""Entrypoint for the stock notifier.

Features:
- Periodically (POLL_INTERVAL, default 900s) reads the catalog through the
  rate-limited storefront session
- Diffs the tracked items against their last known availability
- Notifies subscribed users over Telegram, honouring quiet hours and each
  user's notification frequency
- Serves the interactive bot (see bot_main.py) from the same event loop

Configuration is read from environment variables, see settings.py.

Run:
  python main.py
"""
from __future__ import annotations

import functools
import logging
from datetime import timedelta

from telegram.ext import Application, ContextTypes

from bot_main import build_application
from dispatcher import Dispatcher
from fetcher import CatalogClient, SessionError, SessionManager
from monitor import StockMonitor
from notifier import TelegramNotifier, render_event
from persistent_state import PersistentStockState
from settings import ConfigError, Settings
from subscriptions import SubscriptionRegistry
from throttle import describe_quiet_hours

logger = logging.getLogger("main")


# ---------- App Runner ----------
async def poll_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    monitor: StockMonitor = context.bot_data["monitor"]
    await monitor.run_cycle()


async def on_startup(app: Application) -> None:
    monitor: StockMonitor = app.bot_data["monitor"]
    await monitor.start()
    logger.info("Bot started. Storefront session ready; interactive handlers registered.")


async def on_shutdown(app: Application) -> None:
    monitor: StockMonitor = app.bot_data["monitor"]
    monitor.shutdown()


def build_monitor(settings: Settings, notifier: TelegramNotifier) -> StockMonitor:
    sessions = SessionManager(
        base_url=settings.api_base_url,
        refresh_margin=timedelta(seconds=settings.session_refresh_margin),
        fallback_ttl=timedelta(seconds=settings.session_fallback_ttl),
        min_interval=settings.min_request_interval,
        timeout=settings.fetch_timeout,
    )
    registry = SubscriptionRegistry(settings.subscriptions_file)
    dispatcher = Dispatcher(
        registry,
        notifier,
        render=functools.partial(render_event, product_base_url=settings.product_base_url),
        tz=settings.timezone,
        attempts=settings.notify_attempts,
        retry_delay=settings.notify_retry_delay,
    )
    return StockMonitor(
        CatalogClient(sessions, settings.catalog_url),
        registry,
        dispatcher,
        stock_store=PersistentStockState(settings.stock_state_file),
        default_store=settings.default_store,
        operator_chat_id=settings.telegram_chat_id,
        monitored_skus=settings.monitored_skus,
        manual_check_cooldown=timedelta(seconds=settings.manual_check_cooldown),
        product_base_url=settings.product_base_url,
    )


def main() -> None:  # pragma: no cover
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    # httpx logs full request URLs, which include the bot token.
    logging.getLogger("httpx").setLevel(logging.WARNING)

    try:
        token = settings.require_token()
    except ConfigError as e:
        raise SystemExit(str(e))

    app = build_application(token, post_init=on_startup, post_shutdown=on_shutdown)
    monitor = build_monitor(settings, TelegramNotifier(bot=app.bot))
    app.bot_data["monitor"] = monitor
    app.job_queue.run_repeating(poll_job, interval=settings.poll_interval, first=1, name="stock-check")

    logger.info("Starting stock monitor (interval=%ss, quiet hours %s)", settings.poll_interval,
                describe_quiet_hours(settings.timezone))
    try:
        app.run_polling()
    except SessionError as e:
        raise SystemExit(f"Failed to initialize storefront session: {e}")


if __name__ == "__main__":  # pragma: no cover
    main()
