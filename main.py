#!/usr/bin/env python3
"""
Wildberries 價格追蹤機器人主程式
"""
import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

from core.bot import PriceBot
from core.config import BotConfig, load_config
from core.errors import PersistenceError
from core.notifier import TelegramNotifier
from core.ratelimit import CooldownLimiter
from core.scheduler import PriceCheckScheduler
from core.storage import UserStorage
from core.tracker import PriceTracker
from scrapers.wildberries.host_cache import HostCache
from scrapers.wildberries.resolver import WildberriesResolver

# 載入 .env 檔案
load_dotenv()

logger = logging.getLogger("wb_price_tracker")


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
    )
    # requests/urllib3 的連線訊息太多
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


async def run(config: BotConfig, storage: UserStorage) -> None:
    """組裝元件並執行直到收到中斷訊號"""
    notifier = TelegramNotifier(bot_token=config.bot_token)
    resolver = WildberriesResolver(HostCache(config.host_cache_file))
    tracker = PriceTracker(
        storage,
        resolver,
        notifier,
        limiter=CooldownLimiter(config.cooldown_seconds),
        max_products=config.max_products,
    )
    scheduler = PriceCheckScheduler(storage, notifier, tracker, config.default_interval)
    tracker.set_registry_listener(scheduler.rederive)
    bot = PriceBot(notifier, tracker, poll_timeout=config.poll_timeout)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows 不支援 add_signal_handler，改由 KeyboardInterrupt 結束
            pass

    scheduler.start()
    await scheduler.rederive()
    logger.info("Bot started")

    polling = asyncio.create_task(bot.run_polling(stop_event))
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        scheduler.shutdown()
        polling.cancel()
        try:
            await polling
        except asyncio.CancelledError:
            pass
        await bot.wait_pending()


def main() -> int:
    """主程式"""
    try:
        config = load_config()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(config.log_level)

    try:
        storage = UserStorage(config.db_path)
    except PersistenceError as e:
        logger.critical(f"Cannot open database: {e}")
        return 1

    try:
        asyncio.run(run(config, storage))
    except KeyboardInterrupt:
        pass
    finally:
        storage.close()

    logger.info("Done!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
