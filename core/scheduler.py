"""
排程模組

每個聊天室各有一個依其通知間隔（cron 表達式）執行的價格檢查工作。
rederive() 依資料庫中的目前狀態重建所有工作，並移除無法送達的聊天室。
"""

import asyncio
import logging
from typing import Dict, Optional

from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import is_valid_cron
from .errors import CheckInProgress, PersistenceError
from .models import UserRecord
from .notifier import TelegramNotifier
from .storage import UserStorage
from .tracker import PriceTracker


logger = logging.getLogger(__name__)


class PriceCheckScheduler:
    """聊天室價格檢查排程器"""

    JOB_ID_PREFIX = "price_check_"

    def __init__(
        self,
        storage: UserStorage,
        notifier: TelegramNotifier,
        tracker: PriceTracker,
        default_interval: str,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.storage = storage
        self.notifier = notifier
        self.tracker = tracker
        self.default_interval = default_interval
        self._scheduler = scheduler or AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60,
            }
        )
        self._jobs: Dict[str, Job] = {}
        self._intervals: Dict[str, str] = {}
        self._rederive_lock = asyncio.Lock()

    @property
    def intervals(self) -> Dict[str, str]:
        """目前已安裝工作的聊天室與其 cron 表達式"""
        return dict(self._intervals)

    def start(self, paused: bool = False) -> None:
        self._scheduler.start(paused=paused)
        logger.info("Scheduler started")

    def shutdown(self) -> None:
        """停止排程，不等待執行中的檢查完成"""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._jobs.clear()
        self._intervals.clear()
        logger.info("Scheduler stopped")

    def _cancel(self, chat_id: str) -> None:
        job = self._jobs.pop(chat_id, None)
        self._intervals.pop(chat_id, None)
        if job is None:
            return
        try:
            job.remove()
        except LookupError:
            # 工作已不在 job store 中
            pass
        logger.info(f"Cancelled price check job for chat {chat_id}")

    def _interval_for(self, record: UserRecord) -> str:
        interval = record.notification_interval
        if interval and not is_valid_cron(interval):
            logger.warning(
                f"Chat {record.chat_id} has invalid interval {interval!r}, "
                f"using default {self.default_interval}"
            )
            interval = None
        return interval or self.default_interval

    async def rederive(self) -> None:
        """
        依資料庫狀態重建所有排程工作

        - 有商品的聊天室：取消舊工作，確認可送達後以其間隔安裝新工作
        - 無法送達的聊天室：不安裝工作並刪除其紀錄
        - 沒有商品或已不存在的聊天室：不安裝工作
        """
        async with self._rederive_lock:
            users = await asyncio.to_thread(self.storage.load_all_users)
            logger.info(f"Loaded {len(users)} users for scheduling")

            active = {chat_id for chat_id, record in users.items() if record.products}
            for chat_id in list(self._jobs):
                if chat_id not in active:
                    self._cancel(chat_id)

            for chat_id, record in users.items():
                if not record.products:
                    logger.info(f"No products to check for chat {chat_id}")
                    continue
                try:
                    await self._install(chat_id, record)
                except Exception:
                    logger.exception(f"Failed to schedule price checks for chat {chat_id}")

    async def _install(self, chat_id: str, record: UserRecord) -> None:
        self._cancel(chat_id)

        reachable = await asyncio.to_thread(self.notifier.get_chat_liveness, chat_id)
        if not reachable:
            logger.warning(f"Chat {chat_id} is unreachable, deleting its record")
            try:
                await asyncio.to_thread(self.storage.delete_user, chat_id)
            except PersistenceError as e:
                logger.error(f"Failed to delete unreachable chat {chat_id}: {e}")
            return

        interval = self._interval_for(record)
        self._jobs[chat_id] = self._scheduler.add_job(
            self._fire,
            CronTrigger.from_crontab(interval),
            args=[chat_id],
            id=f"{self.JOB_ID_PREFIX}{chat_id}",
            replace_existing=True,
        )
        self._intervals[chat_id] = interval
        logger.info(f"Scheduled price checks for chat {chat_id} with interval {interval}")

    async def _fire(self, chat_id: str) -> None:
        """排程觸發的價格檢查，錯誤只記錄不外拋"""
        logger.info(f"Running scheduled price check for chat {chat_id}")
        try:
            await self.tracker.check_and_notify(chat_id, unconditional=True)
        except CheckInProgress:
            logger.info(f"Skipping scheduled check for chat {chat_id}: another operation is running")
        except Exception:
            logger.exception(f"Scheduled price check failed for chat {chat_id}")
