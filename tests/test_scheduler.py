#!/usr/bin/env python3
"""
測試 PriceCheckScheduler 類別

排程器以暫停模式啟動，只檢查安裝的工作，不會真的觸發價格檢查。
"""
import os
import shutil
import tempfile
import unittest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from core.errors import CheckInProgress
from core.models import ResolvedProduct, TrackedProduct, UserRecord
from core.scheduler import PriceCheckScheduler
from core.storage import UserStorage


DEFAULT_INTERVAL = "*/5 * * * *"


def make_record(chat_id, interval=None, products=True) -> UserRecord:
    record = UserRecord(chat_id, notification_interval=interval)
    if products:
        resolved = ResolvedProduct("1234567", "Widget", "Acme", Decimal("100.00"), quantity=1)
        record.products["1234567"] = TrackedProduct.from_resolved(resolved)
    return record


class TestPriceCheckScheduler(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.storage = UserStorage(db_path=os.path.join(self.temp_dir, "products.db"))
        self.unreachable = set()
        self.notifier = MagicMock()
        self.notifier.get_chat_liveness.side_effect = lambda chat_id: chat_id not in self.unreachable
        self.tracker = MagicMock()
        self.tracker.check_and_notify = AsyncMock()
        self.scheduler = PriceCheckScheduler(self.storage, self.notifier, self.tracker, DEFAULT_INTERVAL)
        self.scheduler.start(paused=True)

    async def asyncTearDown(self):
        self.scheduler.shutdown()
        self.storage.close()
        if os.path.exists(self.temp_dir):
            shutil.rmtree(self.temp_dir)

    def job_ids(self):
        return sorted(job.id for job in self.scheduler._scheduler.get_jobs())

    async def test_rederive_installs_one_job_per_chat(self):
        self.storage.save_user(make_record("1", "*/15 * * * *"))
        self.storage.save_user(make_record("2"))

        await self.scheduler.rederive()
        self.assertEqual(self.scheduler.intervals, {"1": "*/15 * * * *", "2": DEFAULT_INTERVAL})
        self.assertEqual(self.job_ids(), ["price_check_1", "price_check_2"])

    async def test_interval_change_replaces_only_that_chat(self):
        """更改一個聊天室的間隔只替換該聊天室的工作"""
        self.storage.save_user(make_record("A", "*/15 * * * *"))
        self.storage.save_user(make_record("B", "*/15 * * * *"))
        await self.scheduler.rederive()

        self.storage.save_user(make_record("A", "0 * * * *"))
        await self.scheduler.rederive()

        self.assertEqual(self.scheduler.intervals, {"A": "0 * * * *", "B": "*/15 * * * *"})
        self.assertEqual(self.job_ids(), ["price_check_A", "price_check_B"])

    async def test_unreachable_chat_is_deleted(self):
        self.storage.save_user(make_record("1"))
        self.storage.save_user(make_record("2"))
        self.unreachable.add("2")

        await self.scheduler.rederive()
        self.assertEqual(self.job_ids(), ["price_check_1"])
        self.assertIsNone(self.storage.load_user("2"))
        self.assertIsNotNone(self.storage.load_user("1"))

    async def test_removed_chat_job_is_cancelled(self):
        self.storage.save_user(make_record("1"))
        await self.scheduler.rederive()
        self.assertEqual(self.job_ids(), ["price_check_1"])

        self.storage.delete_user("1")
        await self.scheduler.rederive()
        self.assertEqual(self.job_ids(), [])
        self.assertEqual(self.scheduler.intervals, {})

    async def test_chat_without_products_gets_no_job(self):
        self.storage.save_user(make_record("1", products=False))
        await self.scheduler.rederive()
        self.assertEqual(self.job_ids(), [])
        self.notifier.get_chat_liveness.assert_not_called()

    async def test_invalid_interval_uses_default(self):
        self.storage.save_user(make_record("1", "every five minutes"))
        await self.scheduler.rederive()
        self.assertEqual(self.scheduler.intervals, {"1": DEFAULT_INTERVAL})

    async def test_install_failure_is_isolated(self):
        self.storage.save_user(make_record("1"))
        self.storage.save_user(make_record("2"))

        def liveness(chat_id):
            if chat_id == "1":
                raise RuntimeError("unexpected")
            return True
        self.notifier.get_chat_liveness.side_effect = liveness

        await self.scheduler.rederive()
        self.assertEqual(self.job_ids(), ["price_check_2"])

    async def test_fire_runs_unconditional_check(self):
        await self.scheduler._fire("1")
        self.tracker.check_and_notify.assert_awaited_once_with("1", unconditional=True)

    async def test_fire_swallows_errors(self):
        self.tracker.check_and_notify.side_effect = CheckInProgress("busy")
        await self.scheduler._fire("1")

        self.tracker.check_and_notify.side_effect = RuntimeError("boom")
        await self.scheduler._fire("1")
        self.assertEqual(self.tracker.check_and_notify.await_count, 2)


if __name__ == "__main__":
    unittest.main()
