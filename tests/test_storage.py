#!/usr/bin/env python3
"""
測試 UserStorage 類別與使用者文件格式
"""
import json
import os
import shutil
import sqlite3
import tempfile
import unittest
from decimal import Decimal

from core.errors import PersistenceError
from core.models import (
    HistoryEntry,
    ResolvedProduct,
    TrackedProduct,
    UNKNOWN_TEXT,
    UserRecord,
)
from core.storage import UserStorage


def make_product(name="Widget", price="950.00", quantity=5) -> TrackedProduct:
    resolved = ResolvedProduct("123456789", name, "Acme", Decimal(price), rating=4.7, quantity=quantity)
    return TrackedProduct.from_resolved(resolved, timestamp="2024-01-01 10:00:00")


class TestUserStorage(unittest.TestCase):
    def setUp(self):
        """每個測試前創建臨時資料庫"""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "data", "test_products.db")
        self.storage = UserStorage(db_path=self.db_path)

    def tearDown(self):
        """每個測試後清理臨時資料庫"""
        self.storage.close()
        if os.path.exists(self.temp_dir):
            shutil.rmtree(self.temp_dir)

    def test_empty_database(self):
        self.assertEqual(self.storage.load_all_users(), {})
        self.assertIsNone(self.storage.load_user("42"))
        self.assertEqual(self.storage.get_user_count(), 0)

    def test_save_and_load_user(self):
        """測試新增使用者紀錄"""
        record = UserRecord("42", {"123456789": make_product()}, "*/15 * * * *")
        self.storage.save_user(record)

        loaded = self.storage.load_user("42")
        self.assertIsNotNone(loaded)
        self.assertEqual(loaded.chat_id, "42")
        self.assertEqual(loaded.notification_interval, "*/15 * * * *")
        product = loaded.products["123456789"]
        self.assertEqual(product.name, "Widget")
        self.assertEqual(product.current_price, Decimal("950.00"))
        self.assertEqual(product.quantity, 5)
        self.assertEqual(product.rating, 4.7)
        self.assertEqual(len(product.history), 1)
        self.assertEqual(product.history[0].date, "2024-01-01 10:00:00")

    def test_save_replaces_whole_document(self):
        """測試更新使用者紀錄"""
        self.storage.save_user(UserRecord("42", {"123456789": make_product()}))
        self.storage.save_user(UserRecord("42", {"7654321": make_product(name="Other")}))

        loaded = self.storage.load_user("42")
        self.assertEqual(list(loaded.products), ["7654321"])
        self.assertEqual(self.storage.get_user_count(), 1)

    def test_delete_user(self):
        self.storage.save_user(UserRecord("42", {"123456789": make_product()}))
        self.storage.delete_user("42")
        self.assertIsNone(self.storage.load_user("42"))

        # 刪除不存在的紀錄不會出錯
        self.storage.delete_user("42")

    def test_load_all_users(self):
        self.storage.save_user(UserRecord("1", {"1111111": make_product()}))
        self.storage.save_user(UserRecord("2", {"2222222": make_product()}))

        users = self.storage.load_all_users()
        self.assertEqual(set(users), {"1", "2"})
        self.assertIn("2222222", users["2"].products)

    def test_corrupt_document_is_skipped(self):
        """損毀的文件不影響其他使用者"""
        self.storage.save_user(UserRecord("1", {"1111111": make_product()}))
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            "INSERT INTO users (chat_id, document, updated_at) VALUES (?, ?, ?)",
            ("2", "{not json", "2024-01-01"),
        )
        conn.commit()
        conn.close()

        users = self.storage.load_all_users()
        self.assertEqual(set(users), {"1"})
        with self.assertRaises(PersistenceError):
            self.storage.load_user("2")

    def test_persists_across_instances(self):
        self.storage.save_user(UserRecord("42", {"123456789": make_product()}))
        self.storage.close()

        reopened = UserStorage(db_path=self.db_path)
        try:
            self.assertIn("123456789", reopened.load_user("42").products)
        finally:
            reopened.close()

    def test_closed_storage_raises(self):
        self.storage.close()
        with self.assertRaises(PersistenceError):
            self.storage.load_user("42")

    def test_document_format(self):
        """儲存的文件使用 chatId / products / notificationInterval"""
        self.storage.save_user(UserRecord("42", {"123456789": make_product()}))
        conn = sqlite3.connect(self.db_path)
        document = conn.execute("SELECT document FROM users WHERE chat_id = '42'").fetchone()[0]
        conn.close()

        data = json.loads(document)
        self.assertEqual(data["chatId"], "42")
        self.assertIsNone(data["notificationInterval"])
        product = data["products"]["123456789"]
        self.assertEqual(product["current_price"], "950.00")
        self.assertEqual(product["imageUrl"], "")
        self.assertEqual(product["history"][0]["price"], "950.00")


class TestUserRecordDocument(unittest.TestCase):
    def test_missing_fields_are_normalized(self):
        """缺少的欄位以預設值補齊，缺少歷史時以目前價格建立"""
        record = UserRecord.from_dict({
            "chatId": 42,
            "products": {"1234567": {"current_price": 100, "added_date": "2024-02-02 12:00:00"}},
        })
        product = record.products["1234567"]
        self.assertEqual(record.chat_id, "42")
        self.assertIsNone(record.notification_interval)
        self.assertEqual(product.name, UNKNOWN_TEXT)
        self.assertEqual(product.brand, UNKNOWN_TEXT)
        self.assertEqual(product.current_price, Decimal("100.00"))
        self.assertEqual(product.quantity, 0)
        self.assertIsNone(product.image_url)
        self.assertEqual(product.history, [HistoryEntry("2024-02-02 12:00:00", Decimal("100.00"), 0)])

    def test_invalid_article_rejected(self):
        with self.assertRaises(PersistenceError):
            UserRecord.from_dict({"chatId": "42", "products": {"abc": {}}})

    def test_non_object_rejected(self):
        with self.assertRaises(PersistenceError):
            UserRecord.from_dict(["not", "a", "dict"])

    def test_record_change_keeps_history_ordered(self):
        product = make_product()
        resolved = ResolvedProduct("123456789", "Widget", "Acme", Decimal("900.00"), quantity=4)
        # 時鐘倒退時沿用上一筆的時間
        product.record_change(resolved, timestamp="2023-12-31 23:59:59")

        self.assertEqual(product.current_price, Decimal("900.00"))
        self.assertEqual(product.quantity, 4)
        self.assertEqual([entry.date for entry in product.history],
                         ["2024-01-01 10:00:00", "2024-01-01 10:00:00"])

    def test_record_change_keeps_image_when_missing(self):
        product = make_product()
        product.image_url = "https://example.com/1.webp"
        resolved = ResolvedProduct("123456789", "Widget", "Acme", Decimal("900.00"))
        product.record_change(resolved)
        self.assertEqual(product.image_url, "https://example.com/1.webp")


if __name__ == "__main__":
    unittest.main()
