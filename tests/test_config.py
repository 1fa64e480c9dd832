#!/usr/bin/env python3
"""
測試設定載入與冷卻時間限制
"""
import unittest

from core.config import DEFAULT_CONFIG, is_valid_cron, load_config
from core.errors import RateLimited
from core.ratelimit import CooldownLimiter


class TestLoadConfig(unittest.TestCase):
    def test_defaults(self):
        """只設定 token 時使用預設值"""
        config = load_config({"TELEGRAM_BOT_TOKEN": "token"})
        self.assertEqual(config.bot_token, "token")
        self.assertEqual(config.default_interval, DEFAULT_CONFIG["default_interval"])
        self.assertEqual(config.db_path, "data/products.db")
        self.assertEqual(config.max_products, 50)
        self.assertEqual(config.cooldown_seconds, 3.0)
        self.assertEqual(config.log_level, "INFO")

    def test_overrides(self):
        config = load_config({
            "TELEGRAM_BOT_TOKEN": "token",
            "DEFAULT_NOTIFICATION_INTERVAL": "0 * * * *",
            "DB_PATH": "/tmp/wb.db",
            "MAX_PRODUCTS": "10",
            "COOLDOWN_SECONDS": "1.5",
            "POLL_TIMEOUT": "5",
            "LOG_LEVEL": "debug",
        })
        self.assertEqual(config.default_interval, "0 * * * *")
        self.assertEqual(config.db_path, "/tmp/wb.db")
        self.assertEqual(config.max_products, 10)
        self.assertEqual(config.cooldown_seconds, 1.5)
        self.assertEqual(config.poll_timeout, 5)
        self.assertEqual(config.log_level, "DEBUG")

    def test_blank_values_use_defaults(self):
        config = load_config({"TELEGRAM_BOT_TOKEN": "token", "MAX_PRODUCTS": "  "})
        self.assertEqual(config.max_products, 50)

    def test_missing_token(self):
        with self.assertRaises(ValueError):
            load_config({})
        with self.assertRaises(ValueError):
            load_config({"TELEGRAM_BOT_TOKEN": "   "})

    def test_invalid_values(self):
        with self.assertRaises(ValueError):
            load_config({"TELEGRAM_BOT_TOKEN": "token", "DEFAULT_NOTIFICATION_INTERVAL": "often"})
        with self.assertRaises(ValueError):
            load_config({"TELEGRAM_BOT_TOKEN": "token", "MAX_PRODUCTS": "0"})
        with self.assertRaises(ValueError):
            load_config({"TELEGRAM_BOT_TOKEN": "token", "MAX_PRODUCTS": "many"})

    def test_is_valid_cron(self):
        self.assertTrue(is_valid_cron("*/5 * * * *"))
        self.assertTrue(is_valid_cron("0 */2 * * *"))
        self.assertFalse(is_valid_cron("*/5 * * *"))
        self.assertFalse(is_valid_cron(""))
        self.assertFalse(is_valid_cron(None))


class TestCooldownLimiter(unittest.TestCase):
    def setUp(self):
        self.now = 1000.0
        self.limiter = CooldownLimiter(3.0, clock=lambda: self.now)

    def test_second_call_within_cooldown(self):
        self.limiter.check("42", "add")
        with self.assertRaises(RateLimited) as ctx:
            self.limiter.check("42", "add")
        self.assertEqual(ctx.exception.operation, "add")
        self.assertAlmostEqual(ctx.exception.retry_after, 3.0)

    def test_cooldown_expires(self):
        self.limiter.check("42", "add")
        self.now += 3.0
        self.limiter.check("42", "add")

    def test_keys_are_independent(self):
        """不同聊天室與不同操作各自計算"""
        self.limiter.check("42", "add")
        self.limiter.check("42", "check")
        self.limiter.check("43", "add")

    def test_rejected_call_does_not_extend_cooldown(self):
        self.limiter.check("42", "add")
        self.now += 2.0
        with self.assertRaises(RateLimited):
            self.limiter.check("42", "add")
        self.now += 1.0
        self.limiter.check("42", "add")

    def test_disabled(self):
        limiter = CooldownLimiter(0)
        limiter.check("42", "add")
        limiter.check("42", "add")
        self.assertEqual(len(limiter), 0)

    def test_expired_keys_are_evicted(self):
        """冷卻結束的聊天室不會一直留在記憶體中"""
        for chat_id in range(100):
            self.limiter.check(str(chat_id), "add")
        self.assertEqual(len(self.limiter), 100)

        self.now += 3.0
        self.limiter.check("new", "check")
        self.assertEqual(len(self.limiter), 1)

    def test_active_keys_survive_eviction(self):
        self.limiter.check("42", "add")
        self.now += 2.0
        self.limiter.check("43", "add")
        self.now += 1.5
        self.limiter.check("44", "add")

        self.assertEqual(len(self.limiter), 2)
        with self.assertRaises(RateLimited):
            self.limiter.check("43", "add")


if __name__ == "__main__":
    unittest.main()
