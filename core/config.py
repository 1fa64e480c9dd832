"""
設定載入模組

從環境變數（可由 .env 檔案提供）讀取機器人設定，並提供預設值填充功能。
"""

import os
from dataclasses import dataclass
from typing import Dict, Any, Mapping, Optional

from apscheduler.triggers.cron import CronTrigger


# 預設值定義
DEFAULT_CONFIG = {
    "default_interval": "*/5 * * * *",
    "db_path": "data/products.db",
    "host_cache_file": "data/host_cache.json",
    "max_products": 50,
    "cooldown_seconds": 3.0,
    "poll_timeout": 30,
    "log_level": "INFO",
}

# 環境變數名稱到設定欄位的映射
ENV_TO_FIELD = {
    "DEFAULT_NOTIFICATION_INTERVAL": "default_interval",
    "DB_PATH": "db_path",
    "HOST_CACHE_FILE": "host_cache_file",
    "MAX_PRODUCTS": "max_products",
    "COOLDOWN_SECONDS": "cooldown_seconds",
    "POLL_TIMEOUT": "poll_timeout",
    "LOG_LEVEL": "log_level",
}


@dataclass
class BotConfig:
    """機器人設定"""
    bot_token: str
    default_interval: str = DEFAULT_CONFIG["default_interval"]
    db_path: str = DEFAULT_CONFIG["db_path"]
    host_cache_file: str = DEFAULT_CONFIG["host_cache_file"]
    max_products: int = DEFAULT_CONFIG["max_products"]
    cooldown_seconds: float = DEFAULT_CONFIG["cooldown_seconds"]
    poll_timeout: int = DEFAULT_CONFIG["poll_timeout"]
    log_level: str = DEFAULT_CONFIG["log_level"]

    def __post_init__(self):
        # 環境變數都是字串，轉換為對應型別
        self.max_products = int(self.max_products)
        self.cooldown_seconds = float(self.cooldown_seconds)
        self.poll_timeout = int(self.poll_timeout)
        self.log_level = str(self.log_level).upper()


def is_valid_cron(expression: Optional[str]) -> bool:
    """檢查是否為合法的 5 欄位 cron 表達式"""
    if not expression:
        return False
    try:
        CronTrigger.from_crontab(expression)
    except ValueError:
        return False
    return True


def load_config(environ: Optional[Mapping[str, str]] = None) -> BotConfig:
    """
    載入機器人設定

    Args:
        environ: 環境變數來源，預設為 os.environ

    Returns:
        BotConfig: 設定物件

    Raises:
        ValueError: 缺少 TELEGRAM_BOT_TOKEN 或設定值不合法時
    """
    if environ is None:
        environ = os.environ

    bot_token = environ.get("TELEGRAM_BOT_TOKEN", "").strip()
    if not bot_token:
        raise ValueError("TELEGRAM_BOT_TOKEN must be set")

    # 合併預設值
    values: Dict[str, Any] = dict(DEFAULT_CONFIG)
    for env_name, field_name in ENV_TO_FIELD.items():
        raw = environ.get(env_name)
        if raw is not None and raw.strip():
            values[field_name] = raw.strip()

    config = BotConfig(bot_token=bot_token, **values)

    if not is_valid_cron(config.default_interval):
        raise ValueError(f"Invalid DEFAULT_NOTIFICATION_INTERVAL: {config.default_interval}")
    if config.max_products <= 0:
        raise ValueError(f"MAX_PRODUCTS must be positive, got {config.max_products}")

    return config
