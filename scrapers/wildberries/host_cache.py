"""
分片主機快取

記錄每個 volume bucket 上次成功回應的 basket 主機編號，
格式為 {"products": {"<vol>": "<host>"}}。快取只是提示，過期時解析器會重新搜尋。
"""

import json
import logging
import os
import threading
from typing import Dict, Optional


logger = logging.getLogger(__name__)

DEFAULT_HOST_CACHE_FILE = "data/host_cache.json"


class HostCache:
    """volume bucket → 主機編號的持久化對照表"""

    def __init__(self, cache_file: str = DEFAULT_HOST_CACHE_FILE):
        self.cache_file = cache_file
        self._lock = threading.Lock()
        self._hosts: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        """載入快取檔案，檔案不存在或損毀時視為空快取"""
        if not os.path.exists(self.cache_file):
            return {}
        try:
            with open(self.cache_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning(f"Host cache {self.cache_file} unreadable, starting empty: {e}")
            return {}
        products = data.get("products") if isinstance(data, dict) else None
        if not isinstance(products, dict):
            return {}
        return {str(vol): str(host) for vol, host in products.items()}

    def _save(self) -> None:
        directory = os.path.dirname(self.cache_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_file = f"{self.cache_file}.tmp"
        with open(tmp_file, 'w', encoding='utf-8') as f:
            json.dump({"products": self._hosts}, f, indent=2, ensure_ascii=False)
        os.replace(tmp_file, self.cache_file)

    def get(self, vol: int) -> Optional[str]:
        with self._lock:
            return self._hosts.get(str(vol))

    def set(self, vol: int, host: str) -> None:
        """
        更新 volume bucket 對應的主機

        寫入失敗只記錄警告，快取本身不影響解析結果。
        """
        with self._lock:
            if self._hosts.get(str(vol)) == host:
                return
            self._hosts[str(vol)] = host
            try:
                self._save()
            except OSError as e:
                logger.warning(f"Failed to persist host cache {self.cache_file}: {e}")
