"""
冷卻時間限制

每個聊天室的每種操作在冷卻時間內只允許執行一次。
"""

import time
from typing import Callable, Dict, Tuple

from .errors import RateLimited


class CooldownLimiter:
    """以 (chat_id, 操作) 為單位的冷卻時間限制"""

    def __init__(self, cooldown_seconds: float = 3.0, clock: Callable[[], float] = time.monotonic):
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._last_call: Dict[Tuple[str, str], float] = {}

    def check(self, chat_id: str, operation: str) -> None:
        """
        記錄一次呼叫

        Raises:
            RateLimited: 距離上次呼叫未滿冷卻時間
        """
        if self.cooldown_seconds <= 0:
            return
        key = (str(chat_id), operation)
        now = self._clock()
        last = self._last_call.get(key)
        if last is not None and now - last < self.cooldown_seconds:
            raise RateLimited(operation, self.cooldown_seconds - (now - last))
        self._evict(now)
        self._last_call[key] = now

    def _evict(self, now: float) -> None:
        # 冷卻已結束的紀錄不再影響判斷
        expired = [key for key, last in self._last_call.items() if now - last >= self.cooldown_seconds]
        for key in expired:
            del self._last_call[key]

    def __len__(self) -> int:
        return len(self._last_call)
