"""
通知服務模組

透過 Telegram Bot API 傳送文字與圖片訊息、確認聊天室是否仍可送達，
並以 long polling 取得使用者的指令與按鈕回呼。
"""

import json
import logging
import os
from typing import Dict, Any, List, Optional

import requests


logger = logging.getLogger(__name__)

IMAGE_UNAVAILABLE_LINE = "⚠️ Изображение недоступно"

# Telegram 圖片說明文字上限
CAPTION_LIMIT = 1024


class TelegramNotifier:
    """Telegram 通知服務"""

    API_BASE = "https://api.telegram.org"
    SEND_TIMEOUT = 10  # 秒

    def __init__(self, bot_token: str = None):
        self.bot_token = bot_token or os.getenv("TELEGRAM_BOT_TOKEN")
        if not self.bot_token:
            raise ValueError("TELEGRAM_BOT_TOKEN must be set")

    def _api_url(self, method: str) -> str:
        return f"{self.API_BASE}/bot{self.bot_token}/{method}"

    def _post(self, method: str, data: Dict[str, Any], timeout: float = SEND_TIMEOUT) -> Optional[Dict]:
        """
        呼叫 Bot API

        Returns:
            API 回傳的 result；失敗時回傳 None
        """
        try:
            response = requests.post(self._api_url(method), json=data, timeout=timeout)
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Telegram {method} failed: {e}")
            return None
        if not body.get("ok"):
            logger.warning(f"Telegram {method} rejected: {body.get('description')}")
            return None
        return body.get("result", {})

    def send_text(self, chat_id: str, text: str, reply_markup: Optional[Dict] = None) -> bool:
        """發送文字訊息"""
        data = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        if reply_markup:
            data["reply_markup"] = reply_markup
        return self._post("sendMessage", data) is not None

    def send_photo(
        self,
        chat_id: str,
        photo_url: Optional[str],
        caption: str,
        reply_markup: Optional[Dict] = None,
    ) -> bool:
        """
        發送圖片訊息

        沒有圖片、說明文字過長或圖片被 Telegram 拒絕時，改為發送文字訊息並附上提示。

        Args:
            chat_id: 聊天室 ID
            photo_url: 圖片 URL
            caption: 圖片說明文字（HTML）
            reply_markup: 鍵盤設定

        Returns:
            是否發送成功
        """
        if photo_url and len(caption) <= CAPTION_LIMIT:
            data = {
                "chat_id": chat_id,
                "photo": photo_url,
                "caption": caption,
                "parse_mode": "HTML",
            }
            if reply_markup:
                data["reply_markup"] = reply_markup
            if self._post("sendPhoto", data) is not None:
                return True
            logger.info(f"Falling back to text message for chat {chat_id}")

        return self.send_text(chat_id, f"{caption}\n{IMAGE_UNAVAILABLE_LINE}", reply_markup)

    def get_chat_liveness(self, chat_id: str) -> bool:
        """
        確認聊天室是否仍可送達

        只有 Telegram 明確回應 400/403（聊天室不存在或機器人被封鎖）才視為不可送達；
        網路錯誤時視為可送達，避免誤刪使用者。
        """
        try:
            response = requests.post(
                self._api_url("getChat"),
                json={"chat_id": chat_id},
                timeout=self.SEND_TIMEOUT,
            )
        except requests.RequestException as e:
            logger.warning(f"Liveness check for chat {chat_id} failed, assuming reachable: {e}")
            return True

        if response.status_code in (400, 403):
            logger.info(f"Chat {chat_id} is unreachable (HTTP {response.status_code})")
            return False
        return True

    def get_updates(self, offset: Optional[int] = None, timeout: int = 30) -> List[Dict]:
        """
        以 long polling 取得更新

        Raises:
            requests.RequestException: 網路錯誤，由呼叫端決定重試
        """
        params: Dict[str, Any] = {
            "timeout": timeout,
            "allowed_updates": json.dumps(["message", "callback_query"]),
        }
        if offset is not None:
            params["offset"] = offset

        response = requests.get(self._api_url("getUpdates"), params=params, timeout=timeout + 10)
        response.raise_for_status()
        data = response.json()
        if not data.get("ok"):
            logger.warning(f"getUpdates rejected: {data.get('description')}")
            return []
        return data.get("result") or []

    def answer_callback_query(self, callback_query_id: str, text: Optional[str] = None) -> bool:
        data = {"callback_query_id": callback_query_id}
        if text:
            data["text"] = text
        return self._post("answerCallbackQuery", data) is not None

    def delete_message(self, chat_id: str, message_id: int) -> bool:
        return self._post("deleteMessage", {"chat_id": chat_id, "message_id": message_id}) is not None
