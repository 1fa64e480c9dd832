"""
Storage service for per-chat product registries.

Each chat is stored as one JSON document (UserRecord) keyed by chat id:
- load_all_users / load_user read documents, absence is an empty state
- save_user upserts the whole document in a single transaction
- delete_user removes the chat, absent chats are a no-op
"""

import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, Optional

from .errors import PersistenceError
from .models import UserRecord


logger = logging.getLogger(__name__)


class UserStorage:
    """使用者紀錄儲存服務"""

    def __init__(self, db_path: str = "data/products.db"):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None
        self._connect()
        self._ensure_db_exists()

    def _connect(self) -> None:
        directory = os.path.dirname(self.db_path)
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
            # 連線會在 asyncio.to_thread 的工作執行緒間共用，以 _lock 序列化
            self._conn = sqlite3.connect(self.db_path, timeout=30.0, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"Cannot open database {self.db_path}: {e}") from e

    def _ensure_db_exists(self) -> None:
        """確保資料表存在"""
        with self._transaction() as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    chat_id TEXT PRIMARY KEY,
                    document TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        """
        取得連線鎖並開啟交易

        成功時 commit，sqlite3 錯誤會 rollback 並轉為 PersistenceError。
        """
        with self._lock:
            if self._conn is None:
                raise PersistenceError("Database connection is closed")
            cursor = self._conn.cursor()
            try:
                yield cursor
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise PersistenceError(f"Database error: {e}") from e
            finally:
                cursor.close()

    def load_all_users(self) -> Dict[str, UserRecord]:
        """
        載入所有使用者紀錄

        損毀的文件會被記錄並略過，不影響其他聊天室。
        """
        with self._transaction() as cursor:
            cursor.execute("SELECT chat_id, document FROM users ORDER BY rowid")
            rows = cursor.fetchall()

        users = {}
        for chat_id, document in rows:
            try:
                users[chat_id] = self._decode(chat_id, document)
            except PersistenceError as e:
                logger.error(f"Skipping corrupt user document {chat_id}: {e}")
        return users

    def load_user(self, chat_id: str) -> Optional[UserRecord]:
        """取得單一聊天室的紀錄，不存在時回傳 None"""
        with self._transaction() as cursor:
            cursor.execute("SELECT document FROM users WHERE chat_id = ?", (str(chat_id),))
            row = cursor.fetchone()
        if row is None:
            return None
        return self._decode(str(chat_id), row[0])

    def save_user(self, record: UserRecord) -> None:
        """新增或更新整份使用者紀錄"""
        document = json.dumps(record.to_dict(), ensure_ascii=False)
        now = datetime.now().isoformat()
        with self._transaction() as cursor:
            cursor.execute(
                """INSERT INTO users (chat_id, document, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(chat_id) DO UPDATE SET
                       document = excluded.document,
                       updated_at = excluded.updated_at""",
                (record.chat_id, document, now)
            )
        logger.debug(f"Saved user {record.chat_id} with {len(record.products)} products")

    def delete_user(self, chat_id: str) -> None:
        """刪除使用者紀錄"""
        with self._transaction() as cursor:
            cursor.execute("DELETE FROM users WHERE chat_id = ?", (str(chat_id),))
            deleted = cursor.rowcount
        if deleted:
            logger.info(f"Deleted user {chat_id}")

    def get_user_count(self) -> int:
        with self._transaction() as cursor:
            cursor.execute("SELECT COUNT(*) FROM users")
            return cursor.fetchone()[0]

    def close(self) -> None:
        """關閉資料庫連線"""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info("Database connection closed")

    @staticmethod
    def _decode(chat_id: str, document: str) -> UserRecord:
        try:
            data = json.loads(document)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Invalid JSON document for {chat_id}: {e}") from e
        if isinstance(data, dict):
            data.setdefault("chatId", chat_id)
        return UserRecord.from_dict(data)


