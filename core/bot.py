"""
Telegram 機器人主迴圈

以 long polling 取得更新，每個更新在獨立的 asyncio task 中處理；
單一更新的錯誤只會記錄，不會中斷迴圈。
"""

import asyncio
import logging
from typing import Dict, Any, Optional, Set

import requests

from . import messages
from .actions import (
    Action,
    AddProduct,
    CheckPrices,
    ChooseInterval,
    ChooseRemoval,
    ListProducts,
    PromptArticle,
    RemoveProduct,
    SetInterval,
    Start,
    decode_callback,
    decode_message,
)
from .errors import (
    CheckInProgress,
    PersistenceError,
    ProductNotTracked,
    RateLimited,
    ResolutionFailure,
    ValidationError,
)
from .notifier import TelegramNotifier
from .tracker import PriceTracker


logger = logging.getLogger(__name__)

VALIDATION_TEXTS = {
    ValidationError.BAD_ARTICLE: "ℹ️ Артикул должен состоять из 7–9 цифр.",
    ValidationError.LIMIT_REACHED: "ℹ️ Достигнут лимит отслеживаемых товаров ({limit}). Удалите ненужные товары.",
    ValidationError.BAD_INTERVAL: "ℹ️ Такой интервал недоступен.",
    ValidationError.NO_PRODUCTS: "ℹ️ Сначала добавьте товар для отслеживания.",
}


class PriceBot:
    """將 Telegram 更新轉為追蹤操作"""

    RETRY_DELAY = 5  # 秒

    def __init__(self, notifier: TelegramNotifier, tracker: PriceTracker, poll_timeout: int = 30):
        self.notifier = notifier
        self.tracker = tracker
        self.poll_timeout = poll_timeout
        self._offset: Optional[int] = None
        self._awaiting_article: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    async def run_polling(self, stop_event: asyncio.Event) -> None:
        """持續取得更新直到 stop_event 被設定"""
        logger.info("Polling for Telegram updates")
        while not stop_event.is_set():
            try:
                updates = await asyncio.to_thread(self.notifier.get_updates, self._offset, self.poll_timeout)
            except (requests.RequestException, ValueError) as e:
                logger.warning(f"Failed to fetch Telegram updates: {e}")
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.RETRY_DELAY)
                except asyncio.TimeoutError:
                    pass
                continue

            for update in updates:
                self._offset = update["update_id"] + 1
                self._spawn(self.handle_update(update))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_pending(self, timeout: float = 10.0) -> None:
        """等待處理中的更新結束，逾時則放棄"""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.info(f"Abandoned {len(pending)} in-flight updates")

    @staticmethod
    def _chat_id_of(update: Dict[str, Any]) -> str:
        query = update.get("callback_query")
        message = (query.get("message") if query else update.get("message")) or {}
        return str((message.get("chat") or {}).get("id", ""))

    async def handle_update(self, update: Dict[str, Any]) -> None:
        """處理單一更新，未預期的錯誤只記錄並通知使用者"""
        try:
            await self._handle_update(update)
        except Exception:
            logger.exception(f"Failed to handle update {update.get('update_id')}")
            chat_id = self._chat_id_of(update)
            if not chat_id:
                return
            try:
                await self.tracker.send_text(chat_id, messages.UNEXPECTED_ERROR_TEXT)
            except Exception as e:
                logger.warning(f"Could not report failure to chat {chat_id}: {e}")

    async def _handle_update(self, update: Dict[str, Any]) -> None:
        query = update.get("callback_query")
        if query:
            message = query.get("message") or {}
            chat_id = self._chat_id_of(update)
            if not chat_id:
                return
            logger.info(f"Callback {query.get('data')!r} from chat {chat_id}")
            await asyncio.to_thread(self.notifier.answer_callback_query, query["id"])
            if message.get("message_id"):
                await asyncio.to_thread(self.notifier.delete_message, chat_id, message["message_id"])
            action = decode_callback(query.get("data", ""))
        else:
            message = update.get("message")
            if not message or not message.get("text"):
                return
            chat_id = str(message["chat"]["id"])
            action = decode_message(message["text"], awaiting_article=chat_id in self._awaiting_article)

        if isinstance(action, PromptArticle):
            self._awaiting_article.add(chat_id)
        else:
            self._awaiting_article.discard(chat_id)

        await self.dispatch(chat_id, action)

    async def _show_menu(self, chat_id: str) -> None:
        await self.tracker.send_text(chat_id, messages.MENU_PROMPT, messages.main_menu_keyboard())

    async def dispatch(self, chat_id: str, action: Action) -> None:
        """執行操作並把錯誤轉為使用者看得懂的訊息"""
        try:
            await self._dispatch(chat_id, action)
        except RateLimited as e:
            await self.tracker.send_text(chat_id, messages.too_soon_text(e.retry_after))
        except CheckInProgress:
            await self.tracker.send_text(chat_id, messages.CHECK_IN_PROGRESS_TEXT)
        except ProductNotTracked:
            article = getattr(action, "article", "")
            await self.tracker.send_text(chat_id, f"ℹ️ Товар {article} не найден в списке отслеживаемых.")
            await self._show_menu(chat_id)
        except ValidationError as e:
            text = VALIDATION_TEXTS.get(e.reason, VALIDATION_TEXTS[ValidationError.BAD_ARTICLE])
            await self.tracker.send_text(chat_id, text.format(limit=self.tracker.max_products))
            await self._show_menu(chat_id)
        except ResolutionFailure as e:
            logger.warning(f"Could not resolve {e.article} for chat {chat_id}: {e}")
            await self.tracker.send_text(chat_id, messages.add_failed_text(e.article, messages.failure_reason(e)))
            await self._show_menu(chat_id)
        except PersistenceError as e:
            logger.error(f"Persistence failure for chat {chat_id}: {e}")
            await self.tracker.send_text(chat_id, messages.STORAGE_ERROR_TEXT)

    async def _dispatch(self, chat_id: str, action: Action) -> None:
        if isinstance(action, Start):
            await self.tracker.send_text(chat_id, messages.WELCOME_TEXT.format(chat_id=chat_id))
            await self._show_menu(chat_id)

        elif isinstance(action, PromptArticle):
            await self.tracker.send_text(chat_id, messages.ARTICLE_PROMPT)

        elif isinstance(action, AddProduct):
            result = await self.tracker.add_product(chat_id, action.article)
            if result.created:
                await self.tracker.send_photo(
                    chat_id, result.product.image_url, messages.added_caption(result.article, result.resolved)
                )
            else:
                await self.tracker.send_text(chat_id, messages.already_tracked_text(result.article))
            await self._show_menu(chat_id)

        elif isinstance(action, ChooseRemoval):
            products = await self.tracker.get_products(chat_id)
            if not products:
                await self.tracker.send_text(chat_id, messages.EMPTY_LIST_TEXT)
                await self._show_menu(chat_id)
                return
            await self.tracker.send_text(
                chat_id, messages.CHOOSE_REMOVAL_TEXT, messages.removal_keyboard(list(products.items()))
            )

        elif isinstance(action, RemoveProduct):
            product = await self.tracker.remove_product(chat_id, action.article)
            await self.tracker.send_text(chat_id, messages.removed_by_user_text(action.article, product.name))
            await self._show_menu(chat_id)

        elif isinstance(action, ListProducts):
            page = await self.tracker.list_products(chat_id, action.page)
            if page is None:
                await self.tracker.send_text(chat_id, messages.EMPTY_LIST_TEXT)
                await self._show_menu(chat_id)
                return
            await self.tracker.send_photo(
                chat_id, page.product.image_url, messages.product_caption(page.article, page.product)
            )
            await self.tracker.send_text(
                chat_id,
                messages.page_text(page.page, page.total_pages),
                messages.pagination_keyboard(page.page, page.total_pages),
            )

        elif isinstance(action, CheckPrices):
            await self.tracker.check_and_notify(chat_id, unconditional=False)
            await self._show_menu(chat_id)

        elif isinstance(action, ChooseInterval):
            await self.tracker.send_text(chat_id, messages.CHOOSE_INTERVAL_TEXT, messages.interval_keyboard())

        elif isinstance(action, SetInterval):
            await self.tracker.set_interval(chat_id, action.minutes)
            await self.tracker.send_text(chat_id, messages.interval_set_text(action.minutes))
            await self._show_menu(chat_id)

        else:
            await self._show_menu(chat_id)
