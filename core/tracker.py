"""
價格追蹤服務

管理每個聊天室的商品清單：新增、刪除、分頁列出、檢查價格與設定通知間隔。
所有阻塞的網路與資料庫呼叫都透過 asyncio.to_thread 執行。
"""

import asyncio
import dataclasses
import logging
import weakref
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from . import messages
from .errors import (
    CheckInProgress,
    ProductNotTracked,
    ProductRemoved,
    ResolutionFailure,
    ValidationError,
)
from .models import (
    ARTICLE_PATTERN,
    ResolvedProduct,
    TrackedProduct,
    UserRecord,
    WARNING_LIVE_DATA_UNAVAILABLE,
    WARNING_PRICE_UNAVAILABLE,
)
from .notifier import TelegramNotifier
from .ratelimit import CooldownLimiter
from .storage import UserStorage


logger = logging.getLogger(__name__)

# 通知間隔（分鐘）到 cron 表達式
INTERVAL_CRON = {
    5: "*/5 * * * *",
    15: "*/15 * * * *",
    30: "*/30 * * * *",
    60: "0 * * * *",
    120: "0 */2 * * *",
}

NOTICE_CHANGED = "changed"
NOTICE_UNCHANGED = "unchanged"
NOTICE_REMOVED = "removed"
NOTICE_ERROR = "error"


def interval_to_cron(minutes: int) -> str:
    """
    將通知間隔轉為 cron 表達式

    Raises:
        ValidationError: 不在可選的間隔內
    """
    if minutes not in INTERVAL_CRON:
        raise ValidationError(f"Unsupported interval: {minutes} minutes", ValidationError.BAD_INTERVAL)
    return INTERVAL_CRON[minutes]


@dataclass
class Notice:
    """檢查價格後要發送給使用者的通知"""
    kind: str
    article: str
    caption: str
    image_url: Optional[str] = None


@dataclass
class AddResult:
    article: str
    product: TrackedProduct
    created: bool
    resolved: Optional[ResolvedProduct] = None


@dataclass
class ProductPage:
    article: str
    product: TrackedProduct
    page: int
    total_pages: int


@dataclass
class CheckReport:
    checked: int = 0
    updated: int = 0
    removed: List[str] = field(default_factory=list)
    notices: List[Notice] = field(default_factory=list)


class PriceTracker:
    """
    聊天室商品清單的操作入口

    同一聊天室的修改操作以 asyncio.Lock 序列化；價格檢查遇到
    正在進行的操作時直接拒絕 (CheckInProgress)，其他操作則排隊等待。
    """

    WAIT_NOTICE_DELAY = 5.0  # 秒

    def __init__(
        self,
        storage: UserStorage,
        resolver,
        notifier: TelegramNotifier,
        limiter: Optional[CooldownLimiter] = None,
        max_products: int = 50,
        wait_notice_delay: float = WAIT_NOTICE_DELAY,
    ):
        self.storage = storage
        self.resolver = resolver
        self.notifier = notifier
        self.limiter = limiter or CooldownLimiter()
        self.max_products = max_products
        self.wait_notice_delay = wait_notice_delay
        # 只保留仍被使用中的鎖，閒置聊天室的鎖會自動回收
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._registry_listener: Optional[Callable[[], Awaitable[None]]] = None

    def set_registry_listener(self, listener: Callable[[], Awaitable[None]]) -> None:
        """設定清單變動時的回呼（通常是排程器的 rederive）"""
        self._registry_listener = listener

    def _lock(self, chat_id: str) -> asyncio.Lock:
        lock = self._locks.get(str(chat_id))
        if lock is None:
            lock = asyncio.Lock()
            self._locks[str(chat_id)] = lock
        return lock

    async def _registry_changed(self) -> None:
        if self._registry_listener is None:
            return
        try:
            await self._registry_listener()
        except Exception:
            logger.exception("Schedule re-derivation failed")

    async def _load(self, chat_id: str) -> Optional[UserRecord]:
        return await asyncio.to_thread(self.storage.load_user, str(chat_id))

    async def _save(self, record: UserRecord) -> None:
        await asyncio.to_thread(self.storage.save_user, record)

    async def _delete(self, chat_id: str) -> None:
        await asyncio.to_thread(self.storage.delete_user, str(chat_id))

    async def _persist(self, record: UserRecord) -> None:
        """清單為空時刪除整份紀錄，否則寫回"""
        if record.products:
            await self._save(record)
        else:
            await self._delete(record.chat_id)

    async def send_text(self, chat_id: str, text: str, reply_markup: Optional[Dict] = None) -> bool:
        return await asyncio.to_thread(self.notifier.send_text, str(chat_id), text, reply_markup)

    async def send_photo(
        self,
        chat_id: str,
        image_url: Optional[str],
        caption: str,
        reply_markup: Optional[Dict] = None,
    ) -> bool:
        return await asyncio.to_thread(self.notifier.send_photo, str(chat_id), image_url, caption, reply_markup)

    async def _resolve(self, article: str) -> ResolvedProduct:
        return await asyncio.to_thread(self.resolver.resolve, article)

    async def _resolve_with_wait_notice(self, chat_id: str, article: str) -> ResolvedProduct:
        """解析商品，超過等待時間仍未完成時提示使用者稍候"""
        task = asyncio.ensure_future(self._resolve(article))
        done, _ = await asyncio.wait({task}, timeout=self.wait_notice_delay)
        if not done:
            logger.info(f"Resolution of {article} is slow, sending wait notice to {chat_id}")
            await self.send_text(chat_id, messages.WAIT_TEXT)
        return await task

    async def add_product(self, chat_id: str, article: str) -> AddResult:
        """
        新增追蹤商品

        Args:
            chat_id: 聊天室 ID
            article: 商品貨號（7~9 位數字）

        Returns:
            AddResult；商品已在清單中時 created 為 False，不做任何修改

        Raises:
            RateLimited: 冷卻時間內重複呼叫
            ValidationError: 貨號格式錯誤或超過商品數量上限
            ResolutionFailure: 商品解析失敗（不會寫入任何資料）
            PersistenceError: 寫入資料庫失敗
        """
        chat_id = str(chat_id)
        self.limiter.check(chat_id, "add")
        article = (article or "").strip()
        if not ARTICLE_PATTERN.match(article):
            raise ValidationError(f"Article must be 7-9 digits, got {article!r}")

        async with self._lock(chat_id):
            record = await self._load(chat_id) or UserRecord(chat_id)
            if article in record.products:
                logger.info(f"Product {article} already tracked in chat {chat_id}")
                return AddResult(article, record.products[article], created=False)
            if len(record.products) >= self.max_products:
                raise ValidationError(f"Product limit of {self.max_products} reached", ValidationError.LIMIT_REACHED)

            resolved = await self._resolve_with_wait_notice(chat_id, article)
            product = TrackedProduct.from_resolved(resolved)
            record.products[article] = product
            await self._save(record)
            logger.info(f"Added product {article} to chat {chat_id}")

        await self._registry_changed()
        return AddResult(article, product, created=True, resolved=resolved)

    async def remove_product(self, chat_id: str, article: str) -> TrackedProduct:
        """
        刪除追蹤商品，清單變空時一併刪除使用者紀錄

        Raises:
            ProductNotTracked: 清單中沒有此商品
        """
        chat_id = str(chat_id)
        self.limiter.check(chat_id, "remove")

        async with self._lock(chat_id):
            record = await self._load(chat_id)
            if record is None or article not in record.products:
                raise ProductNotTracked(f"Product {article} is not tracked in chat {chat_id}")
            product = record.products.pop(article)
            await self._persist(record)
            logger.info(f"Removed product {article} from chat {chat_id}")

        await self._registry_changed()
        return product

    async def get_products(self, chat_id: str) -> Dict[str, TrackedProduct]:
        record = await self._load(chat_id)
        return dict(record.products) if record else {}

    async def list_products(self, chat_id: str, page: int = 1) -> Optional[ProductPage]:
        """
        分頁列出商品，每頁一個商品，依加入順序排列

        Returns:
            ProductPage；清單為空時回傳 None
        """
        chat_id = str(chat_id)
        self.limiter.check(chat_id, "list")
        record = await self._load(chat_id)
        if record is None or not record.products:
            return None

        items = list(record.products.items())
        total_pages = len(items)
        page = min(max(int(page), 1), total_pages)
        article, product = items[page - 1]
        return ProductPage(article, product, page, total_pages)

    async def set_interval(self, chat_id: str, minutes: int) -> str:
        """
        設定通知間隔

        Returns:
            儲存的 cron 表達式

        Raises:
            ValidationError: 間隔不在選項內，或聊天室尚未追蹤任何商品
        """
        chat_id = str(chat_id)
        self.limiter.check(chat_id, "interval")
        cron = interval_to_cron(minutes)

        async with self._lock(chat_id):
            record = await self._load(chat_id)
            if record is None or not record.products:
                raise ValidationError("Add a product before configuring notifications", ValidationError.NO_PRODUCTS)
            record.notification_interval = cron
            await self._save(record)
            logger.info(f"Chat {chat_id} notification interval set to {cron}")

        await self._registry_changed()
        return cron

    async def check_prices(self, chat_id: str, unconditional: bool = False) -> CheckReport:
        """
        重新解析聊天室的所有商品並比較價格與庫存

        Args:
            chat_id: 聊天室 ID
            unconditional: 是否也回報沒有變化的商品（排程執行時使用，且不受冷卻限制）

        Returns:
            CheckReport

        Raises:
            RateLimited: 手動檢查在冷卻時間內重複呼叫
            CheckInProgress: 同一聊天室已有操作正在進行
            PersistenceError: 寫入資料庫失敗
        """
        chat_id = str(chat_id)
        if not unconditional:
            self.limiter.check(chat_id, "check")

        lock = self._lock(chat_id)
        if lock.locked():
            raise CheckInProgress(f"Chat {chat_id} already has an operation in progress")

        report = CheckReport()
        async with lock:
            record = await self._load(chat_id)
            if record is None or not record.products:
                return report
            if not unconditional:
                await self.send_text(chat_id, messages.CHECK_STARTED_TEXT)

            mutated = False
            for article, product in list(record.products.items()):
                report.checked += 1
                logger.info(f"Checking product {article} for chat {chat_id}")
                try:
                    resolved = await self._resolve(article)
                except ProductRemoved:
                    logger.info(f"Product {article} was removed upstream, evicting from chat {chat_id}")
                    del record.products[article]
                    mutated = True
                    report.removed.append(article)
                    report.notices.append(Notice(
                        NOTICE_REMOVED, article,
                        messages.removed_caption(article, product.name),
                        product.image_url,
                    ))
                    continue
                except ResolutionFailure as e:
                    logger.warning(f"Check of {article} failed: {e}")
                    report.notices.append(Notice(
                        NOTICE_ERROR, article,
                        messages.error_caption(article, product.name, messages.failure_reason(e)),
                        product.image_url,
                    ))
                    continue
                except Exception as e:
                    logger.exception(f"Unexpected error while checking {article}")
                    report.notices.append(Notice(
                        NOTICE_ERROR, article,
                        messages.error_caption(article, product.name, str(e)),
                        product.image_url,
                    ))
                    continue

                if self._apply_check(article, product, resolved, unconditional, report):
                    mutated = True

            if mutated:
                await self._persist(record)
            registry_emptied = mutated and not record.products

        if registry_emptied:
            await self._registry_changed()
        return report

    @staticmethod
    def _apply_check(
        article: str,
        product: TrackedProduct,
        resolved: ResolvedProduct,
        unconditional: bool,
        report: CheckReport,
    ) -> bool:
        """
        比較解析結果與已儲存資料，有變化時更新商品並追加歷史

        即時庫存 API 或價格暫時無法取得時沿用舊值，避免誤報變化。
        """
        if WARNING_LIVE_DATA_UNAVAILABLE in resolved.warnings:
            resolved = dataclasses.replace(resolved, quantity=product.quantity, rating=product.rating)
        if WARNING_PRICE_UNAVAILABLE in resolved.warnings:
            resolved = dataclasses.replace(resolved, price=product.current_price)

        old_price, old_quantity = product.current_price, product.quantity
        if resolved.price != old_price or resolved.quantity != old_quantity:
            product.record_change(resolved)
            report.updated += 1
            report.notices.append(Notice(
                NOTICE_CHANGED, article,
                messages.change_caption(
                    article, product.name, old_price, resolved.price, old_quantity, resolved.quantity
                ),
                product.image_url,
            ))
            return True

        if unconditional:
            report.notices.append(Notice(
                NOTICE_UNCHANGED, article,
                messages.unchanged_caption(article, product),
                product.image_url,
            ))
        return False

    async def check_and_notify(self, chat_id: str, unconditional: bool = False) -> CheckReport:
        """檢查價格並把通知送到聊天室；手動檢查另外附上摘要"""
        report = await self.check_prices(chat_id, unconditional)
        if report.checked == 0:
            if not unconditional:
                await self.send_text(chat_id, messages.NOTHING_TO_CHECK_TEXT)
            return report

        for notice in report.notices:
            await self.send_photo(chat_id, notice.image_url, notice.caption)
        if not unconditional:
            await self.send_text(chat_id, messages.summary_text(report.updated))
        logger.info(
            f"Price check for chat {chat_id} done: {report.checked} checked, "
            f"{report.updated} updated, {len(report.removed)} removed"
        )
        return report
