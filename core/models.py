"""
資料模型模組

定義解析結果 (ResolvedProduct)、追蹤中的商品 (TrackedProduct)
與使用者紀錄 (UserRecord)，並負責與儲存文件格式互相轉換。
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Any, Optional, List

from .errors import PersistenceError


TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

# 缺少名稱或品牌時的顯示文字
UNKNOWN_TEXT = "Не указано"

ARTICLE_PATTERN = re.compile(r"^\d{7,9}$")

# 解析警告代碼
WARNING_OUT_OF_STOCK = "out_of_stock"
WARNING_PRICE_UNAVAILABLE = "price_unavailable"
WARNING_LIVE_DATA_UNAVAILABLE = "live_data_unavailable"
WARNING_IMAGE_UNAVAILABLE = "image_unavailable"


def now_timestamp() -> str:
    return datetime.now().strftime(TIMESTAMP_FORMAT)


def to_price(value: Any) -> Decimal:
    """將任意數值轉為兩位小數的 Decimal，無法轉換時回傳 0"""
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError, TypeError):
        return Decimal("0.00")


def _to_int(value: Any) -> int:
    try:
        return max(int(value), 0)
    except (ValueError, TypeError):
        return 0


def _to_rating(value: Any) -> float:
    try:
        rating = float(value)
    except (ValueError, TypeError):
        return 0.0
    return min(max(rating, 0.0), 5.0)


@dataclass
class ResolvedProduct:
    """單次解析的商品結果（不直接儲存）"""
    article: str
    name: str
    brand: str
    price: Decimal
    rating: float = 0.0
    quantity: int = 0
    image_url: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def in_stock(self) -> bool:
        return WARNING_OUT_OF_STOCK not in self.warnings


@dataclass
class HistoryEntry:
    date: str
    price: Decimal
    quantity: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"date": self.date, "price": str(self.price), "quantity": self.quantity}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            date=str(data.get("date") or now_timestamp()),
            price=to_price(data.get("price", 0)),
            quantity=_to_int(data.get("quantity", 0)),
        )


@dataclass
class TrackedProduct:
    """聊天室追蹤中的商品"""
    name: str
    brand: str
    current_price: Decimal
    quantity: int = 0
    rating: float = 0.0
    image_url: Optional[str] = None
    added_date: str = field(default_factory=now_timestamp)
    history: List[HistoryEntry] = field(default_factory=list)

    @classmethod
    def from_resolved(cls, resolved: ResolvedProduct, timestamp: Optional[str] = None) -> "TrackedProduct":
        """由解析結果建立新商品，歷史記錄只含一筆"""
        timestamp = timestamp or now_timestamp()
        return cls(
            name=resolved.name,
            brand=resolved.brand,
            current_price=resolved.price,
            quantity=resolved.quantity,
            rating=resolved.rating,
            image_url=resolved.image_url,
            added_date=timestamp,
            history=[HistoryEntry(timestamp, resolved.price, resolved.quantity)],
        )

    def record_change(self, resolved: ResolvedProduct, timestamp: Optional[str] = None) -> None:
        """更新目前價格/庫存並追加一筆歷史記錄"""
        timestamp = timestamp or now_timestamp()
        # 歷史記錄必須依時間遞增
        if self.history and timestamp < self.history[-1].date:
            timestamp = self.history[-1].date
        self.current_price = resolved.price
        self.quantity = resolved.quantity
        self.rating = resolved.rating
        if resolved.image_url:
            self.image_url = resolved.image_url
        self.history.append(HistoryEntry(timestamp, resolved.price, resolved.quantity))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "brand": self.brand,
            "current_price": str(self.current_price),
            "quantity": self.quantity,
            "rating": self.rating,
            "imageUrl": self.image_url or "",
            "added_date": self.added_date,
            "history": [entry.to_dict() for entry in self.history],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrackedProduct":
        """
        由儲存文件還原商品，缺少的欄位以預設值補齊

        Args:
            data: 儲存文件中的商品字典

        Returns:
            TrackedProduct
        """
        current_price = to_price(data.get("current_price", 0))
        quantity = _to_int(data.get("quantity", 0))
        added_date = str(data.get("added_date") or now_timestamp())

        raw_history = data.get("history")
        if isinstance(raw_history, list) and raw_history:
            history = [HistoryEntry.from_dict(entry) for entry in raw_history if isinstance(entry, dict)]
        else:
            history = []
        if not history:
            history = [HistoryEntry(added_date, current_price, quantity)]

        return cls(
            name=str(data.get("name") or UNKNOWN_TEXT),
            brand=str(data.get("brand") or UNKNOWN_TEXT),
            current_price=current_price,
            quantity=quantity,
            rating=_to_rating(data.get("rating", 0)),
            image_url=data.get("imageUrl") or None,
            added_date=added_date,
            history=history,
        )


@dataclass
class UserRecord:
    """聊天室的完整追蹤清單與通知排程"""
    chat_id: str
    products: Dict[str, TrackedProduct] = field(default_factory=dict)
    notification_interval: Optional[str] = None

    def __post_init__(self):
        self.chat_id = str(self.chat_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chatId": self.chat_id,
            "products": {article: product.to_dict() for article, product in self.products.items()},
            "notificationInterval": self.notification_interval,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserRecord":
        """
        驗證並還原使用者文件

        Raises:
            PersistenceError: 文件結構不正確或貨號不是數字
        """
        if not isinstance(data, dict):
            raise PersistenceError("User document must be an object")

        products = {}
        for article, product in (data.get("products") or {}).items():
            if not isinstance(article, str) or not article.isdigit():
                raise PersistenceError(f"Invalid article in stored document: {article}")
            if not isinstance(product, dict):
                raise PersistenceError(f"Invalid product document for {article}")
            products[article] = TrackedProduct.from_dict(product)

        interval = data.get("notificationInterval")
        return cls(
            chat_id=str(data.get("chatId")),
            products=products,
            notification_interval=str(interval) if interval else None,
        )
