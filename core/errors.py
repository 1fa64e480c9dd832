"""
錯誤類型模組

追蹤器、解析器與儲存層共用的例外類別。
"""


class TrackerError(Exception):
    """所有追蹤相關錯誤的基礎類別"""


class ValidationError(TrackerError):
    """輸入不合法（貨號格式錯誤、超過數量上限等），不會發出任何網路請求"""

    BAD_ARTICLE = "bad_article"
    LIMIT_REACHED = "limit_reached"
    BAD_INTERVAL = "bad_interval"
    NO_PRODUCTS = "no_products"

    def __init__(self, message: str, reason: str = BAD_ARTICLE):
        super().__init__(message)
        self.reason = reason


class RateLimited(TrackerError):
    """同一聊天室在冷卻時間內重複呼叫同一操作"""

    def __init__(self, operation: str, retry_after: float):
        super().__init__(f"{operation} throttled, retry after {retry_after:.1f}s")
        self.operation = operation
        self.retry_after = retry_after


class CheckInProgress(TrackerError):
    """同一聊天室已有價格檢查正在執行"""


class ProductNotTracked(TrackerError):
    """聊天室沒有追蹤此商品"""


class PersistenceError(TrackerError):
    """資料庫讀寫失敗"""


class ResolutionFailure(TrackerError):
    """
    商品解析失敗

    Attributes:
        article: 發生失敗的商品貨號
    """

    def __init__(self, article: str, message: str = ""):
        super().__init__(message or f"{type(self).__name__}: {article}")
        self.article = article


class UpstreamUnavailable(ResolutionFailure):
    """上游資料暫時無法取得，稍後可重試"""


class MetadataUnavailable(UpstreamUnavailable):
    """所有分片主機都無法提供商品資料"""


class NetworkTimeout(MetadataUnavailable):
    """所有分片主機的請求都在傳輸層失敗（逾時、連線錯誤）"""


class OutOfStock(MetadataUnavailable):
    """沒有商品資料且即時庫存為 0"""


class IncompleteMetadata(ResolutionFailure):
    """商品資料缺少名稱欄位"""


class ProductRemoved(ResolutionFailure):
    """商品已被賣家永久下架"""
