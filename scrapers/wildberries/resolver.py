"""
Wildberries 商品解析模組

將商品貨號解析為標準化的商品資料：
- 依序探測 basket-01 ~ basket-100 分片主機，找出提供 card.json 的主機
- 以 card.wb.ru 即時庫存 API 取得權威價格與庫存
- 依序驗證多種圖片路徑，找出可用的商品圖片
- 兩種上游資料經 reconcile() 合併為 ResolvedProduct
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Any, Iterator, List, Optional, Tuple

import requests

from core.errors import (
    IncompleteMetadata,
    MetadataUnavailable,
    NetworkTimeout,
    OutOfStock,
    ProductRemoved,
)
from core.models import (
    ResolvedProduct,
    UNKNOWN_TEXT,
    WARNING_IMAGE_UNAVAILABLE,
    WARNING_LIVE_DATA_UNAVAILABLE,
    WARNING_OUT_OF_STOCK,
    WARNING_PRICE_UNAVAILABLE,
    to_price,
)
from .host_cache import HostCache


logger = logging.getLogger(__name__)


@dataclass
class CardMetadata:
    """分片主機上的 card.json 內容"""
    host: str
    name: Optional[str]
    brand: str


@dataclass
class LiveInventory:
    """
    card.wb.ru 即時庫存 API 的回應

    found 為 False 表示 API 正常回應但清單中沒有此商品。
    """
    found: bool
    quantity: int = 0
    price: Optional[Decimal] = None
    rating: float = 0.0
    image_url: Optional[str] = None


@dataclass
class MetadataLookupStats:
    """
    分片主機探測統計

    只有 404/410 是主機明確回應「沒有此商品」；其他非 200 狀態碼
    （429、5xx、403 等）與無法解析的回應都算暫時性錯誤。
    """
    attempts: int = 0
    transport_errors: int = 0
    missing: int = 0

    @property
    def transient_errors(self) -> int:
        return self.attempts - self.transport_errors - self.missing

    @property
    def all_transport_errors(self) -> bool:
        return self.attempts > 0 and self.transport_errors == self.attempts

    @property
    def all_missing(self) -> bool:
        return self.attempts > 0 and self.missing == self.attempts


def kopecks_to_price(value: Any) -> Optional[Decimal]:
    """將戈比（最小貨幣單位）轉為盧布價格"""
    if value is None:
        return None
    try:
        return to_price(Decimal(str(value)) / 100)
    except ArithmeticError:
        return None


def reconcile(
    article: str,
    metadata: CardMetadata,
    live: Optional[LiveInventory],
    history_price: Optional[Decimal],
    image_url: Optional[str],
) -> ResolvedProduct:
    """
    合併商品資料與即時庫存資料

    名稱與品牌來自 card.json；價格、庫存與評分優先採用即時庫存 API，
    否則使用價格歷史的最新價格，評分為 0。

    Raises:
        IncompleteMetadata: card.json 沒有名稱欄位
    """
    if not metadata.name:
        raise IncompleteMetadata(article, f"card.json for {article} has no name")

    warnings: List[str] = []
    quantity = 0
    rating = 0.0
    price: Optional[Decimal] = None

    if live is not None and live.found:
        quantity = live.quantity
        rating = live.rating
        price = live.price
        if quantity == 0:
            warnings.append(WARNING_OUT_OF_STOCK)
    else:
        warnings.append(WARNING_LIVE_DATA_UNAVAILABLE)

    if price is None:
        price = history_price
    if price is None or price <= 0:
        price = Decimal("0.00")
        warnings.append(WARNING_PRICE_UNAVAILABLE)

    if not image_url:
        warnings.append(WARNING_IMAGE_UNAVAILABLE)

    return ResolvedProduct(
        article=article,
        name=metadata.name,
        brand=metadata.brand or UNKNOWN_TEXT,
        price=price,
        rating=rating,
        quantity=quantity,
        image_url=image_url or None,
        warnings=warnings,
    )


class WildberriesResolver:
    """
    Wildberries 商品解析器

    所有請求都是循序的：一次解析最多只會有一個進行中的請求。
    """

    HOST_COUNT = 100
    # 分片主機明確表示沒有此商品的狀態碼
    MISSING_STATUSES = (404, 410)

    CARD_URL = "https://basket-{host}.wbbasket.ru/vol{vol}/part{part}/{article}/info/ru/card.json"
    PRICE_HISTORY_URL = "https://basket-{host}.wbbasket.ru/vol{vol}/part{part}/{article}/info/price-history.json"
    DETAIL_URL = "https://card.wb.ru/cards/v4/detail"
    DETAIL_PARAMS = {
        "appType": 1,
        "curr": "rub",
        "dest": 123585822,
        "spp": 30,
        "hide_dtype": 13,
        "ab_testid": "no_reranking",
        "lang": "ru",
    }

    # 圖片路徑，依優先順序排列
    IMAGE_URL_TEMPLATES = [
        "https://basket-{host}.wbbasket.ru/vol{vol}/part{part}/{article}/images/big/1.webp",
        "https://basket-{host}.wbbasket.ru/vol{vol}/part{part}/{article}/images/tm/1.webp",
        "https://images.wbstatic.net/big/new/{vol}/{article}-1.jpg",
    ]

    DEFAULT_HEADERS = {
        "User-Agent": (
            "Mozilla/5.0 (iPhone; CPU iPhone OS 16_6 like Mac OS X) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/16.6 Mobile/15E148 Safari/604.1"
        ),
        "Accept": "*/*",
        "Origin": "https://www.wildberries.ru",
    }

    DATA_TIMEOUT = 15  # 秒
    HEAD_TIMEOUT = 5  # 秒

    def __init__(
        self,
        host_cache: HostCache,
        data_timeout: float = DATA_TIMEOUT,
        head_timeout: float = HEAD_TIMEOUT,
    ):
        self.host_cache = host_cache
        self.data_timeout = data_timeout
        self.head_timeout = head_timeout

    @staticmethod
    def buckets(article: str) -> Tuple[int, int]:
        """計算 volume bucket 與 part bucket"""
        nm = int(article)
        return nm // 100000, nm // 1000

    @classmethod
    def host_tokens(cls) -> Iterator[str]:
        """依序產生主機編號 01 ~ 100"""
        for i in range(1, cls.HOST_COUNT + 1):
            yield str(i).zfill(2)

    def candidate_hosts(self, vol: int) -> List[str]:
        """快取的主機優先，其餘主機依編號遞增排列"""
        hint = self.host_cache.get(vol)
        hosts = [hint] if hint else []
        hosts.extend(host for host in self.host_tokens() if host != hint)
        return hosts

    def _headers(self, article: str) -> Dict[str, str]:
        headers = dict(self.DEFAULT_HEADERS)
        headers["Referer"] = f"https://www.wildberries.ru/catalog/{article}/detail.aspx"
        return headers

    def _fetch_json(self, url: str, article: str, **kwargs) -> Tuple[int, Any]:
        """
        GET JSON 文件

        Returns:
            (HTTP 狀態碼, 解析後的 JSON)；非 200 或無法解析時 JSON 為 None

        Raises:
            requests.RequestException: 傳輸層錯誤（逾時、連線失敗）
        """
        response = requests.get(url, headers=self._headers(article), timeout=self.data_timeout, **kwargs)
        if response.status_code != 200:
            return response.status_code, None
        try:
            return response.status_code, response.json()
        except ValueError:
            logger.debug(f"Unparseable JSON from {url}")
            return response.status_code, None

    def _get_json(self, url: str, article: str, **kwargs) -> Any:
        return self._fetch_json(url, article, **kwargs)[1]

    def fetch_metadata(
        self,
        article: str,
        vol: int,
        part: int,
    ) -> Tuple[Optional[CardMetadata], MetadataLookupStats]:
        """
        循序探測分片主機取得 card.json，第一個成功的主機即停止

        Returns:
            (CardMetadata 或 None, 探測統計)
        """
        stats = MetadataLookupStats()
        for host in self.candidate_hosts(vol):
            url = self.CARD_URL.format(host=host, vol=vol, part=part, article=article)
            stats.attempts += 1
            try:
                status_code, data = self._fetch_json(url, article)
            except requests.RequestException as e:
                stats.transport_errors += 1
                logger.debug(f"card.json request failed on basket-{host}: {e}")
                continue
            if status_code in self.MISSING_STATUSES:
                stats.missing += 1
                continue
            if not isinstance(data, dict):
                logger.debug(f"basket-{host} answered HTTP {status_code} without usable card.json")
                continue

            self.host_cache.set(vol, host)
            logger.info(f"card.json for {article} found on basket-{host}")
            selling = data.get("selling") or {}
            return CardMetadata(
                host=host,
                name=data.get("imt_name") or None,
                brand=selling.get("brand_name") or UNKNOWN_TEXT,
            ), stats

        logger.warning(
            f"No basket host served card.json for {article} "
            f"({stats.attempts} attempts, {stats.missing} not found, "
            f"{stats.transport_errors} transport errors, {stats.transient_errors} other errors)"
        )
        return None, stats

    def fetch_live(self, article: str) -> Optional[LiveInventory]:
        """
        查詢即時庫存 API

        Returns:
            LiveInventory；請求失敗時回傳 None
        """
        params = dict(self.DETAIL_PARAMS)
        params["nm"] = article
        try:
            data = self._get_json(self.DETAIL_URL, article, params=params)
        except requests.RequestException as e:
            logger.warning(f"Live inventory request failed for {article}: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"Live inventory returned no usable body for {article}")
            return None

        # 舊版 API 將清單放在 data.products
        products = data.get("products")
        if products is None and isinstance(data.get("data"), dict):
            products = data["data"].get("products")

        for product in products or []:
            if str(product.get("id")) == str(article):
                return self._parse_live_product(product)
        return LiveInventory(found=False)

    @staticmethod
    def _parse_live_product(product: Dict[str, Any]) -> LiveInventory:
        sizes = product.get("sizes") or []

        quantity = product.get("totalQuantity")
        if quantity is None:
            quantity = sum(
                stock.get("qty", 0) or 0
                for size in sizes
                for stock in (size.get("stocks") or [])
            )

        price = None
        for size in sizes:
            price = kopecks_to_price((size.get("price") or {}).get("product"))
            if price is not None:
                break

        rating = product.get("reviewRating")
        if rating is None:
            rating = product.get("rating", 0)

        image_url = None
        colors = product.get("colors") or []
        if colors and isinstance(colors[0], dict):
            image_url = colors[0].get("big_photo") or None

        try:
            quantity = max(int(quantity), 0)
        except (ValueError, TypeError):
            quantity = 0
        try:
            rating = min(max(float(rating or 0), 0.0), 5.0)
        except (ValueError, TypeError):
            rating = 0.0

        return LiveInventory(
            found=True,
            quantity=quantity,
            price=price,
            rating=rating,
            image_url=image_url,
        )

    def fetch_history_price(self, host: str, vol: int, part: int, article: str) -> Optional[Decimal]:
        """取得價格歷史中的最新價格"""
        url = self.PRICE_HISTORY_URL.format(host=host, vol=vol, part=part, article=article)
        try:
            data = self._get_json(url, article)
        except requests.RequestException as e:
            logger.warning(f"Price history request failed for {article}: {e}")
            return None
        if not isinstance(data, list) or not data:
            return None
        latest = data[-1] if isinstance(data[-1], dict) else {}
        return kopecks_to_price((latest.get("price") or {}).get("RUB"))

    def verify_image(self, url: str, article: str) -> bool:
        """以 HEAD 請求確認圖片是否存在"""
        try:
            response = requests.head(url, headers=self._headers(article), timeout=self.head_timeout)
        except requests.RequestException as e:
            logger.debug(f"Image check failed: {url}: {e}")
            return False
        return response.status_code == 200

    def resolve_image(self, host: str, vol: int, part: int, article: str) -> Optional[str]:
        """依優先順序驗證圖片路徑，全部失敗時回傳 None"""
        for template in self.IMAGE_URL_TEMPLATES:
            url = template.format(host=host, vol=vol, part=part, article=article)
            if self.verify_image(url, article):
                return url
        logger.info(f"No image available for {article}")
        return None

    def resolve(self, article: str) -> ResolvedProduct:
        """
        解析商品貨號

        Args:
            article: 商品貨號（純數字字串）

        Returns:
            ResolvedProduct

        Raises:
            ProductRemoved: 商品已被永久下架
            OutOfStock: 沒有商品資料且即時庫存為 0
            NetworkTimeout: 所有分片主機都在傳輸層失敗
            MetadataUnavailable: 找不到商品資料
            IncompleteMetadata: 商品資料缺少名稱
        """
        vol, part = self.buckets(article)
        metadata, stats = self.fetch_metadata(article, vol, part)
        if metadata is not None and not metadata.name:
            raise IncompleteMetadata(article, f"card.json for {article} on basket-{metadata.host} has no name")
        live = self.fetch_live(article)

        if metadata is None:
            if live is not None and live.found and live.quantity == 0:
                raise OutOfStock(article, f"{article} has no metadata and zero stock")
            if live is not None and not live.found and stats.all_missing:
                logger.info(f"{article} is absent from every upstream source, treating as removed")
                raise ProductRemoved(article, f"{article} was removed by the seller")
            if stats.all_transport_errors:
                raise NetworkTimeout(article, f"All basket hosts timed out for {article}")
            raise MetadataUnavailable(article, f"No basket host served metadata for {article}")

        image_url = None
        if live is not None and live.image_url and self.verify_image(live.image_url, article):
            image_url = live.image_url
        if image_url is None:
            image_url = self.resolve_image(metadata.host, vol, part, article)

        history_price = None
        if live is None or not live.found or live.price is None:
            history_price = self.fetch_history_price(metadata.host, vol, part, article)

        resolved = reconcile(article, metadata, live, history_price, image_url)
        logger.info(
            f"Resolved {article}: price={resolved.price} quantity={resolved.quantity} "
            f"warnings={resolved.warnings}"
        )
        return resolved
