"""
使用者操作解碼

將 Telegram 的回呼資料（callback_data）、指令與選單文字
在傳輸層邊界解碼一次，轉為明確的操作類型。
"""

import re
from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class Start:
    pass


@dataclass(frozen=True)
class ShowMenu:
    pass


@dataclass(frozen=True)
class PromptArticle:
    """請使用者輸入貨號"""


@dataclass(frozen=True)
class AddProduct:
    article: str


@dataclass(frozen=True)
class ChooseRemoval:
    """顯示可刪除的商品清單"""


@dataclass(frozen=True)
class RemoveProduct:
    article: str


@dataclass(frozen=True)
class ListProducts:
    page: int = 1


@dataclass(frozen=True)
class CheckPrices:
    pass


@dataclass(frozen=True)
class ChooseInterval:
    """顯示通知間隔選單"""


@dataclass(frozen=True)
class SetInterval:
    minutes: int


@dataclass(frozen=True)
class Unknown:
    raw: str = ""


Action = Union[
    Start, ShowMenu, PromptArticle, AddProduct, ChooseRemoval, RemoveProduct,
    ListProducts, CheckPrices, ChooseInterval, SetInterval, Unknown,
]


# 主選單按鈕文字
MENU_ADD = "🛒 Добавить товар"
MENU_LIST = "🛍️ Список товаров"
MENU_REMOVE = "❌ Удалить товар"
MENU_CHECK = "🔍 Проверить цены"
MENU_INTERVAL = "⏰ Настроить уведомления"

MENU_TEXT_ACTIONS = {
    MENU_ADD: PromptArticle(),
    MENU_LIST: ListProducts(1),
    MENU_REMOVE: ChooseRemoval(),
    MENU_CHECK: CheckPrices(),
    MENU_INTERVAL: ChooseInterval(),
}

SIMPLE_CALLBACKS = {
    "add_product": PromptArticle(),
    "remove_product": ChooseRemoval(),
    "list_products": ListProducts(1),
    "check_prices": CheckPrices(),
    "notifications": ChooseInterval(),
    "main_menu": ShowMenu(),
}

REMOVE_PATTERN = re.compile(r"^remove_(\d+)$")
PAGE_PATTERN = re.compile(r"^page_(?:next|prev)_(\d+)$")
INTERVAL_PATTERN = re.compile(r"^interval_(\d+)$")
COMMAND_PATTERN = re.compile(r"^/(\w+)(?:@\w+)?(?:\s+(.*))?$", re.DOTALL)


def decode_callback(data: str) -> Action:
    """解碼 inline 鍵盤的 callback_data"""
    data = (data or "").strip()
    if data in SIMPLE_CALLBACKS:
        return SIMPLE_CALLBACKS[data]

    match = REMOVE_PATTERN.match(data)
    if match:
        return RemoveProduct(match.group(1))
    match = PAGE_PATTERN.match(data)
    if match:
        return ListProducts(int(match.group(1)))
    match = INTERVAL_PATTERN.match(data)
    if match:
        return SetInterval(int(match.group(1)))
    return Unknown(data)


def decode_command(command: str, argument: str) -> Action:
    argument = argument.strip()
    if command == "start":
        return Start()
    if command == "menu":
        return ShowMenu()
    if command == "add":
        return AddProduct(argument) if argument else PromptArticle()
    if command == "remove":
        return RemoveProduct(argument) if argument else ChooseRemoval()
    if command == "list":
        return ListProducts(1)
    if command == "check":
        return CheckPrices()
    if command == "interval":
        return ChooseInterval()
    return Unknown(f"/{command}")


def decode_message(text: str, awaiting_article: bool = False) -> Action:
    """
    解碼文字訊息

    Args:
        text: 訊息文字
        awaiting_article: 使用者是否正在輸入貨號

    Returns:
        對應的操作
    """
    text = (text or "").strip()
    match = COMMAND_PATTERN.match(text)
    if match:
        return decode_command(match.group(1).lower(), match.group(2) or "")
    if text in MENU_TEXT_ACTIONS:
        return MENU_TEXT_ACTIONS[text]
    if awaiting_article:
        return AddProduct(text)
    return ShowMenu()
