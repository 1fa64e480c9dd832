"""
訊息格式化模組

產生所有通知的 HTML 文字與 Telegram 鍵盤設定。
"""

from decimal import Decimal
from html import escape
from typing import Dict, List, Tuple

from .actions import MENU_ADD, MENU_CHECK, MENU_INTERVAL, MENU_LIST, MENU_REMOVE
from .errors import (
    IncompleteMetadata,
    OutOfStock,
    ProductRemoved,
    ResolutionFailure,
    UpstreamUnavailable,
)
from .models import (
    ResolvedProduct,
    TrackedProduct,
    WARNING_OUT_OF_STOCK,
    WARNING_PRICE_UNAVAILABLE,
)


PRICE_UNAVAILABLE_TEXT = "Цена недоступна"

WELCOME_TEXT = (
    "🛍️ <b>Бот для отслеживания цен на Wildberries</b>\n\n"
    "Ваш chat_id: {chat_id}\n\n"
    "Выберите действие ниже:"
)
MENU_PROMPT = "Выберите действие:"
ARTICLE_PROMPT = "ℹ️ Введите артикул товара:"
WAIT_TEXT = "⏳ Пожалуйста, подождите, идёт обработка..."
CHECK_STARTED_TEXT = "🔄 Начинаю проверку цен..."
EMPTY_LIST_TEXT = "📭 Список отслеживаемых товаров пуст."
NOTHING_TO_CHECK_TEXT = "ℹ️ Нет товаров для проверки."
NO_CHANGES_TEXT = "ℹ️ Изменений цен не обнаружено."
CHOOSE_REMOVAL_TEXT = "Выберите товар для удаления:"
CHOOSE_INTERVAL_TEXT = "Выберите интервал уведомлений:"
TOO_SOON_TEXT = "⏱ Слишком часто. Повторите через {seconds} сек."
CHECK_IN_PROGRESS_TEXT = "🔄 Проверка цен уже выполняется, дождитесь её завершения."
STORAGE_ERROR_TEXT = "❌ Не удалось сохранить данные. Попробуйте позже."
UNEXPECTED_ERROR_TEXT = "❌ Произошла ошибка. Попробуйте позже."

INTERVAL_LABELS = {
    5: "5 минут",
    15: "15 минут",
    30: "30 минут",
    60: "1 час",
    120: "2 часа",
}


def product_link(article: str) -> str:
    return f"https://www.wildberries.ru/catalog/{article}/detail.aspx"


def format_price(price: Decimal) -> str:
    """格式化盧布價格，價格為 0 時顯示無法取得"""
    if price is None or price <= 0:
        return PRICE_UNAVAILABLE_TEXT
    return f"{price:.2f} руб."


def format_quantity(quantity: int) -> str:
    if quantity <= 0:
        return "нет в наличии"
    return f"{quantity} шт."


def added_caption(article: str, resolved: ResolvedProduct) -> str:
    lines = [
        "✅ <b>Товар добавлен:</b>",
        "",
        f"🏷️ Название: {escape(resolved.name)}",
        f"🏭 Бренд: {escape(resolved.brand)}",
        f"⭐ Рейтинг: {resolved.rating}",
        f"💰 Текущая цена: {format_price(resolved.price)}",
        f"📦 Остаток: {format_quantity(resolved.quantity)}",
    ]
    if WARNING_OUT_OF_STOCK in resolved.warnings:
        lines.append("⚠️ Товар сейчас отсутствует на складе")
    if WARNING_PRICE_UNAVAILABLE in resolved.warnings:
        lines.append("⚠️ Цена временно недоступна")
    lines.extend(["", f'🔗 <a href="{product_link(article)}">Ссылка</a>'])
    return "\n".join(lines)


def already_tracked_text(article: str) -> str:
    return f"ℹ️ Товар {article} уже отслеживается!"


def product_caption(article: str, product: TrackedProduct) -> str:
    return (
        f"🔹 <b>{escape(product.name)}</b>\n\n"
        f"Артикул: <code>{article}</code>\n"
        f"Цена: {format_price(product.current_price)}\n"
        f"Остаток: {format_quantity(product.quantity)}\n"
        f"Добавлен: {product.added_date}\n\n"
        f'<a href="{product_link(article)}">Открыть на WB</a>'
    )


def change_caption(
    article: str,
    name: str,
    old_price: Decimal,
    new_price: Decimal,
    old_quantity: int,
    new_quantity: int,
) -> str:
    lines = [f"🔔 <b>{escape(name)}</b>", "", f"Артикул: <code>{article}</code>"]
    if old_price != new_price:
        lines.append(f"Старая цена: {format_price(old_price)}")
        lines.append(f"Новая цена: {format_price(new_price)}")
        lines.append(f"Разница: {new_price - old_price:+.2f} руб.")
    else:
        lines.append(f"Цена: {format_price(new_price)}")
    if old_quantity != new_quantity:
        lines.append(f"Остаток: {format_quantity(old_quantity)} → {format_quantity(new_quantity)}")
    lines.extend(["", f'<a href="{product_link(article)}">Открыть</a>'])
    return "\n".join(lines)


def unchanged_caption(article: str, product: TrackedProduct) -> str:
    return (
        f"🔹 <b>{escape(product.name)}</b>\n\n"
        f"Артикул: <code>{article}</code>\n"
        f"Цена: {format_price(product.current_price)} (без изменений)\n\n"
        f'<a href="{product_link(article)}">Открыть</a>'
    )


def removed_caption(article: str, name: str) -> str:
    return (
        f"🗑 <b>{escape(name)}</b>\n\n"
        f"Артикул: <code>{article}</code>\n"
        f"Товар снят с продажи и удалён из списка отслеживания."
    )


def removed_by_user_text(article: str, name: str) -> str:
    return f"🗑 Товар удалён: {escape(name)} (арт. {article})"


def failure_reason(error: ResolutionFailure) -> str:
    """將解析失敗轉為使用者可讀的原因"""
    if isinstance(error, OutOfStock):
        return "Товар отсутствует на складе"
    if isinstance(error, ProductRemoved):
        return "Товар снят с продажи"
    if isinstance(error, IncompleteMetadata):
        return "Отсутствуют ключевые данные о товаре"
    if isinstance(error, UpstreamUnavailable):
        return "Wildberries временно недоступен, попробуйте позже"
    return "Не удалось получить данные о товаре"


def error_caption(article: str, name: str, reason: str) -> str:
    return (
        f"❌ <b>{escape(name)}</b>\n\n"
        f"Артикул: <code>{article}</code>\n"
        f"Ошибка: {escape(reason)}\n\n"
        f'<a href="{product_link(article)}">Открыть</a>'
    )


def add_failed_text(article: str, reason: str) -> str:
    return (
        f"❌ Не удалось получить данные о товаре с артикулом {article}.\n\n"
        f"Причина: {escape(reason)}\n\n"
        f'Проверьте артикул: <a href="{product_link(article)}">ссылка</a>'
    )


def summary_text(updated: int) -> str:
    if updated > 0:
        return f"📊 Обновлено {updated} цен"
    return NO_CHANGES_TEXT


def interval_set_text(minutes: int) -> str:
    label = INTERVAL_LABELS.get(minutes, f"{minutes} минут")
    return f"⏰ Уведомления будут приходить каждые {label}."


def main_menu_keyboard() -> Dict:
    return {
        "keyboard": [
            [MENU_ADD, MENU_LIST],
            [MENU_REMOVE, MENU_CHECK],
            [MENU_INTERVAL],
        ],
        "resize_keyboard": True,
        "one_time_keyboard": True,
    }


def interval_keyboard() -> Dict:
    buttons = [
        {"text": label, "callback_data": f"interval_{minutes}"}
        for minutes, label in INTERVAL_LABELS.items()
    ]
    return {
        "inline_keyboard": [
            buttons[:3],
            buttons[3:],
            [{"text": "Вернуться в главное меню", "callback_data": "main_menu"}],
        ]
    }


def removal_keyboard(products: List[Tuple[str, TrackedProduct]]) -> Dict:
    return {
        "inline_keyboard": [
            [{"text": f"{product.name} (арт. {article})", "callback_data": f"remove_{article}"}]
            for article, product in products
        ]
    }


def pagination_keyboard(page: int, total_pages: int) -> Dict:
    keyboard: List[List[Dict]] = []
    if total_pages > 1:
        navigation = []
        if page > 1:
            navigation.append({"text": "⬅️ Предыдущая", "callback_data": f"page_prev_{page - 1}"})
        if page < total_pages:
            navigation.append({"text": "Следующая ➡️", "callback_data": f"page_next_{page + 1}"})
        keyboard.append(navigation)
    keyboard.append([{"text": "Вернуться в главное меню", "callback_data": "main_menu"}])
    return {"inline_keyboard": keyboard}


def page_text(page: int, total_pages: int) -> str:
    return f"📄 Страница {page} из {total_pages}"


def too_soon_text(retry_after: float) -> str:
    return TOO_SOON_TEXT.format(seconds=max(int(retry_after + 0.999), 1))
