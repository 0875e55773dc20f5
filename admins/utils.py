"""
Вспомогательные функции, которые используются в разных частях бота.

* `paginate` / `clamp_page` / `total_pages` – нарезка списков на страницы;
* `matches_search`                         – правило поиска пользователей;
* `deactivation_candidates`                – кого можно предлагать к деактивации;
* `build_account_card_text`                – карточка пользователя для Telegram;
* `build_accounts_listing_text`            – полный список пользователей.
"""

from __future__ import annotations

import html as std_html
from datetime import datetime
from typing import Iterable, List, NamedTuple, Optional, Sequence, TypeVar

from directory.models import DirectoryAccount, UserPage

T = TypeVar("T")

TELEGRAM_TEXT_LIMIT: int = 4096

# --------------------------------------------------------------------------- #
#                              1. Пагинация                                   #
# --------------------------------------------------------------------------- #


class PageSlice(NamedTuple):
    items: List
    has_prev: bool
    has_next: bool


def paginate(items: Sequence[T], page: int, page_size: int) -> PageSlice:
    """
    Возвращает элементы страницы *page* (0-based) и флаги навигации.

    Страница за пределами списка даёт пустой `items`; `has_prev`
    при этом считается как обычно.
    """
    if page_size < 1:
        raise ValueError("page_size must be positive")
    if page < 0:
        raise ValueError("page must be non-negative")

    start = page * page_size
    end = min(start + page_size, len(items))
    return PageSlice(list(items[start:end]), page > 0, end < len(items))


def total_pages(count: int, page_size: int) -> int:
    """Количество страниц; пустой список — это одна (пустая) страница."""
    return max(1, (count - 1) // page_size + 1)


def clamp_page(page: int, count: int, page_size: int) -> int:
    """Прижимает номер страницы к диапазону [0, последняя страница]."""
    return min(max(page, 0), total_pages(count, page_size) - 1)


# --------------------------------------------------------------------------- #
#                         2. Поиск и фильтрация                               #
# --------------------------------------------------------------------------- #


def matches_search(account: DirectoryAccount, term: str) -> bool:
    """
    Без учёта регистра: подстрока в MXID **или** в отображаемом имени,
    плюс точное совпадение MXID.
    """
    needle = term.lower()
    if needle in account.user_id.lower():
        return True
    if account.display_name and needle in account.display_name.lower():
        return True
    return account.user_id == term


def is_deactivation_candidate(account: DirectoryAccount) -> bool:
    """Админов и уже деактивированных к деактивации не предлагаем. Никогда."""
    return not (account.deactivated or account.is_admin)


def deactivation_candidates(accounts: Iterable[DirectoryAccount]) -> List[DirectoryAccount]:
    return [a for a in accounts if is_deactivation_candidate(a)]


# --------------------------------------------------------------------------- #
#                      3. Формирование текстовых карточек                     #
# --------------------------------------------------------------------------- #


def esc(value: object) -> str:
    """HTML-экранирование; None и пустые строки превращаются в тире."""
    return std_html.escape(str(value)) if value not in (None, "", "null") else "—"


def _fmt_dt(value: Optional[datetime], default: str = "Неизвестно") -> str:
    return value.strftime("%d.%m.%Y %H:%M UTC") if value else default


def account_status(account: DirectoryAccount) -> str:
    return "❌ Деактивирован" if account.deactivated else "✅ Активен"


def account_suffix(account: DirectoryAccount) -> str:
    """« 👑» для админа, « (тип)» для особых типов учёток, иначе пусто."""
    if account.is_admin:
        return " 👑"
    if account.account_type:
        return f" ({account.account_type})"
    return ""


def build_account_card_text(account: DirectoryAccount) -> str:
    """Подробная карточка пользователя (экран «Информация о пользователе»)."""
    return (
        "👤 <b>Информация о пользователе</b>\n\n"
        f"<b>ID пользователя:</b> <code>{esc(account.user_id)}</code>\n"
        f"<b>Отображаемое имя:</b> {esc(account.display_name or 'Не установлено')}\n"
        f"<b>Статус:</b> {account_status(account)}\n"
        f"<b>Администратор:</b> {'👑 Да' if account.is_admin else '❌ Нет'}\n"
        f"<b>Тип пользователя:</b> {esc(account.account_type or 'обычный')}\n"
        f"<b>Время создания:</b> {_fmt_dt(account.created_at)}\n"
        f"<b>Последний вход:</b> {_fmt_dt(account.last_seen_at)}"
    )


def build_accounts_listing_text(page: UserPage) -> str:
    """
    Полный список пользователей одним сообщением.

    Если текст не влезает в лимит Telegram, обрезаем и честно пишем об этом.
    """
    lines = [f"👥 <b>Пользователи на сервере Matrix</b> (всего {page.total})\n"]
    for idx, account in enumerate(page.accounts, start=1):
        kind = " (Администратор)" if account.is_admin else (
            f" ({esc(account.account_type)})" if account.account_type else ""
        )
        lines.append(
            f"{idx}. {esc(account.title)}{kind}\n"
            f"   └ <code>{esc(account.user_id)}</code> - {account_status(account)}\n"
        )

    text = "\n".join(lines)
    if len(text) > TELEGRAM_TEXT_LIMIT:
        tail = "\n\n<i>Список сокращён</i>"
        # режем по границе строки, чтобы не разорвать HTML-тег
        cut = text.rfind("\n", 0, TELEGRAM_TEXT_LIMIT - len(tail))
        text = text[:cut] + tail
    return text
