"""
Инлайн-клавиатуры бота.

Все функции возвращают **готовый** `InlineKeyboardMarkup`, поэтому
их можно сразу передавать в `reply_markup=...`.
"""

from __future__ import annotations

from typing import List, Sequence

from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder

from admins.actions import (
    Back,
    BackToSearch,
    Cancel,
    Confirm,
    Inspect,
    MenuButton,
    Noop,
    Page,
    ResultKind,
    Select,
    account_ref,
)
from admins.utils import account_suffix, paginate, total_pages
from directory.models import DirectoryAccount

USERS_PER_PAGE: int = 10  # пользователей на страницу

_BACK_TO_MENU = "🔙 В главное меню"


# --------------------------------------------------------------------------- #
#                              1. Главное меню                                #
# --------------------------------------------------------------------------- #


def main_menu_kb() -> InlineKeyboardMarkup:
    return (
        InlineKeyboardBuilder()
        .button(text="👥 Все пользователи", callback_data=MenuButton("list").pack())
        .button(text="🔍 Поиск пользователей", callback_data=MenuButton("search").pack())
        .button(text="❌ Деактивировать пользователя", callback_data=MenuButton("deactivate").pack())
        .button(text="🔒 Моя информация", callback_data=MenuButton("whoami").pack())
        .adjust(1)
        .as_markup()
    )


def back_to_menu_kb() -> InlineKeyboardMarkup:
    """Однокнопочная клавиатура «🔙 В главное меню»."""
    return (
        InlineKeyboardBuilder()
        .button(text=_BACK_TO_MENU, callback_data=Back().pack())
        .as_markup()
    )


# --------------------------------------------------------------------------- #
#                        2. Постраничные списки                               #
# --------------------------------------------------------------------------- #


def _nav_row(kind: ResultKind, page: int, count: int, page_size: int) -> List[InlineKeyboardButton]:
    """Навигация «◀️ 1/10 ▶️»; пустой список, если страница одна."""
    pages = total_pages(count, page_size)
    if pages <= 1:
        return []

    nav: List[InlineKeyboardButton] = []
    if page > 0:
        nav.append(InlineKeyboardButton(text="◀️ Назад", callback_data=Page(kind, page - 1).pack()))
    nav.append(InlineKeyboardButton(text=f"{page + 1}/{pages}", callback_data=Noop().pack()))
    if page < pages - 1:
        nav.append(InlineKeyboardButton(text="Далее ▶️", callback_data=Page(kind, page + 1).pack()))
    return nav


def deactivation_list_kb(
    accounts: Sequence[DirectoryAccount],
    page: int,
    page_size: int = USERS_PER_PAGE,
) -> InlineKeyboardMarkup:
    """Список кандидатов на деактивацию: по кнопке на пользователя."""
    kb = InlineKeyboardBuilder()
    for account in paginate(accounts, page, page_size).items:
        kb.button(
            text=f"{account.title} ({account.account_type or 'обычный'})",
            callback_data=Select(account_ref(account.user_id)).pack(),
        )
    kb.adjust(1)

    nav = _nav_row(ResultKind.FOR_DEACTIVATION, page, len(accounts), page_size)
    if nav:
        kb.row(*nav)

    kb.row(InlineKeyboardButton(text=_BACK_TO_MENU, callback_data=Back().pack()))
    return kb.as_markup()


def _search_action_button(account: DirectoryAccount) -> InlineKeyboardButton:
    if account.deactivated:
        return InlineKeyboardButton(text="❌ Деактивирован", callback_data=Noop().pack())
    if account.is_admin:
        return InlineKeyboardButton(text="👑 Админ защищён", callback_data=Noop().pack())
    return InlineKeyboardButton(
        text="🗑️ Деактивировать", callback_data=Select(account_ref(account.user_id)).pack()
    )


def search_results_kb(
    accounts: Sequence[DirectoryAccount],
    page: int,
    page_size: int = USERS_PER_PAGE,
) -> InlineKeyboardMarkup:
    """
    Результаты поиска: в каждой строке «карточка» пользователя и кнопка
    действия (деактивировать / заглушка для админов и деактивированных).
    """
    kb = InlineKeyboardBuilder()
    for account in paginate(accounts, page, page_size).items:
        status = "❌" if account.deactivated else "✅"
        kb.row(
            InlineKeyboardButton(
                text=f"{status} {account.title}{account_suffix(account)}",
                callback_data=Inspect(account_ref(account.user_id)).pack(),
            ),
            _search_action_button(account),
        )

    nav = _nav_row(ResultKind.FOR_SEARCH, page, len(accounts), page_size)
    if nav:
        kb.row(*nav)

    kb.row(
        InlineKeyboardButton(text="🔍 Новый поиск", callback_data=MenuButton("search").pack()),
        InlineKeyboardButton(text=_BACK_TO_MENU, callback_data=Back().pack()),
    )
    return kb.as_markup()


def search_empty_kb() -> InlineKeyboardMarkup:
    return (
        InlineKeyboardBuilder()
        .button(text="🔍 Новый поиск", callback_data=MenuButton("search").pack())
        .button(text=_BACK_TO_MENU, callback_data=Back().pack())
        .adjust(1)
        .as_markup()
    )


# --------------------------------------------------------------------------- #
#                      3. Карточка и деактивация                              #
# --------------------------------------------------------------------------- #


def account_detail_kb(account: DirectoryAccount) -> InlineKeyboardMarkup:
    """Под карточкой: деактивация (если можно), назад к поиску, в меню."""
    kb = InlineKeyboardBuilder()
    if account.deactivated:
        kb.button(text="❌ Пользователь уже деактивирован", callback_data=Noop().pack())
    elif account.is_admin:
        kb.button(text="👑 Администратор защищён от деактивации", callback_data=Noop().pack())
    else:
        kb.button(
            text="🗑️ Деактивировать пользователя",
            callback_data=Select(account_ref(account.user_id)).pack(),
        )

    kb.button(text="🔙 Назад к поиску", callback_data=BackToSearch().pack())
    kb.button(text="🏠 Главное меню", callback_data=Back().pack())
    kb.adjust(1)
    return kb.as_markup()


def confirm_deactivation_kb(user_id: str) -> InlineKeyboardMarkup:
    return (
        InlineKeyboardBuilder()
        .button(text="✅ Да, деактивировать", callback_data=Confirm(account_ref(user_id)).pack())
        .button(text="❌ Отмена", callback_data=Cancel().pack())
        .adjust(2)
        .as_markup()
    )


def deactivation_done_kb() -> InlineKeyboardMarkup:
    return (
        InlineKeyboardBuilder()
        .button(text="❌ Деактивировать другого", callback_data=MenuButton("deactivate").pack())
        .button(text=_BACK_TO_MENU, callback_data=Back().pack())
        .adjust(1)
        .as_markup()
    )


def deactivation_failed_kb() -> InlineKeyboardMarkup:
    """«Попробовать снова» заново открывает список кандидатов."""
    return (
        InlineKeyboardBuilder()
        .button(text="🔄 Попробовать снова", callback_data=MenuButton("deactivate").pack())
        .button(text=_BACK_TO_MENU, callback_data=Back().pack())
        .adjust(1)
        .as_markup()
    )
