"""
Всё, что контроллеру нужно от Telegram: отправить, отредактировать,
ответить на callback. Контроллер знает только протокол `Transport`,
поэтому в тестах его легко подменить.
"""

from __future__ import annotations

import logging
from typing import Hashable, Optional, Protocol

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest
from aiogram.types import InlineKeyboardMarkup

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def render_text(
        self, key: Hashable, text: str, reply_markup: Optional[InlineKeyboardMarkup] = None
    ) -> int: ...

    async def update_text(
        self,
        key: Hashable,
        message_ref: int,
        text: str,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
    ) -> None: ...

    async def update_buttons(
        self, key: Hashable, message_ref: int, reply_markup: InlineKeyboardMarkup
    ) -> None: ...

    async def acknowledge(
        self, token: str, text: Optional[str] = None, show_alert: bool = False
    ) -> None: ...


def _not_modified(exc: TelegramBadRequest) -> bool:
    return "message is not modified" in (exc.message or "")


class BotTransport:
    """Реализация `Transport` поверх `aiogram.Bot`. key — это chat_id."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def render_text(self, key, text, reply_markup=None) -> int:
        msg = await self._bot.send_message(chat_id=key, text=text, reply_markup=reply_markup)
        return msg.message_id

    async def update_text(self, key, message_ref, text, reply_markup=None) -> None:
        try:
            await self._bot.edit_message_text(
                text=text, chat_id=key, message_id=message_ref, reply_markup=reply_markup
            )
        except TelegramBadRequest as exc:
            # повторное нажатие той же кнопки — текст не изменился, это не ошибка
            if not _not_modified(exc):
                raise

    async def update_buttons(self, key, message_ref, reply_markup) -> None:
        try:
            await self._bot.edit_message_reply_markup(
                chat_id=key, message_id=message_ref, reply_markup=reply_markup
            )
        except TelegramBadRequest as exc:
            if not _not_modified(exc):
                raise

    async def acknowledge(self, token, text=None, show_alert=False) -> None:
        try:
            await self._bot.answer_callback_query(token, text=text, show_alert=show_alert)
        except TelegramBadRequest as exc:
            # «query is too old» — пользователь всё равно увидит результат
            logger.warning("Не удалось ответить на callback %s: %s", token, exc.message)
