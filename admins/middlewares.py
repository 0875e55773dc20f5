"""
Aiogram-middleware: пропускает апдейт к хэндлерам **только** от разрешённых
пользователей. Вешается как outer-middleware на message и callback_query
роутера, поэтому срабатывает раньше любых фильтров и хэндлеров,
включая «пустые» кнопки `noop`.

Каждая попытка, успешная или отклонённая, пишется в журнал аудита.
Авторизованный `Actor` кладётся в `data["actor"]` для хэндлеров.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict

from aiogram import BaseMiddleware
from aiogram.types import CallbackQuery, Message, TelegramObject

from admins.access import Actor, AllowList, AuditLog, require_authorized
from admins.transport import Transport
from directory.errors import Unauthorized

logger = logging.getLogger(__name__)

ACCESS_DENIED_TEXT = (
    "🚫 <b>Доступ запрещён</b>\n\n"
    "Вы не авторизованы для использования этого бота.\n\n"
    "Бот доступен только определённым пользователям. "
    "Если вы считаете, что это ошибка, обратитесь к администратору."
)


def describe_event(event: TelegramObject) -> str:
    if isinstance(event, CallbackQuery):
        return f"callback: {event.data}"
    if isinstance(event, Message):
        return event.text or event.content_type
    return type(event).__name__


class AccessGateMiddleware(BaseMiddleware):
    def __init__(self, allow_list: AllowList, audit: AuditLog, transport: Transport) -> None:
        self.allow_list = allow_list
        self.audit = audit
        self.transport = transport
        if allow_list.empty:
            logger.error("Allow-list пуст: бот отклонит все запросы")

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        user = getattr(event, "from_user", None)
        if user is None:
            # посты каналов и т. п. — некого проверять и некому отвечать
            logger.debug("Апдейт без from_user пропущен: %s", type(event).__name__)
            return None

        actor = Actor.from_user(user)
        action = describe_event(event)

        try:
            require_authorized(actor, self.allow_list)
        except Unauthorized as exc:
            logger.debug("%s", exc)
            self.audit.record("denied", actor, action)
            await self._deny(event)
            return None

        self.audit.record("authorized", actor, action)
        data["actor"] = actor
        return await handler(event, data)

    async def _deny(self, event: TelegramObject) -> None:
        if isinstance(event, CallbackQuery):
            await self.transport.acknowledge(event.id, text="🚫 Доступ запрещён")
            chat_id = event.message.chat.id if event.message else event.from_user.id
        else:
            chat_id = event.chat.id
        await self.transport.render_text(chat_id, ACCESS_DENIED_TEXT)
