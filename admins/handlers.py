"""
Хэндлеры бота: только превращают апдейты Telegram в действия контроллера.

Проверка доступа висит на роутере (`setup_router`), так что сюда попадают
уже авторизованные апдейты с `actor` в данных. Контроллер приходит
из workflow-data диспетчера (`Dispatcher(controller=...)`).
"""

from __future__ import annotations

from aiogram import F, Router, types
from aiogram.filters import Command, CommandObject

from admins.access import Actor, AllowList, AuditLog
from admins.actions import ButtonEvent, Command as CommandAction, FreeText
from admins.controller import InteractionController
from admins.middlewares import AccessGateMiddleware
from admins.transport import Transport

BOT_COMMANDS = ("start", "menu", "help", "whoami", "search")


async def on_command(
    message: types.Message,
    command: CommandObject,
    actor: Actor,
    controller: InteractionController,
) -> None:
    """/start, /menu, /help, /whoami, /search <запрос>."""
    await controller.handle(
        message.chat.id, actor, CommandAction(command.command, command.args)
    )


async def on_text(
    message: types.Message, actor: Actor, controller: InteractionController
) -> None:
    """Любой текст; контроллер сам решит, ждёт ли он сейчас поисковый запрос."""
    await controller.handle(message.chat.id, actor, FreeText(message.text))


async def on_button(
    cb: types.CallbackQuery, actor: Actor, controller: InteractionController
) -> None:
    if cb.message is None:
        # сообщение слишком старое / inline-режим: ответим новым сообщением в личку
        event = ButtonEvent(token=cb.id, data=cb.data or "")
        await controller.handle(cb.from_user.id, actor, event)
        return

    await controller.handle(
        cb.message.chat.id,
        actor,
        ButtonEvent(token=cb.id, data=cb.data or "", message_ref=cb.message.message_id),
    )


def setup_router(allow_list: AllowList, audit: AuditLog, transport: Transport) -> Router:
    """Новый роутер со всеми хэндлерами; проверка доступа стоит на каждом апдейте."""
    router = Router(name="directory_admin")

    gate = AccessGateMiddleware(allow_list, audit, transport)
    router.message.outer_middleware(gate)
    router.callback_query.outer_middleware(gate)

    router.message.register(on_command, Command(commands=list(BOT_COMMANDS)))
    router.message.register(on_text, F.text, ~F.text.startswith("/"))
    router.callback_query.register(on_button)
    return router
