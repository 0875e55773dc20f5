import asyncio
import logging
import sys

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode

from admins.access import AllowList, AuditLog
from admins.controller import InteractionController
from admins.handlers import setup_router
from admins.session import SessionStore
from admins.transport import BotTransport
from config import (
    AUTHORIZED_USERNAMES,
    AUTHORIZED_USERS,
    BOT_TOKEN,
    LIST_USERS_LIMIT,
    LOG_LEVEL,
    MATRIX_ADMIN_TOKEN,
    MATRIX_URL,
    REQUEST_TIMEOUT,
    SEARCH_SCAN_LIMIT,
    USERS_PER_PAGE,
    missing_settings,
)
from directory.client import DirectoryClient

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - [%(levelname)s] - %(message)s"
)


def log_security_config(allow_list: AllowList) -> None:
    """Печатает allow-list при старте, чтобы было видно, кого пустит бот."""
    logging.info("Авторизованные ID: %s", ", ".join(map(str, sorted(allow_list.ids))) or "нет")
    logging.info("Авторизованные username: %s", ", ".join(sorted(allow_list.usernames)) or "нет")
    if allow_list.empty:
        logging.error(
            "ВНИМАНИЕ: allow-list пуст, бот запретит весь доступ. "
            "Задайте AUTHORIZED_USERS или AUTHORIZED_USERNAMES в .env"
        )


async def main() -> None:
    missing = missing_settings()
    if missing:
        logging.critical("Не заданы обязательные переменные: %s", ", ".join(missing))
        sys.exit(1)

    bot = Bot(BOT_TOKEN, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
    transport = BotTransport(bot)
    audit = AuditLog()
    allow_list = AllowList.build(AUTHORIZED_USERS, AUTHORIZED_USERNAMES)

    client = DirectoryClient(
        MATRIX_URL,
        MATRIX_ADMIN_TOKEN,
        timeout=REQUEST_TIMEOUT,
        scan_limit=SEARCH_SCAN_LIMIT,
    )
    controller = InteractionController(
        SessionStore(),
        client,
        transport,
        audit,
        page_size=USERS_PER_PAGE,
        list_limit=LIST_USERS_LIMIT,
        search_limit=SEARCH_SCAN_LIMIT,
    )

    dp = Dispatcher(controller=controller)
    dp.include_router(setup_router(allow_list, audit, transport))

    log_security_config(allow_list)
    logging.info("Бот администрирования Matrix Synapse запущен")
    try:
        await dp.start_polling(bot)
    finally:
        await client.close()
        await bot.session.close()
        logging.info("Бот остановлен")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
