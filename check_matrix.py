"""
Проверка связи с Synapse без запуска бота.

    python check_matrix.py

Берёт MATRIX_URL и MATRIX_ADMIN_TOKEN из того же `.env`, что и бот,
и по шагам проверяет: отвечает ли сервер, принимает ли он токен
администратора, отдаёт ли список пользователей. Код выхода 0, если всё
в порядке, иначе 1.
"""

import asyncio
import logging
import sys

from config import MATRIX_ADMIN_TOKEN, MATRIX_URL, REQUEST_TIMEOUT
from directory.client import DirectoryClient
from directory.errors import (
    AdminBotError,
    DirectoryAuthError,
    DirectoryUnavailable,
    MalformedResponse,
    NotFound,
)

logger = logging.getLogger("check_matrix")


def _hint(exc: AdminBotError) -> str:
    match exc:
        case DirectoryAuthError(status=401):
            return "токен недействителен, выпустите новый access-token"
        case DirectoryAuthError():
            return "у токена нет прав администратора Synapse"
        case NotFound():
            return "эндпоинт не найден: проверьте MATRIX_URL и что admin API не закрыт прокси"
        case MalformedResponse():
            return "по этому адресу отвечает не Synapse (или прокси отдаёт HTML)"
        case DirectoryUnavailable():
            return "сервер недоступен: проверьте адрес, порт, сеть и firewall"
    return "неизвестная ошибка"


async def diagnose(client: DirectoryClient, sample_size: int = 5) -> bool:
    if not client.configured:
        logger.error("❌ MATRIX_URL или MATRIX_ADMIN_TOKEN не заданы в .env")
        return False

    try:
        report = await client.check_connection(sample_size)
    except AdminBotError as exc:
        logger.error("❌ Проверка не пройдена: %s", exc)
        logger.error("💡 %s", _hint(exc))
        return False

    logger.info("✅ Клиентский API отвечает, версии: %s", ", ".join(report.client_versions) or "—")
    logger.info("✅ Admin API принял токен, Synapse %s", report.server_version or "неизвестной версии")
    logger.info("✅ Пользователей на сервере: %d, первые %d:", report.total_users, len(report.sample))
    for idx, account in enumerate(report.sample, start=1):
        logger.info("   %d. %s (%s)", idx, account.user_id, account.account_type or "обычный")
    return True


async def main() -> int:
    logger.info("🔍 Matrix URL: %s", MATRIX_URL or "не задан")
    logger.info(
        "🔑 Admin token: %s",
        f"задан (длина {len(MATRIX_ADMIN_TOKEN)})" if MATRIX_ADMIN_TOKEN else "не задан",
    )

    client = DirectoryClient(MATRIX_URL, MATRIX_ADMIN_TOKEN, timeout=REQUEST_TIMEOUT)
    try:
        ok = await diagnose(client)
    finally:
        await client.close()

    logger.info("🏁 Проверка завершена")
    return 0 if ok else 1


def run() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - [%(levelname)s] - %(message)s"
    )
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
