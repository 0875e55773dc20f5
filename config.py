"""
Настройки бота. Читаются из переменных окружения (и файла `.env`, если он есть).

Обязательные: TELEGRAM_BOT_TOKEN, MATRIX_URL, MATRIX_ADMIN_TOKEN.
Без них `main.py` не стартует.
"""

from __future__ import annotations

import logging
import os
from typing import FrozenSet, List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def parse_ids(raw: str | None) -> FrozenSet[int]:
    """«123, 456,abc» → {123, 456}; мусор пропускаем с предупреждением."""
    ids = set()
    for chunk in (raw or "").split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        try:
            ids.add(int(chunk))
        except ValueError:
            logger.warning("AUTHORIZED_USERS: «%s» не похоже на Telegram ID, пропускаю", chunk)
    return frozenset(ids)


def parse_usernames(raw: str | None) -> FrozenSet[str]:
    """«@Alice, bob» → {"alice", "bob"}."""
    return frozenset(
        chunk.strip().lstrip("@").lower()
        for chunk in (raw or "").split(",")
        if chunk.strip().lstrip("@")
    )


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("%s=%r не число, использую %d", name, raw, default)
        return default


# --------------------------------------------------------------------------- #
#                               ЗНАЧЕНИЯ                                      #
# --------------------------------------------------------------------------- #

BOT_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "")

MATRIX_URL: str = os.getenv("MATRIX_URL", "").rstrip("/")
MATRIX_ADMIN_TOKEN: str = os.getenv("MATRIX_ADMIN_TOKEN", "")

AUTHORIZED_USERS: FrozenSet[int] = parse_ids(os.getenv("AUTHORIZED_USERS"))
AUTHORIZED_USERNAMES: FrozenSet[str] = parse_usernames(os.getenv("AUTHORIZED_USERNAMES"))

USERS_PER_PAGE: int = _int_env("USERS_PER_PAGE", 10)
LIST_USERS_LIMIT: int = _int_env("LIST_USERS_LIMIT", 100)
SEARCH_SCAN_LIMIT: int = _int_env("SEARCH_SCAN_LIMIT", 1000)
REQUEST_TIMEOUT: int = _int_env("REQUEST_TIMEOUT", 15)

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


def missing_settings() -> List[str]:
    """Имена обязательных переменных, которые не заданы."""
    required = {
        "TELEGRAM_BOT_TOKEN": BOT_TOKEN,
        "MATRIX_URL": MATRIX_URL,
        "MATRIX_ADMIN_TOKEN": MATRIX_ADMIN_TOKEN,
    }
    return [name for name, value in required.items() if not value]
