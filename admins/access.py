"""
Проверка доступа: кто вообще может пользоваться ботом.

Пропускаем апдейт **только** от разрешённых Telegram ID или username.
Пустой allow-list означает «никого», а не «всех».
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import FrozenSet, Iterable, Optional

from aiogram.types import User

from directory.errors import Unauthorized

audit_logger = logging.getLogger("audit")


@dataclass(frozen=True)
class Actor:
    """Тот, кто нажал кнопку / написал сообщение."""

    id: int
    username: Optional[str] = None
    full_name: str = ""
    language_code: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(
            id=user.id,
            username=user.username,
            full_name=user.full_name,
            language_code=user.language_code,
        )

    @property
    def handle(self) -> str:
        return f"@{self.username}" if self.username else "без username"


@dataclass(frozen=True)
class AllowList:
    ids: FrozenSet[int] = field(default_factory=frozenset)
    usernames: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def build(cls, ids: Iterable[int] = (), usernames: Iterable[str] = ()) -> "AllowList":
        # username в Telegram регистронезависим, «@» в конфиге допускаем
        return cls(
            ids=frozenset(ids),
            usernames=frozenset(u.strip().lstrip("@").lower() for u in usernames if u.strip()),
        )

    @property
    def empty(self) -> bool:
        return not self.ids and not self.usernames


def is_authorized(actor: Actor, allow_list: AllowList) -> bool:
    if allow_list.empty:
        return False
    if actor.id in allow_list.ids:
        return True
    return bool(actor.username) and actor.username.lower() in allow_list.usernames


def require_authorized(actor: Actor, allow_list: AllowList) -> Actor:
    if not is_authorized(actor, allow_list):
        raise Unauthorized(f"Пользователь {actor.id} ({actor.handle}) не в allow-list")
    return actor


# --------------------------------------------------------------------------- #
#                                  АУДИТ                                      #
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class AuditEntry:
    event: str  # "authorized" | "denied" | "deactivated"
    actor: Actor
    action: str
    target: Optional[str]
    at: datetime


class AuditLog:
    """Журнал доступа и деактиваций. Пишет в логгер `audit`."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or audit_logger

    def record(
        self,
        event: str,
        actor: Actor,
        action: str,
        target: Optional[str] = None,
    ) -> AuditEntry:
        entry = AuditEntry(event, actor, action, target, datetime.now(timezone.utc))
        level = logging.WARNING if event == "denied" else logging.INFO
        self._logger.log(
            level,
            "%s: %s (%s) id=%s action=%r%s at=%s",
            event,
            actor.full_name or "—",
            actor.handle,
            actor.id,
            action,
            f" target={target}" if target else "",
            entry.at.isoformat(),
        )
        return entry
