"""
Типизированные ответы Synapse Admin API.

Сырые JSON-словари превращаются в `DirectoryAccount` / `UserPage` прямо
на границе клиента: всё, что не прошло разбор, становится
`MalformedResponse`, а не «пустым» полем где-то в рендеринге.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Tuple

from directory.errors import MalformedResponse

# Synapse отдаёт creation_ts то в секундах, то в миллисекундах
# (зависит от эндпоинта и версии). Всё, что больше, считаем миллисекундами.
_MS_THRESHOLD: int = 10 ** 11


def _parse_ts(value: Any) -> Optional[datetime]:
    if value in (None, "", 0) or isinstance(value, bool):
        return None
    try:
        ts = float(value)
    except (TypeError, ValueError):
        return None
    if ts > _MS_THRESHOLD:
        ts /= 1000
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        # inf, nan, год за пределами datetime
        return None


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


@dataclass(frozen=True)
class DirectoryAccount:
    """Снимок учётной записи Matrix. Локально никогда не изменяется."""

    user_id: str
    display_name: Optional[str] = None
    deactivated: bool = False
    is_admin: bool = False
    account_type: Optional[str] = None
    created_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None

    @property
    def title(self) -> str:
        """Отображаемое имя, а если его нет — сам MXID."""
        return self.display_name or self.user_id

    @classmethod
    def from_payload(cls, payload: Any) -> "DirectoryAccount":
        if not isinstance(payload, Mapping):
            raise MalformedResponse("Учётная запись пришла не объектом")

        user_id = payload.get("name")
        if not isinstance(user_id, str) or not user_id:
            raise MalformedResponse("В учётной записи нет поля name")

        return cls(
            user_id=user_id,
            display_name=_opt_str(payload.get("displayname")),
            deactivated=bool(payload.get("deactivated")),
            # старые версии Synapse отдают admin как 0/1
            is_admin=bool(payload.get("admin")),
            account_type=_opt_str(payload.get("user_type")),
            created_at=_parse_ts(payload.get("creation_ts")),
            last_seen_at=_parse_ts(payload.get("last_seen_ts")),
        )


@dataclass(frozen=True)
class UserPage:
    """Страница пользователей: сами записи + общее количество."""

    accounts: Tuple[DirectoryAccount, ...]
    total: int

    @classmethod
    def from_payload(cls, payload: Any) -> "UserPage":
        if not isinstance(payload, Mapping):
            raise MalformedResponse("Список пользователей пришёл не объектом")

        raw_users = payload.get("users", [])
        if not isinstance(raw_users, list):
            raise MalformedResponse("Поле users должно быть списком")

        accounts = tuple(DirectoryAccount.from_payload(item) for item in raw_users)

        total = payload.get("total", len(accounts))
        if isinstance(total, bool) or not isinstance(total, int):
            raise MalformedResponse("Поле total должно быть целым числом")

        return cls(accounts=accounts, total=total)
