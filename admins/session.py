"""
Сессии диалогов: что сейчас показано конкретному чату.

`Session` неизменяема — контроллер собирает новую через `dataclasses.replace`
и кладёт её в хранилище только после успешного обращения к Synapse.
Так в хранилище не бывает «наполовину обновлённых» сессий.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Hashable, Optional, Tuple

from admins.actions import ResultKind, account_ref
from directory.models import DirectoryAccount

ConversationKey = Hashable


@dataclass(frozen=True)
class Session:
    state: Optional[str] = None        # None == главное меню
    result_set: Tuple[DirectoryAccount, ...] = ()
    result_kind: Optional[ResultKind] = None
    search_term: Optional[str] = None
    page: int = 0
    pending_confirmation_id: Optional[str] = None

    def resolve(self, ref: str) -> Optional[DirectoryAccount]:
        """Учётная запись из `result_set` по короткой ссылке из кнопки."""
        return next((a for a in self.result_set if account_ref(a.user_id) == ref), None)


class SessionStore:
    """Обычный словарь chat_id → Session. Между процессами не переживает."""

    def __init__(self) -> None:
        self._sessions: Dict[ConversationKey, Session] = {}

    def get(self, key: ConversationKey) -> Optional[Session]:
        return self._sessions.get(key)

    def set(self, key: ConversationKey, session: Session) -> None:
        self._sessions[key] = session

    def delete(self, key: ConversationKey) -> None:
        self._sessions.pop(key, None)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: object) -> bool:
        return key in self._sessions
