from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
from aiogram.exceptions import TelegramBadRequest
from aiogram.methods import SendMessage

from admins.access import Actor, AuditEntry
from admins.actions import CALLBACK_DATA_LIMIT
from admins.controller import InteractionController
from admins.session import SessionStore
from admins.utils import matches_search
from directory.errors import NotFound
from directory.models import DirectoryAccount, UserPage


def telegram_bad_request(message: str) -> TelegramBadRequest:
    return TelegramBadRequest(method=SendMessage(chat_id=0, text=""), message=message)


class FakeTransport:
    """
    Записывает все вызовы как (method, key, ref, text, markup).

    Как и Telegram, отклоняет клавиатуру целиком, если callback_data хоть
    одной кнопки длиннее 64 байт. `fail[method]` роняет вызов этого метода.
    """

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.fail: Dict[str, Exception] = {}
        self._next_ref = 100

    def _check(self, method: str, reply_markup) -> None:
        if method in self.fail:
            raise self.fail[method]
        for row in getattr(reply_markup, "inline_keyboard", None) or []:
            for button in row:
                if len((button.callback_data or "").encode()) > CALLBACK_DATA_LIMIT:
                    raise telegram_bad_request("Bad Request: BUTTON_DATA_INVALID")

    async def render_text(self, key, text, reply_markup=None) -> int:
        self._check("render_text", reply_markup)
        self._next_ref += 1
        self.calls.append(("render_text", key, self._next_ref, text, reply_markup))
        return self._next_ref

    async def update_text(self, key, message_ref, text, reply_markup=None) -> None:
        self._check("update_text", reply_markup)
        self.calls.append(("update_text", key, message_ref, text, reply_markup))

    async def update_buttons(self, key, message_ref, reply_markup) -> None:
        self._check("update_buttons", reply_markup)
        self.calls.append(("update_buttons", key, message_ref, None, reply_markup))

    async def acknowledge(self, token, text=None, show_alert=False) -> None:
        self.calls.append(("acknowledge", None, token, text, None))

    @property
    def last(self) -> tuple:
        return self.calls[-1]

    @property
    def methods(self) -> List[str]:
        return [c[0] for c in self.calls]


class FakeDirectory:
    """In-memory Synapse с возможностью уронить любой вызов через `fail`."""

    def __init__(self, accounts=()) -> None:
        self.accounts: List[DirectoryAccount] = list(accounts)
        self.calls: List[tuple] = []
        self.fail: Dict[str, Exception] = {}

    def _call(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        if name in self.fail:
            raise self.fail[name]

    @property
    def call_names(self) -> List[str]:
        return [c[0] for c in self.calls]

    async def list_users(self, offset=0, limit=100) -> UserPage:
        self._call("list_users", offset, limit)
        return UserPage(tuple(self.accounts[offset:offset + limit]), len(self.accounts))

    async def search_users(self, term, offset=0, limit=100) -> UserPage:
        self._call("search_users", term, offset, limit)
        found = [a for a in self.accounts if matches_search(a, term)]
        return UserPage(tuple(found[offset:offset + limit]), len(found))

    async def get_user(self, user_id) -> DirectoryAccount:
        self._call("get_user", user_id)
        for account in self.accounts:
            if account.user_id == user_id:
                return account
        raise NotFound(user_id)

    async def deactivate_user(self, user_id) -> dict:
        self._call("deactivate_user", user_id)
        self.set_deactivated(user_id)
        return {"id_server_unbind_result": "success"}

    def set_deactivated(self, user_id: str) -> None:
        self.accounts = [
            replace(a, deactivated=True) if a.user_id == user_id else a for a in self.accounts
        ]


class FakeAudit:
    def __init__(self) -> None:
        self.entries: List[AuditEntry] = []

    def record(self, event, actor, action, target: Optional[str] = None) -> AuditEntry:
        entry = AuditEntry(event, actor, action, target, datetime.now(timezone.utc))
        self.entries.append(entry)
        return entry

    @property
    def events(self) -> List[str]:
        return [e.event for e in self.entries]


def make_account(user_id: str, display_name: Optional[str] = None, **kwargs) -> DirectoryAccount:
    return DirectoryAccount(user_id=user_id, display_name=display_name, **kwargs)


@pytest.fixture
def account():
    return make_account


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def audit() -> FakeAudit:
    return FakeAudit()


@pytest.fixture
def store() -> SessionStore:
    return SessionStore()


@pytest.fixture
def actor() -> Actor:
    return Actor(id=42, username="alice", full_name="Alice Admin", language_code="ru")


@pytest.fixture
def controller(store, directory, transport, audit) -> InteractionController:
    return InteractionController(store, directory, transport, audit, page_size=10)


@pytest.fixture
def callback_data():
    """Все callback_data клавиатуры одним плоским списком."""

    def _collect(markup) -> List[str]:
        if markup is None:
            return []
        return [button.callback_data for row in markup.inline_keyboard for button in row]

    return _collect


@pytest.fixture
def bad_request():
    return telegram_bad_request
