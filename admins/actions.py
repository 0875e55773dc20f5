"""
Нормализованные действия, которые получает контроллер.

Сообщения и команды приходят как `Command` / `FreeText`, нажатия кнопок —
как `ButtonEvent`. callback_data кнопки разбирается **один раз**
(`decode_button`) в закрытый набор вариантов; каждый вариант умеет
сам себя упаковать обратно (`pack()`), этим пользуются клавиатуры.

Формат callback_data:
    menu:<list|search|deactivate|whoami>
    page:<d|s>:<n>
    select:<ref>   inspect:<ref>   confirm:<ref>
    cancel   back   back_to_search   noop

Telegram ограничивает callback_data 64 байтами, а MXID бывает длиннее,
поэтому в кнопку кладём не сам MXID, а короткую ссылку `account_ref(...)`.
Обратно в MXID её превращает контроллер по результатам в сессии.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from hashlib import md5
from typing import Optional, Union

from directory.errors import StaleReference

CALLBACK_DATA_LIMIT = 64  # байт, ограничение Telegram

_REF_LEN = 12
_REF_RE = re.compile(rf"[0-9a-f]{{{_REF_LEN}}}")


def account_ref(user_id: str) -> str:
    """Короткая ascii-ссылка на MXID для callback_data."""
    return md5(user_id.encode()).hexdigest()[:_REF_LEN]


class ResultKind(str, Enum):
    FOR_DEACTIVATION = "d"
    FOR_SEARCH = "s"


# --------------------------------------------------------------------------- #
#                            Входящие действия                                #
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class Command:
    name: str
    args: Optional[str] = None


@dataclass(frozen=True)
class FreeText:
    text: str


@dataclass(frozen=True)
class ButtonEvent:
    token: str                 # id callback-запроса, нужен для acknowledge
    data: str                  # сырой callback_data
    message_ref: Optional[int] = None


Action = Union[Command, FreeText, ButtonEvent]


# --------------------------------------------------------------------------- #
#                              Варианты кнопок                                #
# --------------------------------------------------------------------------- #

MENU_ITEMS = ("list", "search", "deactivate", "whoami")


@dataclass(frozen=True)
class MenuButton:
    item: str

    def pack(self) -> str:
        return f"menu:{self.item}"


@dataclass(frozen=True)
class Page:
    kind: ResultKind
    page: int

    def pack(self) -> str:
        return f"page:{self.kind.value}:{self.page}"


@dataclass(frozen=True)
class Select:
    ref: str

    def pack(self) -> str:
        return f"select:{self.ref}"


@dataclass(frozen=True)
class Inspect:
    ref: str

    def pack(self) -> str:
        return f"inspect:{self.ref}"


@dataclass(frozen=True)
class Confirm:
    ref: str

    def pack(self) -> str:
        return f"confirm:{self.ref}"


@dataclass(frozen=True)
class Cancel:
    def pack(self) -> str:
        return "cancel"


@dataclass(frozen=True)
class Back:
    def pack(self) -> str:
        return "back"


@dataclass(frozen=True)
class BackToSearch:
    def pack(self) -> str:
        return "back_to_search"


@dataclass(frozen=True)
class Noop:
    def pack(self) -> str:
        return "noop"


Button = Union[MenuButton, Page, Select, Inspect, Confirm, Cancel, Back, BackToSearch, Noop]

_SIMPLE = {"cancel": Cancel(), "back": Back(), "back_to_search": BackToSearch(), "noop": Noop()}
_BY_ID = {"select": Select, "inspect": Inspect, "confirm": Confirm}


def decode_button(data: Optional[str]) -> Button:
    """
    callback_data → вариант кнопки.

    Всё нераспознанное — `StaleReference`: кнопка от старой версии бота
    или от уже несуществующего экрана.
    """
    data = data or ""
    if data in _SIMPLE:
        return _SIMPLE[data]

    prefix, _, rest = data.partition(":")

    if prefix == "menu" and rest in MENU_ITEMS:
        return MenuButton(rest)

    if prefix in _BY_ID and _REF_RE.fullmatch(rest):
        return _BY_ID[prefix](rest)

    if prefix == "page":
        kind_raw, _, page_raw = rest.partition(":")
        try:
            kind = ResultKind(kind_raw)
            page = int(page_raw)
        except ValueError:
            pass
        else:
            if page >= 0:
                return Page(kind, page)

    raise StaleReference(f"Неизвестная кнопка: {data!r}")
