"""
Клиент Synapse Admin API.

Умеет четыре вещи: список пользователей, поиск, карточка пользователя
и деактивация, плюс проверка связи для `check_matrix.py`. Ретраев нет:
любая ошибка сразу уходит вызывающему коду, уже переведённая
в иерархию `directory.errors`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, NamedTuple, Optional, Protocol, runtime_checkable
from urllib.parse import quote

import aiohttp

from admins.utils import matches_search
from directory.errors import (
    DirectoryAuthError,
    DirectoryUnavailable,
    InvalidInput,
    MalformedResponse,
    NotFound,
)
from directory.models import DirectoryAccount, UserPage

logger = logging.getLogger(__name__)

_USERS_PATH = "/_synapse/admin/v2/users"
_DEACTIVATE_PATH = "/_synapse/admin/v1/deactivate"
_SERVER_VERSION_PATH = "/_synapse/admin/v1/server_version"
_CLIENT_VERSIONS_PATH = "/_matrix/client/versions"


def _remote_error(payload: Any) -> Optional[str]:
    """Synapse кладёт текст ошибки в поле `error`."""
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, str) and error:
            return error
    return None


class ConnectionReport(NamedTuple):
    client_versions: List[str]        # /_matrix/client/versions
    server_version: Optional[str]     # /_synapse/admin/v1/server_version
    total_users: int
    sample: List[DirectoryAccount]


@runtime_checkable
class Directory(Protocol):
    """То, что контроллеру нужно от каталога пользователей."""

    async def list_users(self, offset: int = 0, limit: int = 100) -> UserPage: ...

    async def search_users(self, term: str, offset: int = 0, limit: int = 100) -> UserPage: ...

    async def get_user(self, user_id: str) -> DirectoryAccount: ...

    async def deactivate_user(self, user_id: str) -> Dict[str, Any]: ...


class DirectoryClient:
    """
    Parameters
    ----------
    base_url, admin_token
        Адрес homeserver'а и access-token администратора. Если чего-то
        нет, клиент считается ненастроенным и каждый вызов падает
        с `DirectoryUnavailable`.
    scan_limit
        Сколько пользователей забираем за раз для поиска (в API поиска нет).
    """

    def __init__(
        self,
        base_url: Optional[str],
        admin_token: Optional[str],
        *,
        timeout: float = 15.0,
        scan_limit: int = 1000,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._base_url = (base_url or "").rstrip("/")
        self._token = admin_token or ""
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None
        self.scan_limit = scan_limit

    @property
    def configured(self) -> bool:
        return bool(self._base_url and self._token)

    # ------------------------------------------------------------------ #
    #                              HTTP                                  #
    # ------------------------------------------------------------------ #

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        if not self.configured:
            raise DirectoryUnavailable("Подключение к серверу Matrix не настроено")

        url = f"{self._base_url}{path}"
        headers = {"Authorization": f"Bearer {self._token}"}

        try:
            async with self._get_session().request(
                method, url, params=params, json=body, headers=headers
            ) as resp:
                status = resp.status
                raw = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Synapse %s %s: %r", method, path, exc)
            raise DirectoryUnavailable(
                f"Сервер Matrix недоступен: {str(exc) or exc.__class__.__name__}"
            ) from exc

        try:
            payload = json.loads(raw) if raw else {}
        except ValueError:
            if status < 400:
                raise MalformedResponse("Сервер Matrix вернул не JSON", status=status)
            payload = {}

        if status in (401, 403):
            raise DirectoryAuthError(
                _remote_error(payload) or f"Токен администратора отклонён (HTTP {status})",
                status=status,
            )
        if status == 404:
            raise NotFound(path.rsplit("/", 1)[-1], _remote_error(payload) or "")
        if status >= 400:
            raise DirectoryUnavailable(
                _remote_error(payload) or f"Сервер Matrix ответил HTTP {status}",
                status=status,
            )
        return payload

    # ------------------------------------------------------------------ #
    #                            Операции                                #
    # ------------------------------------------------------------------ #

    async def list_users(self, offset: int = 0, limit: int = 100) -> UserPage:
        payload = await self._request(
            "GET", _USERS_PATH, params={"from": str(offset), "limit": str(limit)}
        )
        return UserPage.from_payload(payload)

    async def search_users(self, term: str, offset: int = 0, limit: int = 100) -> UserPage:
        """
        Поиск по MXID и отображаемому имени.

        Synapse не умеет искать сам, поэтому забираем первые `scan_limit`
        пользователей и фильтруем локально: всё, что дальше, в поиск
        не попадёт. Это известное ограничение.
        """
        term = (term or "").strip()
        if not term:
            raise InvalidInput("Пустой поисковый запрос")

        page = await self.list_users(0, self.scan_limit)
        if page.total > len(page.accounts):
            logger.warning(
                "Поиск «%s» просматривает только %d из %d пользователей",
                term, len(page.accounts), page.total,
            )

        found = [a for a in page.accounts if matches_search(a, term)]
        return UserPage(accounts=tuple(found[offset:offset + limit]), total=len(found))

    async def get_user(self, user_id: str) -> DirectoryAccount:
        try:
            payload = await self._request("GET", f"{_USERS_PATH}/{quote(user_id, safe='')}")
        except NotFound as exc:
            raise NotFound(user_id, f"Пользователь {user_id} не найден") from exc
        return DirectoryAccount.from_payload(payload)

    async def deactivate_user(self, user_id: str) -> Dict[str, Any]:
        """
        Деактивация без стирания данных (`erase: false`).

        Повторный вызов для уже деактивированного пользователя не считается
        ошибкой клиента: что ответит Synapse, то и вернём / выбросим.
        """
        try:
            payload = await self._request(
                "POST",
                f"{_DEACTIVATE_PATH}/{quote(user_id, safe='')}",
                body={"erase": False},
            )
        except NotFound as exc:
            raise NotFound(user_id, f"Пользователь {user_id} не найден") from exc
        return payload if isinstance(payload, dict) else {}

    # ------------------------------------------------------------------ #
    #                          Диагностика                               #
    # ------------------------------------------------------------------ #

    async def check_connection(self, sample_size: int = 5) -> ConnectionReport:
        """
        Три шага по очереди: клиентский API без прав, admin API с токеном,
        первые `sample_size` пользователей. Первая же ошибка прерывает проверку.
        """
        versions = await self._request("GET", _CLIENT_VERSIONS_PATH)
        client_versions = versions.get("versions") if isinstance(versions, dict) else None
        if not isinstance(client_versions, list):
            raise MalformedResponse("Сервер не похож на Matrix: нет списка versions")

        server = await self._request("GET", _SERVER_VERSION_PATH)
        server_version = server.get("server_version") if isinstance(server, dict) else None

        page = await self.list_users(0, sample_size)
        return ConnectionReport(
            client_versions=[str(v) for v in client_versions],
            server_version=server_version if isinstance(server_version, str) else None,
            total_users=page.total,
            sample=list(page.accounts),
        )
