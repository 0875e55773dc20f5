"""
Иерархия ошибок бота администрирования Matrix.

Все «ожидаемые» ошибки наследуются от `AdminBotError`, поэтому контроллер
может поймать их одним `except` и показать пользователю карточку ошибки
с кнопкой «В главное меню».
"""

from __future__ import annotations

from typing import Optional


class AdminBotError(Exception):
    """Базовая ошибка. `message` показывается администратору как есть."""

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message or self.__class__.__name__


class Unauthorized(AdminBotError):
    """Актор не прошёл allow-list. До контроллера не доходит."""


class DirectoryUnavailable(AdminBotError):
    """Сетевая ошибка или неожиданный HTTP-статус от Synapse."""

    def __init__(self, message: str = "", status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class MalformedResponse(DirectoryUnavailable):
    """Synapse ответил, но тело ответа не похоже на ожидаемое."""


class DirectoryAuthError(AdminBotError):
    """Токен администратора отклонён (401 / 403)."""

    def __init__(self, message: str = "", status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class NotFound(AdminBotError):
    """Запрошенный пользователь не существует."""

    def __init__(self, user_id: str, message: str = "") -> None:
        super().__init__(message or f"Пользователь {user_id} не найден")
        self.user_id = user_id


class InvalidInput(AdminBotError):
    """Пустой поисковый запрос и т. п."""


class StaleReference(AdminBotError):
    """Кнопка ссылается на состояние сессии, которого уже нет."""


class ProtectedAccount(AdminBotError):
    """Попытка выбрать для деактивации администратора или уже деактивированного."""

    def __init__(self, user_id: str, message: str = "") -> None:
        super().__init__(message or f"Пользователь {user_id} не может быть деактивирован")
        self.user_id = user_id
