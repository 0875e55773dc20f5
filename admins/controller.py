"""
Контроллер диалога администратора — машина состояний.

Получает нормализованное действие (`Command` / `FreeText` / `ButtonEvent`)
уже **после** проверки доступа, смотрит в сессию чата, при необходимости
ходит в Synapse и рисует следующий экран.

Состояния сессии:
* None                                   – главное меню;
* DirectoryFSM.awaiting_search           – ждём поисковый запрос;
* DirectoryFSM.results_shown             – список (поиск или деактивация);
* DirectoryFSM.confirming_deactivation   – ждём подтверждения.

Деактивация возможна только из `confirming_deactivation`, другого пути нет.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Optional, Tuple
from weakref import WeakValueDictionary

from aiogram.exceptions import TelegramBadRequest
from aiogram.types import InlineKeyboardMarkup

from admins.access import Actor, AuditLog
from admins.actions import (
    Action,
    Back,
    BackToSearch,
    ButtonEvent,
    Cancel,
    Command,
    Confirm,
    FreeText,
    Inspect,
    MenuButton,
    Noop,
    Page,
    ResultKind,
    Select,
    account_ref,
    decode_button,
)
from admins.keyboards import (
    USERS_PER_PAGE,
    account_detail_kb,
    back_to_menu_kb,
    confirm_deactivation_kb,
    deactivation_done_kb,
    deactivation_failed_kb,
    deactivation_list_kb,
    main_menu_kb,
    search_empty_kb,
    search_results_kb,
)
from admins.session import ConversationKey, Session, SessionStore
from admins.states import DirectoryFSM
from admins.transport import Transport
from admins.utils import (
    build_account_card_text,
    build_accounts_listing_text,
    clamp_page,
    deactivation_candidates,
    esc,
    is_deactivation_candidate,
)
from directory.client import Directory
from directory.errors import (
    AdminBotError,
    InvalidInput,
    ProtectedAccount,
    StaleReference,
)
from directory.models import DirectoryAccount

logger = logging.getLogger(__name__)

AWAITING_SEARCH = DirectoryFSM.awaiting_search.state
RESULTS_SHOWN = DirectoryFSM.results_shown.state
CONFIRMING = DirectoryFSM.confirming_deactivation.state

MENU_TEXT = "Выберите действие:"

HELP_TEXT = (
    "📖 <b>Справка — бот администрирования Matrix Synapse</b>\n\n"
    "<b>Команды:</b>\n"
    "• /start — показать главное меню\n"
    "• /menu — вернуться в главное меню\n"
    "• /help — эта справка\n"
    "• /whoami — информация о вас\n"
    "• /search &lt;запрос&gt; — быстрый поиск пользователей\n\n"
    "<b>Советы по поиску:</b>\n"
    "• по части имени: «иван»\n"
    "• по отображаемому имени: «Иван Иванов»\n"
    "• по точному ID: «@user:example.com»\n"
    "• регистр не важен\n\n"
    "<b>Безопасность:</b>\n"
    "• доступ только для пользователей из allow-list\n"
    "• все попытки доступа записываются в журнал\n"
    "• администраторы защищены от деактивации\n"
    "• каждая деактивация требует подтверждения"
)

SEARCH_PROMPT = (
    "🔍 <b>Поиск пользователей</b>\n\n"
    "Введите поисковый запрос (имя, отображаемое имя или ID пользователя) "
    "и отправьте его сообщением."
)


def _welcome_text(actor: Actor) -> str:
    return (
        "🤖 <b>Бот администрирования Matrix Synapse</b>\n\n"
        f"Добро пожаловать, {esc(actor.full_name or actor.handle)}!\n\n"
        "Доступные действия:\n"
        "• просмотр всех пользователей сервера\n"
        "• поиск конкретных пользователей\n"
        "• деактивация выбранных пользователей\n"
        "• информация о вашей авторизации\n\n"
        "Выберите действие из меню ниже:"
    )


def _whoami_text(actor: Actor) -> str:
    return (
        "🔒 <b>Информация о вашей авторизации</b>\n\n"
        f"<b>Имя:</b> {esc(actor.full_name)}\n"
        f"<b>Имя пользователя:</b> {esc(actor.handle)}\n"
        f"<b>ID пользователя:</b> <code>{actor.id}</code>\n"
        f"<b>Язык:</b> {esc(actor.language_code or 'Неизвестен')}\n\n"
        "✅ <b>Статус:</b> Авторизован\n"
        "🔐 <b>Уровень доступа:</b> Администратор Matrix"
    )


def _error_text(exc: AdminBotError) -> str:
    if isinstance(exc, StaleReference):
        return "⚠️ Этот экран устарел. Откройте меню заново."
    if isinstance(exc, InvalidInput):
        return f"❌ {esc(exc)}\n\nПожалуйста, введите корректный поисковый запрос."
    return f"❌ <b>Ошибка</b>\n\n{esc(exc)}"


class InteractionController:
    """
    Parameters
    ----------
    store
        Хранилище сессий (`get` / `set` / `delete`).
    client
        Клиент Synapse (`list_users`, `search_users`, `get_user`, `deactivate_user`).
    transport
        Отправка и редактирование сообщений.
    audit
        Журнал, куда пишется каждая выполненная деактивация.
    """

    def __init__(
        self,
        store: SessionStore,
        client: Directory,
        transport: Transport,
        audit: AuditLog,
        *,
        page_size: int = USERS_PER_PAGE,
        list_limit: int = 100,
        search_limit: int = 1000,
    ) -> None:
        self._store = store
        self._client = client
        self._transport = transport
        self._audit = audit
        self._page_size = page_size
        self._list_limit = list_limit
        self._search_limit = search_limit
        # aiogram обрабатывает апдейты параллельно; внутри одного чата строго по очереди.
        # Замок живёт, пока его держит хотя бы один handle() этого чата.
        self._locks: WeakValueDictionary[ConversationKey, asyncio.Lock] = WeakValueDictionary()

    # ------------------------------------------------------------------ #
    #                           Точка входа                              #
    # ------------------------------------------------------------------ #

    async def handle(self, key: ConversationKey, actor: Actor, action: Action) -> None:
        # сначала гасим «часики» на кнопке, что бы ни случилось дальше
        if isinstance(action, ButtonEvent):
            await self._transport.acknowledge(action.token)

        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()

        async with lock:
            before = self._store.get(key)
            try:
                await self._dispatch(key, actor, action)
            except AdminBotError as exc:
                logger.warning("chat=%s actor=%s %r: %s", key, actor.id, action, exc)
                ref = action.message_ref if isinstance(action, ButtonEvent) else None
                await self._show(key, ref, _error_text(exc), back_to_menu_kb())
            except TelegramBadRequest as exc:
                # экран не отрисовался: сессия не должна ссылаться на то, чего нет у пользователя
                logger.error(
                    "chat=%s actor=%s %r: Telegram отклонил экран: %s",
                    key, actor.id, action, exc.message,
                )
                self._restore(key, before)
                await self._transport.render_text(
                    key,
                    f"❌ <b>Ошибка</b>\n\nTelegram не принял ответ бота: {esc(exc.message)}",
                    back_to_menu_kb(),
                )

    def _restore(self, key: ConversationKey, session: Optional[Session]) -> None:
        if session is None:
            self._store.delete(key)
        else:
            self._store.set(key, session)

    async def _dispatch(self, key: ConversationKey, actor: Actor, action: Action) -> None:
        if isinstance(action, Command):
            await self._on_command(key, actor, action)
        elif isinstance(action, FreeText):
            await self._on_free_text(key, action)
        else:
            await self._on_button(key, actor, action)

    async def _show(
        self,
        key: ConversationKey,
        ref: Optional[int],
        text: str,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
    ) -> int:
        """Редактирует сообщение с кнопкой, а если его нет — отправляет новое."""
        if ref is None:
            return await self._transport.render_text(key, text, reply_markup)
        await self._transport.update_text(key, ref, text, reply_markup)
        return ref

    # ------------------------------------------------------------------ #
    #                      Команды и текстовый ввод                      #
    # ------------------------------------------------------------------ #

    async def _on_command(self, key: ConversationKey, actor: Actor, cmd: Command) -> None:
        match cmd.name:
            case "start":
                self._store.delete(key)
                await self._transport.render_text(key, _welcome_text(actor), main_menu_kb())
            case "menu":
                self._store.delete(key)
                await self._transport.render_text(key, MENU_TEXT, main_menu_kb())
            case "help":
                await self._transport.render_text(key, HELP_TEXT)
            case "whoami":
                await self._transport.render_text(key, _whoami_text(actor))
            case "search":
                term = (cmd.args or "").strip()
                if term:
                    await self._run_search(key, term)
                else:
                    await self._prompt_search(key, None)
            case _:
                logger.debug("Неизвестная команда %r", cmd.name)

    async def _on_free_text(self, key: ConversationKey, msg: FreeText) -> None:
        session = self._store.get(key)
        if session is None or session.state != AWAITING_SEARCH:
            return  # обычный текст вне режима поиска игнорируем

        term = msg.text.strip()
        if not term:
            raise InvalidInput("Пустой поисковый запрос")
        await self._run_search(key, term)

    # ------------------------------------------------------------------ #
    #                              Кнопки                                #
    # ------------------------------------------------------------------ #

    async def _on_button(self, key: ConversationKey, actor: Actor, event: ButtonEvent) -> None:
        ref = event.message_ref
        match decode_button(event.data):
            case Noop():
                return
            case Back():
                self._store.delete(key)
                await self._show(key, ref, MENU_TEXT, main_menu_kb())
            case MenuButton(item="list"):
                await self._show_all_users(key, ref)
            case MenuButton(item="search"):
                await self._prompt_search(key, ref)
            case MenuButton(item="deactivate"):
                await self._open_deactivation_menu(key, ref)
            case MenuButton(item="whoami"):
                await self._show(key, ref, _whoami_text(actor), back_to_menu_kb())
            case Page(kind=kind, page=page):
                await self._turn_page(key, ref, kind, page)
            case Select(ref=account_key):
                await self._select(key, ref, account_key)
            case Inspect(ref=account_key):
                await self._inspect(key, ref, account_key)
            case BackToSearch():
                await self._back_to_search(key, ref)
            case Confirm(ref=account_key):
                await self._confirm(key, ref, actor, account_key)
            case Cancel():
                await self._cancel(key, ref)

    # --- главное меню ------------------------------------------------------

    async def _show_all_users(self, key: ConversationKey, ref: Optional[int]) -> None:
        ref = await self._show(key, ref, "🔄 Получение пользователей с сервера Matrix...")
        page = await self._client.list_users(0, self._list_limit)

        self._store.delete(key)
        if not page.accounts:
            await self._show(key, ref, "ℹ️ Пользователи на сервере не найдены.", back_to_menu_kb())
            return
        await self._show(key, ref, build_accounts_listing_text(page), back_to_menu_kb())

    async def _prompt_search(self, key: ConversationKey, ref: Optional[int]) -> None:
        self._store.set(key, Session(state=AWAITING_SEARCH))
        await self._show(key, ref, SEARCH_PROMPT, back_to_menu_kb())

    async def _open_deactivation_menu(self, key: ConversationKey, ref: Optional[int]) -> None:
        ref = await self._show(key, ref, "🔄 Загрузка пользователей для деактивации...")
        page = await self._client.list_users(0, self._list_limit)
        candidates = deactivation_candidates(page.accounts)

        if not candidates:
            self._store.delete(key)
            admins = sum(1 for a in page.accounts if a.is_admin and not a.deactivated)
            text = "ℹ️ Нет пользователей для деактивации."
            if admins:
                text += (
                    f"\n\n👑 Найдено администраторов: {admins}. "
                    "Они не могут быть деактивированы по соображениям безопасности."
                )
            await self._show(key, ref, text, back_to_menu_kb())
            return

        session = Session(
            state=RESULTS_SHOWN,
            result_set=tuple(candidates),
            result_kind=ResultKind.FOR_DEACTIVATION,
        )
        self._store.set(key, session)
        await self._show(key, ref, *self._results_view(session))

    # --- поиск -------------------------------------------------------------

    async def _run_search(self, key: ConversationKey, term: str) -> None:
        ref = await self._transport.render_text(key, f"🔍 Поиск: «{esc(term)}»...")
        try:
            found = await self._client.search_users(term, 0, self._search_limit)
        except AdminBotError as exc:
            # сессию не трогаем: можно сразу ввести запрос ещё раз
            logger.warning("Поиск «%s» в чате %s не удался: %s", term, key, exc)
            await self._transport.update_text(
                key,
                ref,
                f"❌ <b>Ошибка поиска</b> по запросу «{esc(term)}»\n\n{esc(exc)}",
                search_empty_kb(),
            )
            return

        if not found.accounts:
            self._store.delete(key)
            await self._transport.update_text(
                key,
                ref,
                "🔍 <b>Результаты поиска</b>\n\n"
                f"Пользователи по запросу «{esc(term)}» не найдены.\n\n"
                "Попробуйте поискать с другими условиями.",
                search_empty_kb(),
            )
            return

        session = Session(
            state=RESULTS_SHOWN,
            result_set=found.accounts,
            result_kind=ResultKind.FOR_SEARCH,
            search_term=term,
        )
        self._store.set(key, session)
        await self._transport.update_text(key, ref, *self._results_view(session))

    async def _inspect(self, key: ConversationKey, ref: Optional[int], account_key: str) -> None:
        session = self._require_results(key, ResultKind.FOR_SEARCH)
        account = await self._client.get_user(self._resolve(session, account_key).user_id)
        # карточка — это «оверлей», сессия не меняется
        await self._show(key, ref, build_account_card_text(account), account_detail_kb(account))

    async def _back_to_search(self, key: ConversationKey, ref: Optional[int]) -> None:
        session = self._store.get(key)
        if (
            session is None
            or session.state != RESULTS_SHOWN
            or session.result_kind is not ResultKind.FOR_SEARCH
        ):
            self._store.delete(key)
            await self._show(key, ref, MENU_TEXT, main_menu_kb())
            return
        await self._show(key, ref, *self._results_view(session))

    # --- списки ------------------------------------------------------------

    def _require_results(self, key: ConversationKey, kind: Optional[ResultKind] = None) -> Session:
        session = self._store.get(key)
        if session is None or session.state != RESULTS_SHOWN or not session.result_set:
            raise StaleReference("Список больше не актуален")
        if kind is not None and session.result_kind is not kind:
            raise StaleReference("Список больше не актуален")
        return session

    @staticmethod
    def _resolve(session: Session, account_key: str) -> DirectoryAccount:
        account = session.resolve(account_key)
        if account is None:
            raise StaleReference("Пользователя больше нет в этом списке")
        return account

    def _results_view(self, session: Session) -> Tuple[str, InlineKeyboardMarkup]:
        if session.result_kind is ResultKind.FOR_SEARCH:
            text = (
                "🔍 <b>Результаты поиска</b>\n\n"
                f"Найдено пользователей: {len(session.result_set)} "
                f"по запросу «{esc(session.search_term)}»\n\n"
                "Нажмите на пользователя для просмотра деталей или деактивации:"
            )
            return text, search_results_kb(session.result_set, session.page, self._page_size)

        text = (
            "❌ <b>Выберите пользователя для деактивации:</b>\n\n"
            "⚠️ Администраторы защищены и не отображаются в этом списке."
        )
        return text, deactivation_list_kb(session.result_set, session.page, self._page_size)

    async def _turn_page(
        self, key: ConversationKey, ref: Optional[int], kind: ResultKind, page: int
    ) -> None:
        session = self._require_results(key, kind)
        page = clamp_page(page, len(session.result_set), self._page_size)
        session = replace(session, page=page)
        self._store.set(key, session)

        text, markup = self._results_view(session)
        if ref is None:
            await self._transport.render_text(key, text, markup)
        else:
            await self._transport.update_buttons(key, ref, markup)

    # --- деактивация -------------------------------------------------------

    async def _select(self, key: ConversationKey, ref: Optional[int], account_key: str) -> None:
        session = self._require_results(key)
        account = self._resolve(session, account_key)
        user_id = account.user_id
        if not is_deactivation_candidate(account):
            raise ProtectedAccount(user_id)

        self._store.set(
            key, replace(session, state=CONFIRMING, pending_confirmation_id=user_id)
        )
        await self._show(
            key,
            ref,
            "⚠️ <b>Подтверждение деактивации</b>\n\n"
            f"Вы уверены, что хотите деактивировать пользователя:\n<code>{esc(user_id)}</code>\n\n"
            "⚠️ Это действие нельзя отменить!",
            confirm_deactivation_kb(user_id),
        )

    async def _cancel(self, key: ConversationKey, ref: Optional[int]) -> None:
        session = self._store.get(key)
        if session is None or session.state != CONFIRMING:
            raise StaleReference("Нечего отменять")

        session = replace(session, state=RESULTS_SHOWN, pending_confirmation_id=None)
        self._store.set(key, session)
        await self._show(key, ref, *self._results_view(session))

    async def _confirm(
        self, key: ConversationKey, ref: Optional[int], actor: Actor, account_key: str
    ) -> None:
        session = self._store.get(key)
        if (
            session is None
            or session.state != CONFIRMING
            or session.pending_confirmation_id is None
            or account_ref(session.pending_confirmation_id) != account_key
        ):
            raise StaleReference("Подтверждение больше не актуально")
        user_id = session.pending_confirmation_id

        ref = await self._show(key, ref, f"🔄 Деактивация пользователя <code>{esc(user_id)}</code>...")

        try:
            # другой админ мог успеть раньше, поэтому перепроверяем прямо перед вызовом
            current = await self._client.get_user(user_id)
            if current.is_admin:
                raise ProtectedAccount(user_id)
            if not current.deactivated:
                await self._client.deactivate_user(user_id)
        except AdminBotError as exc:
            self._store.set(
                key, replace(session, state=RESULTS_SHOWN, pending_confirmation_id=None)
            )
            logger.error("Деактивация %s (admin %s) не удалась: %s", user_id, actor.id, exc)
            await self._show(
                key,
                ref,
                f"❌ <b>Ошибка деактивации</b>\n\n<code>{esc(user_id)}</code>\n\nОшибка: {esc(exc)}",
                deactivation_failed_kb(),
            )
            return

        self._store.delete(key)

        if current.deactivated:
            await self._show(
                key,
                ref,
                f"ℹ️ Пользователь <code>{esc(user_id)}</code> уже деактивирован.",
                deactivation_done_kb(),
            )
            return

        self._audit.record("deactivated", actor, "confirm", target=user_id)
        await self._show(
            key,
            ref,
            "✅ <b>Пользователь успешно деактивирован</b>\n\n"
            f"Пользователь <code>{esc(user_id)}</code> был деактивирован.",
            deactivation_done_kb(),
        )
