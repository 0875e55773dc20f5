import asyncio

import pytest

from admins.actions import ButtonEvent, Command, FreeText, ResultKind, account_ref
from admins.controller import AWAITING_SEARCH, CONFIRMING, RESULTS_SHOWN
from admins.session import Session
from directory.errors import DirectoryUnavailable

KEY = 500
MSG = 77

_tokens = iter(range(1, 10_000))


def btn(kind: str, user_id: str) -> str:
    return f"{kind}:{account_ref(user_id)}"


def press(data: str, ref: int = MSG) -> ButtonEvent:
    return ButtonEvent(token=f"cb{next(_tokens)}", data=data, message_ref=ref)


@pytest.fixture
def many_users(directory, account):
    """25 обычных пользователей, @bob:x среди них, плюс админ и деактивированный."""
    users = [account(f"@user{i:02d}:x", f"User {i}") for i in range(24)]
    users.insert(12, account("@bob:x", "Bob"))
    users.append(account("@root:x", "Root", is_admin=True))
    users.append(account("@gone:x", "Gone", deactivated=True))
    directory.accounts = users
    return users


@pytest.fixture
def search_users(directory, account):
    directory.accounts = [
        account("@john:x", "J. Public"),
        account("@mary:x", "Mary Johnson"),
        account("@boss:x", "Johnny Boss", is_admin=True),
        account("@peter:x", "Peter"),
    ]
    return directory.accounts


# --------------------------------------------------------------------------- #
#                               меню и команды                                #
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio
async def test_start_renders_menu_and_clears_session(controller, store, transport, actor, callback_data):
    store.set(KEY, Session(state=AWAITING_SEARCH))

    await controller.handle(KEY, actor, Command("start"))

    method, key, _, text, markup = transport.last
    assert (method, key) == ("render_text", KEY)
    assert "Alice Admin" in text
    assert callback_data(markup) == ["menu:list", "menu:search", "menu:deactivate", "menu:whoami"]
    assert store.get(KEY) is None


@pytest.mark.asyncio
async def test_help_and_whoami(controller, transport, actor):
    await controller.handle(KEY, actor, Command("help"))
    assert "/search" in transport.last[3]

    await controller.handle(KEY, actor, Command("whoami"))
    assert "<code>42</code>" in transport.last[3]
    assert "@alice" in transport.last[3]


@pytest.mark.asyncio
async def test_button_is_acknowledged_first(controller, transport, actor):
    event = press("back")
    await controller.handle(KEY, actor, event)

    assert transport.calls[0] == ("acknowledge", None, event.token, None, None)
    assert transport.last[0] == "update_text"


@pytest.mark.asyncio
async def test_acknowledge_does_not_wait_for_remote_call(controller, directory, transport, actor):
    gate = asyncio.Event()
    original = directory.list_users

    async def slow_list_users(offset=0, limit=100):
        await gate.wait()
        return await original(offset, limit)

    directory.list_users = slow_list_users
    task = asyncio.create_task(controller.handle(KEY, actor, press("menu:list")))
    await asyncio.sleep(0.01)

    assert transport.calls[0][0] == "acknowledge"
    assert not task.done()

    gate.set()
    await task
    assert transport.last[0] == "update_text"


@pytest.mark.asyncio
async def test_list_users_shows_everyone(controller, many_users, store, transport, actor, callback_data):
    store.set(KEY, Session(state=AWAITING_SEARCH))

    await controller.handle(KEY, actor, press("menu:list"))

    text = transport.last[3]
    assert "(всего 27)" in text
    assert "@root:x" in text and "@gone:x" in text
    assert callback_data(transport.last[4]) == ["back"]
    assert store.get(KEY) is None


@pytest.mark.asyncio
async def test_back_clears_session(controller, store, transport, actor, callback_data):
    store.set(KEY, Session(state=CONFIRMING, pending_confirmation_id="@bob:x"))

    await controller.handle(KEY, actor, press("back"))

    assert store.get(KEY) is None
    assert "menu:deactivate" in callback_data(transport.last[4])


@pytest.mark.asyncio
async def test_noop_only_acknowledges(controller, transport, actor):
    await controller.handle(KEY, actor, press("noop"))
    assert transport.methods == ["acknowledge"]


@pytest.mark.asyncio
async def test_unknown_button_renders_notice(controller, transport, actor, callback_data):
    await controller.handle(KEY, actor, press("deactivate_@bob:x"))

    assert "устарел" in transport.last[3]
    assert callback_data(transport.last[4]) == ["back"]


# --------------------------------------------------------------------------- #
#                                   поиск                                     #
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio
async def test_free_text_outside_search_mode_is_ignored(controller, directory, transport, actor):
    await controller.handle(KEY, actor, FreeText("john"))

    assert transport.calls == []
    assert directory.calls == []


@pytest.mark.asyncio
async def test_search_flow(controller, search_users, store, transport, actor, callback_data):
    await controller.handle(KEY, actor, press("menu:search"))
    assert store.get(KEY).state == AWAITING_SEARCH

    await controller.handle(KEY, actor, FreeText("  john "))

    session = store.get(KEY)
    assert session.state == RESULTS_SHOWN
    assert session.result_kind is ResultKind.FOR_SEARCH
    assert session.search_term == "john"
    assert session.page == 0
    assert [a.user_id for a in session.result_set] == ["@john:x", "@mary:x", "@boss:x"]

    method, _, ref, text, markup = transport.last
    assert method == "update_text"
    assert transport.calls[-2] == ("render_text", KEY, ref, "🔍 Поиск: «john»...", None)
    assert "Найдено пользователей: 3" in text
    data = callback_data(markup)
    assert btn("inspect", "@john:x") in data and btn("select", "@john:x") in data
    # админ в результатах есть, но кнопки деактивации у него нет
    assert btn("inspect", "@boss:x") in data and btn("select", "@boss:x") not in data


@pytest.mark.asyncio
async def test_quick_search_command(controller, search_users, store, actor):
    await controller.handle(KEY, actor, Command("search", "@john:x"))

    session = store.get(KEY)
    assert [a.user_id for a in session.result_set] == ["@john:x"]


@pytest.mark.asyncio
async def test_search_command_without_term_prompts(controller, store, transport, actor):
    await controller.handle(KEY, actor, Command("search"))

    assert store.get(KEY).state == AWAITING_SEARCH
    assert transport.last[0] == "render_text"


@pytest.mark.asyncio
async def test_blank_search_term_keeps_waiting(controller, directory, store, transport, actor):
    store.set(KEY, Session(state=AWAITING_SEARCH))

    await controller.handle(KEY, actor, FreeText("   "))

    assert store.get(KEY).state == AWAITING_SEARCH
    assert "корректный поисковый запрос" in transport.last[3]
    assert directory.calls == []


@pytest.mark.asyncio
async def test_search_without_matches_returns_to_idle(controller, search_users, store, transport, actor, callback_data):
    store.set(KEY, Session(state=AWAITING_SEARCH))

    await controller.handle(KEY, actor, FreeText("zzz"))

    assert store.get(KEY) is None
    assert "не найдены" in transport.last[3]
    assert callback_data(transport.last[4]) == ["menu:search", "back"]


@pytest.mark.asyncio
async def test_search_failure_keeps_term_and_state(controller, directory, store, transport, actor):
    store.set(KEY, Session(state=AWAITING_SEARCH))
    directory.fail["search_users"] = DirectoryUnavailable("connection reset")

    await controller.handle(KEY, actor, FreeText("john"))

    assert store.get(KEY) == Session(state=AWAITING_SEARCH)
    assert "«john»" in transport.last[3]
    assert "connection reset" in transport.last[3]


@pytest.mark.asyncio
async def test_inspect_is_an_overlay(controller, search_users, store, transport, actor, callback_data):
    await controller.handle(KEY, actor, Command("search", "john"))
    before = store.get(KEY)

    await controller.handle(KEY, actor, press(btn("inspect", "@mary:x")))

    assert store.get(KEY) == before
    assert "Mary Johnson" in transport.last[3]
    assert callback_data(transport.last[4]) == [btn("select", "@mary:x"), "back_to_search", "back"]

    await controller.handle(KEY, actor, press(btn("inspect", "@boss:x")))
    assert callback_data(transport.last[4]) == ["noop", "back_to_search", "back"]

    await controller.handle(KEY, actor, press("back_to_search"))
    assert "Результаты поиска" in transport.last[3]


@pytest.mark.asyncio
async def test_inspect_without_search_results_is_stale(controller, directory, transport, actor):
    await controller.handle(KEY, actor, press(btn("inspect", "@mary:x")))

    assert directory.calls == []
    assert "устарел" in transport.last[3]


# --------------------------------------------------------------------------- #
#                          деактивация и пагинация                            #
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio
async def test_deactivation_menu_offers_only_candidates(controller, many_users, store, transport, actor, callback_data):
    await controller.handle(KEY, actor, press("menu:deactivate"))

    session = store.get(KEY)
    assert session.state == RESULTS_SHOWN
    assert session.result_kind is ResultKind.FOR_DEACTIVATION
    assert len(session.result_set) == 25
    assert all(not a.is_admin and not a.deactivated for a in session.result_set)

    data = callback_data(transport.last[4])
    assert len([d for d in data if d.startswith("select:")]) == 10
    assert "page:d:1" in data and "page:d:-1" not in data


@pytest.mark.asyncio
async def test_deactivation_menu_without_candidates(controller, directory, account, store, transport, actor):
    directory.accounts = [account("@root:x", is_admin=True), account("@gone:x", deactivated=True)]

    await controller.handle(KEY, actor, press("menu:deactivate"))

    assert store.get(KEY) is None
    assert "Нет пользователей для деактивации" in transport.last[3]
    assert "администраторов: 1" in transport.last[3]


@pytest.mark.asyncio
async def test_paging_is_clamped(controller, many_users, store, transport, actor, callback_data):
    await controller.handle(KEY, actor, press("menu:deactivate"))

    await controller.handle(KEY, actor, press("page:d:99"))

    assert store.get(KEY).page == 2
    method, _, ref, _, markup = transport.last
    assert (method, ref) == ("update_buttons", MSG)
    data = callback_data(markup)
    assert len([d for d in data if d.startswith("select:")]) == 5
    assert "page:d:1" in data and "page:d:3" not in data


@pytest.mark.asyncio
async def test_page_of_other_kind_is_stale(controller, many_users, store, transport, actor):
    await controller.handle(KEY, actor, press("menu:deactivate"))

    await controller.handle(KEY, actor, press("page:s:1"))

    assert store.get(KEY).page == 0
    assert "устарел" in transport.last[3]


@pytest.mark.asyncio
async def test_select_asks_for_confirmation_only(controller, many_users, directory, store, transport, actor, callback_data):
    await controller.handle(KEY, actor, press("menu:deactivate"))

    await controller.handle(KEY, actor, press(btn("select", "@user03:x")))

    session = store.get(KEY)
    assert session.state == CONFIRMING
    assert session.pending_confirmation_id == "@user03:x"
    assert "deactivate_user" not in directory.call_names
    assert callback_data(transport.last[4]) == [btn("confirm", "@user03:x"), "cancel"]


@pytest.mark.asyncio
async def test_cancel_returns_to_same_page_without_remote_call(controller, many_users, directory, store, transport, actor, callback_data):
    await controller.handle(KEY, actor, press("menu:deactivate"))
    await controller.handle(KEY, actor, press("page:d:1"))
    await controller.handle(KEY, actor, press(btn("select", "@bob:x")))
    assert "@bob:x" in transport.last[3]
    calls_before = list(directory.calls)

    await controller.handle(KEY, actor, press("cancel"))

    session = store.get(KEY)
    assert session.state == RESULTS_SHOWN
    assert session.result_kind is ResultKind.FOR_DEACTIVATION
    assert session.page == 1
    assert session.pending_confirmation_id is None
    assert directory.calls == calls_before
    assert "2/3" in [b.text for row in transport.last[4].inline_keyboard for b in row]


@pytest.mark.asyncio
async def test_confirm_deactivates_and_audits(controller, many_users, directory, store, transport, audit, actor, callback_data):
    await controller.handle(KEY, actor, press("menu:deactivate"))
    await controller.handle(KEY, actor, press(btn("select", "@bob:x")))

    await controller.handle(KEY, actor, press(btn("confirm", "@bob:x")))

    assert directory.call_names[-2:] == ["get_user", "deactivate_user"]
    assert directory.calls[-1] == ("deactivate_user", "@bob:x")
    assert store.get(KEY) is None
    assert "успешно деактивирован" in transport.last[3]
    assert callback_data(transport.last[4]) == ["menu:deactivate", "back"]

    [entry] = audit.entries
    assert (entry.event, entry.actor.id, entry.target) == ("deactivated", 42, "@bob:x")


@pytest.mark.asyncio
async def test_confirm_failure_clears_pending_and_offers_retry(controller, many_users, directory, store, transport, audit, actor, callback_data):
    await controller.handle(KEY, actor, press("menu:deactivate"))
    await controller.handle(KEY, actor, press(btn("select", "@bob:x")))
    directory.fail["deactivate_user"] = DirectoryUnavailable("network is unreachable")

    await controller.handle(KEY, actor, press(btn("confirm", "@bob:x")))

    session = store.get(KEY)
    assert session.pending_confirmation_id is None
    assert session.state == RESULTS_SHOWN
    assert "Ошибка деактивации" in transport.last[3]
    assert "network is unreachable" in transport.last[3]
    assert callback_data(transport.last[4]) == ["menu:deactivate", "back"]
    assert audit.entries == []


@pytest.mark.asyncio
async def test_confirm_after_someone_else_deactivated(controller, many_users, directory, store, transport, audit, actor):
    await controller.handle(KEY, actor, press("menu:deactivate"))
    await controller.handle(KEY, actor, press(btn("select", "@bob:x")))
    directory.set_deactivated("@bob:x")

    await controller.handle(KEY, actor, press(btn("confirm", "@bob:x")))

    assert "deactivate_user" not in directory.call_names
    assert "уже деактивирован" in transport.last[3]
    assert audit.entries == []
    assert store.get(KEY) is None


@pytest.mark.asyncio
async def test_confirm_without_pending_confirmation_is_stale(controller, many_users, directory, store, transport, actor):
    await controller.handle(KEY, actor, press(btn("confirm", "@bob:x")))
    assert "устарел" in transport.last[3]

    await controller.handle(KEY, actor, press("menu:deactivate"))
    await controller.handle(KEY, actor, press(btn("select", "@bob:x")))
    await controller.handle(KEY, actor, press(btn("confirm", "@user01:x")))

    assert "deactivate_user" not in directory.call_names
    assert store.get(KEY).pending_confirmation_id == "@bob:x"


@pytest.mark.asyncio
async def test_select_from_search_resolves_through_results_and_protects_admins(controller, search_users, directory, store, transport, actor):
    await controller.handle(KEY, actor, Command("search", "john"))

    await controller.handle(KEY, actor, press(btn("select", "@boss:x")))
    assert store.get(KEY).state == RESULTS_SHOWN
    assert "не может быть деактивирован" in transport.last[3]

    # @peter:x в результаты этого поиска не попал: ссылка на него не разрешается
    await controller.handle(KEY, actor, press(btn("select", "@peter:x")))
    assert "устарел" in transport.last[3]
    assert store.get(KEY).pending_confirmation_id is None
    assert "get_user" not in directory.call_names

    await controller.handle(KEY, actor, press(btn("select", "@mary:x")))
    assert store.get(KEY).pending_confirmation_id == "@mary:x"

    await controller.handle(KEY, actor, press("cancel"))
    session = store.get(KEY)
    assert session.result_kind is ResultKind.FOR_SEARCH
    assert "Результаты поиска" in transport.last[3]


@pytest.mark.asyncio
async def test_remote_failure_keeps_previous_state(controller, many_users, directory, store, transport, actor, callback_data):
    await controller.handle(KEY, actor, press("menu:deactivate"))
    before = store.get(KEY)
    directory.fail["list_users"] = DirectoryUnavailable("timeout")

    await controller.handle(KEY, actor, press("menu:list"))

    assert store.get(KEY) == before
    assert "timeout" in transport.last[3]
    assert callback_data(transport.last[4]) == ["back"]


@pytest.mark.asyncio
async def test_sessions_are_independent(controller, many_users, store, actor):
    await controller.handle(1, actor, press("menu:deactivate"))
    await controller.handle(2, actor, press("menu:search"))

    assert store.get(1).state == RESULTS_SHOWN
    assert store.get(2).state == AWAITING_SEARCH


# --------------------------------------------------------------------------- #
#                     длинные MXID и отказы Telegram                          #
# --------------------------------------------------------------------------- #

LONG_ID = "@ivan.petrovich.sidorov:matrix.department-of-theoretical-physics.example.org"


@pytest.mark.asyncio
async def test_long_mxid_fits_into_buttons_and_is_deactivated(controller, directory, account, store, transport, actor, callback_data):
    assert len(LONG_ID.encode()) > 64
    directory.accounts = [account(LONG_ID, "Иван Петрович"), account("@ivan:x", "Ivan")]

    await controller.handle(KEY, actor, Command("search", "ivan"))

    assert transport.last[0] == "update_text"
    assert store.get(KEY).state == RESULTS_SHOWN
    data = callback_data(transport.last[4])
    assert btn("select", LONG_ID) in data
    assert all(len(d.encode()) <= 64 for d in data)

    await controller.handle(KEY, actor, press(btn("inspect", LONG_ID)))
    assert "Иван Петрович" in transport.last[3]

    await controller.handle(KEY, actor, press(btn("select", LONG_ID)))
    assert store.get(KEY).pending_confirmation_id == LONG_ID
    assert callback_data(transport.last[4]) == [btn("confirm", LONG_ID), "cancel"]

    await controller.handle(KEY, actor, press(btn("confirm", LONG_ID)))
    assert directory.calls[-1] == ("deactivate_user", LONG_ID)
    assert "успешно деактивирован" in transport.last[3]


@pytest.mark.asyncio
async def test_rejected_screen_restores_session_and_offers_menu(controller, search_users, store, transport, actor, callback_data, bad_request):
    store.set(KEY, Session(state=AWAITING_SEARCH))
    transport.fail["update_text"] = bad_request("Bad Request: BUTTON_DATA_INVALID")

    await controller.handle(KEY, actor, FreeText("john"))

    assert store.get(KEY) == Session(state=AWAITING_SEARCH)
    method, _, _, text, markup = transport.last
    assert method == "render_text"
    assert "BUTTON_DATA_INVALID" in text
    assert callback_data(markup) == ["back"]


@pytest.mark.asyncio
async def test_rejected_screen_without_previous_session_clears_it(controller, many_users, store, transport, actor, bad_request):
    transport.fail["update_text"] = bad_request("Bad Request: message to edit not found")

    await controller.handle(KEY, actor, press("menu:deactivate"))

    assert store.get(KEY) is None
    assert transport.last[0] == "render_text"


@pytest.mark.asyncio
async def test_chat_lock_is_released_after_handling(controller, many_users, actor):
    await controller.handle(KEY, actor, press("menu:deactivate"))
    await controller.handle(KEY, actor, Command("start"))

    assert KEY not in controller._locks
    assert len(controller._locks) == 0
