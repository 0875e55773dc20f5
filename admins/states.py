"""
Состояния диалога администратора. «Нет состояния» (None) — это главное меню.
"""

from aiogram.fsm.state import State, StatesGroup


class DirectoryFSM(StatesGroup):
    awaiting_search = State()          # ждём текст поискового запроса
    results_shown = State()            # показан постраничный список
    confirming_deactivation = State()  # ждём «Да» / «Отмена»
