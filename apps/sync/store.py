import logging
from typing import Callable, List, Optional

from .reducer import reduce
from .state import ClassroomState, get_record

logger = logging.getLogger(__name__)

Subscriber = Callable[[ClassroomState, ClassroomState], None]


class ClassroomStore:
    """
    Owner of the current classroom state.

    Consumers read ``state`` and send changes through ``dispatch``; nothing
    else replaces the state. One instance is built per session and handed to
    whoever needs it.
    """

    def __init__(self, state: Optional[ClassroomState] = None):
        self._state = state if state is not None else ClassroomState()
        self._subscribers: List[Subscriber] = []

    @property
    def state(self) -> ClassroomState:
        return self._state

    def dispatch(self, event) -> ClassroomState:
        previous = self._state
        current = reduce(previous, event)
        if current is previous:
            return current

        self._state = current
        for callback in list(self._subscribers):
            try:
                callback(previous, current)
            except Exception as e:
                logger.error(f"Store subscriber failed: {str(e)}", exc_info=True)
        return current

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Call ``callback(previous, current)`` after every effective change."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def get(self, collection: str, record_id: str):
        return get_record(self._state, collection, record_id)

    @property
    def current_user(self):
        """最新的登录用户（随实时事件更新）"""
        if self._state.current_user_id is None:
            return None
        return self._state.users.get(self._state.current_user_id)
