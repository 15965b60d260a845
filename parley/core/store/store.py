"""The single state container shared by every component."""

from __future__ import annotations

import logging
from typing import Callable

from parley.core.store.actions import Action
from parley.core.store.reducers import reduce
from parley.core.store.state import AppState

log = logging.getLogger("parley.store")

Subscriber = Callable[[AppState, Action], None]


class Store:
    """Holds the current ``AppState`` and applies actions synchronously.

    Components receive the store through their constructor; the state never
    references a component back.
    """

    def __init__(self, state: AppState | None = None):
        self._state = state or AppState()
        self._subscribers: list[Subscriber] = []

    @property
    def state(self) -> AppState:
        return self._state

    def dispatch(self, action: Action) -> AppState:
        self._state = reduce(self._state, action)
        for subscriber in list(self._subscribers):
            try:
                subscriber(self._state, action)
            except Exception:
                log.exception("Store subscriber failed on %s", action.type)
        return self._state

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe
