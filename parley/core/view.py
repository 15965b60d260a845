"""ViewTransitionMachine: two-phase, cancellable view changes."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, Union

from parley.core.events import BusEventType, EventBus, ViewChangeEvent
from parley.core.models import ViewChangeReason, ViewState, ViewType
from parley.core.store import Store
from parley.core.store.actions import ChangeViewState, SetViewChanging
from parley.errors import ViewTransitionInProgress
from parley.utils import BackgroundTasks

log = logging.getLogger("parley.view")

ViewTarget = Union[ViewType, str, Mapping[str, bool], ViewState]


def resolve_view_state(target: ViewTarget, current: ViewState) -> ViewState:
    """A single view name replaces the state; a mapping is merged into it."""
    if isinstance(target, ViewState):
        return target
    if isinstance(target, (ViewType, str)):
        return ViewState.only(target)
    return current.merge(target)


class ViewTransitionMachine:
    def __init__(
        self,
        *,
        store: Store,
        bus: EventBus,
        hydrate: Callable[[], Awaitable[Any]],
    ):
        self._store = store
        self._bus = bus
        self._hydrate = hydrate
        self._tasks = BackgroundTasks(log)

    async def wait_idle(self) -> None:
        await self._tasks.wait_idle()

    async def change_view(
        self,
        target: ViewTarget,
        reason: ViewChangeReason = ViewChangeReason.CALLED_CHANGE_VIEW,
        try_hydrate: bool = True,
        force: bool = False,
    ) -> ViewState:
        current = self._store.state.persisted.view_state
        proposed = resolve_view_state(target, current)

        if proposed == current and not force:
            return current

        await self._transition(proposed, reason)

        final = self._store.state.persisted.view_state
        if try_hydrate and final.main_window and not self._store.state.is_hydrated:
            # The transition does not wait for the session to hydrate.
            self._tasks.spawn_guarded(self._hydrate(), context="hydrate after view change")
        return final

    async def _transition(self, proposed: ViewState, reason: ViewChangeReason) -> None:
        if self._store.state.view_changing:
            raise ViewTransitionInProgress()

        self._store.dispatch(SetViewChanging(True))
        old = self._store.state.persisted.view_state
        try:
            pre = await self._bus.fire(
                ViewChangeEvent(
                    type=BusEventType.VIEW_PRE_CHANGE,
                    reason=reason,
                    old_view_state=old,
                    new_view_state=proposed,
                )
            )
            if pre.cancel_view_change:
                log.debug("View change cancelled by a view:pre:change listener")
                return

            proposed = resolve_view_state(pre.new_view_state, old)
            self._store.dispatch(ChangeViewState(proposed))

            change = await self._bus.fire(
                ViewChangeEvent(
                    type=BusEventType.VIEW_CHANGE,
                    reason=reason,
                    old_view_state=old,
                    new_view_state=proposed,
                )
            )
            if change.cancel_view_change:
                log.debug("View change cancelled by a view:change listener; restoring %s", old.to_dict())
                self._store.dispatch(ChangeViewState(old))
                return

            self._store.dispatch(ChangeViewState(resolve_view_state(change.new_view_state, old)))
        finally:
            self._store.dispatch(SetViewChanging(False))
