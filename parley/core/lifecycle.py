"""SessionLifecycle: hydration, restart and clear.

Hydration runs at most once per epoch. The first caller starts it and every
concurrent caller awaits the same task; only the initiating caller fires
``chat:ready``. A failed hydration is logged, leaves the session
un-hydrated and clears the memo so that the next caller retries.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from typing import Any, Awaitable, Callable

from parley.config import ChatConfig
from parley.core.agent import AgentChannel
from parley.core.agent.messages import is_agent_message
from parley.core.epoch import EpochToken, SessionEpoch
from parley.core.events import BusEvent, BusEventType, EventBus
from parley.core.history import HistoryService, LoadedHistory
from parley.core.hosts import RenderHosts
from parley.core.models import (
    MessageRequest,
    MessageSendSource,
    ViewChangeReason,
    ViewState,
    create_request_for_text,
)
from parley.core.ports import AgentProviderFactory, HistoryItem
from parley.core.receive import MessageReceiver
from parley.core.send import MessageQueue, SendController, SendOptions
from parley.core.store import Store
from parley.core.store.actions import (
    ChatWasHydrated,
    HydrateHistory,
    RemoveMessages,
    RestartConversation,
    SetHomeScreenOpen,
    SetResponsePanel,
)
from parley.errors import EpochExpired, HydrationError
from parley.utils import BackgroundTasks

log = logging.getLogger("parley.lifecycle")

ChangeViewFn = Callable[..., Awaitable[Any]]


class SessionLifecycle:
    def __init__(
        self,
        *,
        store: Store,
        bus: EventBus,
        epoch: SessionEpoch,
        hosts: RenderHosts,
        agent: AgentChannel,
        history: HistoryService,
        sending: SendController,
        queue: MessageQueue,
        receiver: MessageReceiver,
        config: ChatConfig,
        agent_factory: AgentProviderFactory | None = None,
        instance: Any = None,
    ):
        self._store = store
        self._bus = bus
        self._epoch = epoch
        self._hosts = hosts
        self._agent = agent
        self._history = history
        self._sending = sending
        self._queue = queue
        self._receiver = receiver
        self._config = config
        self._agent_factory = agent_factory
        self._instance = instance
        self._tasks = BackgroundTasks(log)

        self.change_view: ChangeViewFn | None = None
        self._hydration: asyncio.Task | None = None
        self._already_hydrated = False
        self._restarting = False

    # -- Hydration -------------------------------------------------------------

    @property
    def started(self) -> bool:
        return self._hydration is not None

    @property
    def restarting(self) -> bool:
        return self._restarting

    async def wait(self) -> None:
        """Wait for the in-flight hydration, whatever its outcome."""
        task = self._hydration
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def wait_idle(self) -> None:
        await self.wait()
        await self._tasks.wait_idle()

    async def hydrate(
        self,
        alternate_request: MessageRequest | None = None,
        source: MessageSendSource | None = None,
        options: SendOptions | None = None,
    ) -> None:
        initiator = self._hydration is None
        if initiator:
            self._hydration = asyncio.ensure_future(
                self._run_hydration(alternate_request, source, options)
            )
        completed = await asyncio.shield(self._hydration)

        if initiator and completed:
            await self._bus.fire(BusEvent(type=BusEventType.CHAT_READY))
        elif alternate_request is not None:
            # Hydration was already under way; this request still has to go out.
            await self._sending.send(alternate_request, source or MessageSendSource.INSTANCE_SEND, options)

    async def _run_hydration(
        self,
        alternate_request: MessageRequest | None,
        source: MessageSendSource | None,
        options: SendOptions | None,
    ) -> bool:
        token = self._epoch.capture()
        try:
            await self._do_hydrate(token, alternate_request, source, options)
            return True
        except EpochExpired:
            log.debug("Conversation restarted during hydration; bootstrap abandoned")
            return False
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception("Error hydrating the chat")
            if self._hydration is asyncio.current_task():
                self._hydration = None
            raise HydrationError(f"Hydration failed: {e}") from e

    async def _do_hydrate(
        self,
        token: EpochToken,
        alternate_request: MessageRequest | None,
        source: MessageSendSource | None,
        options: SendOptions | None,
    ) -> None:
        log.debug("Hydrating the chat (alternate request: %s)", alternate_request is not None)
        history = LoadedHistory()
        if not self._already_hydrated:
            history = await token.resume(self._history.load())
            if self._agent_factory is not None and not self._agent.has_provider:
                await token.resume(self._agent.initialize(self._agent_factory, self._instance))

        if not history:
            if alternate_request is None:
                if self._config.home_screen_enabled:
                    self._store.dispatch(SetHomeScreenOpen(True))
                elif not self._config.skip_welcome:
                    # Resolve on the first chunk so a streamed greeting does not hold the session.
                    await token.resume(
                        self._sending.send_safely(
                            create_request_for_text(""),
                            MessageSendSource.WELCOME_REQUEST,
                            SendOptions(return_before_streaming=True),
                            ignore_hydration=True,
                        )
                    )
            if self._store.state.persisted.view_state.tour and self.change_view is not None:
                await token.resume(
                    self.change_view(
                        ViewState.only("main_window"),
                        ViewChangeReason.HISTORY_LOADED,
                        try_hydrate=False,
                    )
                )
        else:
            await token.resume(self._apply_history(history))
            if history.latest_panel_item is not None:
                self._store.dispatch(SetResponsePanel(True, history.latest_panel_item.id))

        if alternate_request is not None:
            self._store.dispatch(SetHomeScreenOpen(False))
            # A failed first message is marked on the message; the session still hydrates.
            await token.resume(
                self._sending.send_safely(
                    alternate_request,
                    source or MessageSendSource.INSTANCE_SEND,
                    options,
                    ignore_hydration=True,
                )
            )

        token.check()
        self._store.dispatch(ChatWasHydrated())

        if history:
            self._resend_unanswered(history)

        # Agent reconciliation resolves on its own schedule.
        self._tasks.spawn_guarded(
            self._agent.handle_hydration(True, bool(history)),
            context="agent hydration",
        )
        self._already_hydrated = True

    async def _apply_history(self, history: LoadedHistory, *, prepend: bool = False) -> None:
        self._store.dispatch(
            HydrateHistory(
                tuple(history.messages),
                tuple(history.items),
                tuple(history.local_message_ids),
                prepend=prepend,
            )
        )
        state = self._store.state
        for item_id in history.local_message_ids:
            item = state.items_by_id.get(item_id)
            message = state.messages_by_id.get(item.full_message_id) if item else None
            if item is not None and message is not None:
                await self._hosts.notify_items(item, message)

    def _resend_unanswered(self, history: LoadedHistory) -> None:
        last = history.last_local_item
        if last is None:
            return
        message = self._store.state.messages_by_id.get(last.full_message_id)
        if isinstance(message, MessageRequest) and not is_agent_message(message):
            # The user left before the response arrived; asking again reattaches us to it.
            log.info("Resending unanswered request %s from history", message.id)
            self._sending.resend(message, last.id)

    async def insert_history(self, items: Sequence[HistoryItem]) -> None:
        """Prepend older history ahead of the live conversation."""
        history = await self._history.convert(items)
        if history:
            await self._apply_history(history, prepend=True)

    # -- Restart / clear -------------------------------------------------------

    async def restart_conversation(
        self,
        skip_hydration: bool = False,
        end_agent_chat: bool = True,
        fire_events: bool = True,
    ) -> None:
        if self._restarting:
            log.warning("You cannot restart a conversation while a previous restart is still pending.")
            return

        self._restarting = True
        try:
            log.info("Restarting conversation")
            if fire_events:
                await self._bus.fire(BusEvent(type=BusEventType.PRE_RESTART_CONVERSATION))
            self._epoch.bump()
            self._queue.cancel_all()
            self._receiver.cancel_all()
            await self.wait()

            state = self._store.state
            agent_active = state.agent.is_connecting or state.persisted.agent.is_connected
            if agent_active and end_agent_chat:
                await self._agent.end_chat(True, False, False)

            self._hosts.clear()
            self._store.dispatch(RestartConversation())
            if not skip_hydration:
                self._hydration = None

            if fire_events:
                await self._bus.fire(BusEvent(type=BusEventType.RESTART_CONVERSATION))
            await self.wait()

            if not skip_hydration and not self._store.state.is_hydrated:
                self._hydration = None
                if self._store.state.persisted.view_state.main_window:
                    await self.hydrate()
            else:
                self._store.dispatch(ChatWasHydrated())
        finally:
            self._restarting = False

    async def clear_conversation(self) -> None:
        await self.restart_conversation(skip_hydration=True, end_agent_chat=False, fire_events=False)

    def remove_messages(self, message_ids: Iterable[str]) -> None:
        self._store.dispatch(RemoveMessages(tuple(message_ids)))
