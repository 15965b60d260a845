"""ChatEngine: composition root and the API the host application calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from parley.config import ChatConfig, get_chat_config
from parley.core.agent import AgentChannel
from parley.core.epoch import SessionEpoch
from parley.core.events import BusEventType, EventBus, Listener
from parley.core.history import HistoryService
from parley.core.hosts import RenderHosts
from parley.core.lifecycle import SessionLifecycle
from parley.core.models import (
    Message,
    MessageRequest,
    MessageSendSource,
    StreamChunk,
    ViewChangeReason,
    ViewState,
    message_from_dict,
)
from parley.core.ports import AgentProviderFactory, HistoryItem, HistoryLoader, PersistencePort, Transport
from parley.core.receive import MessageReceiver
from parley.core.send import MessageQueue, SendController, SendOptions
from parley.core.store import AppState, PersistedState, Store
from parley.core.store.actions import Action, LoadPersistedState
from parley.core.stream import StreamAssembler
from parley.core.view import ViewTarget, ViewTransitionMachine
from parley.utils import guard, maybe_await

log = logging.getLogger("parley.engine")


class _Hydration:
    """Lets the send path reach the lifecycle, which is built after it."""

    def __init__(self, engine: ChatEngine):
        self._engine = engine

    @property
    def started(self) -> bool:
        return self._engine.lifecycle.started

    async def wait(self) -> None:
        await self._engine.lifecycle.wait()

    async def hydrate(self, alternate_request=None, source=None, options=None) -> None:
        await self._engine.lifecycle.hydrate(alternate_request, source, options)


class Messaging:
    """``engine.messaging``: the inbound side of the assistant exchange."""

    def __init__(self, engine: ChatEngine):
        self._engine = engine

    async def add_message(self, message: Message | Mapping[str, Any]) -> None:
        engine = self._engine
        engine.queue.note_response()
        current = engine.queue.current
        await engine.receiver.receive(
            message_from_dict(message) if isinstance(message, Mapping) else message,
            request=current.message if current else None,
        )

    async def add_message_chunk(self, chunk: StreamChunk | Mapping[str, Any]) -> None:
        engine = self._engine
        engine.queue.note_response()
        await engine.stream.enqueue(chunk)

    async def insert_history(self, items: Sequence[HistoryItem | Mapping[str, Any]]) -> None:
        await self._engine.lifecycle.insert_history(items)

    async def restart_conversation(
        self, skip_hydration: bool = False, end_agent_chat: bool = True, fire_events: bool = True
    ) -> None:
        await self._engine.lifecycle.restart_conversation(skip_hydration, end_agent_chat, fire_events)

    async def clear_conversation(self) -> None:
        await self._engine.lifecycle.clear_conversation()

    def remove_messages(self, message_ids: Iterable[str]) -> None:
        self._engine.lifecycle.remove_messages(message_ids)


class ChatEngine:
    def __init__(
        self,
        *,
        transport: Transport | None = None,
        config: ChatConfig | None = None,
        history_loader: HistoryLoader | None = None,
        agent_provider_factory: AgentProviderFactory | None = None,
        persistence: PersistencePort | None = None,
    ):
        self.config = config or get_chat_config()
        self.store = Store()
        self.bus = EventBus(instance=self)
        self.epoch = SessionEpoch()
        self.hosts = RenderHosts(store=self.store, bus=self.bus)

        self.agent = AgentChannel(
            store=self.store, bus=self.bus, epoch=self.epoch, hosts=self.hosts, config=self.config.agent
        )
        self.receiver = MessageReceiver(
            store=self.store,
            bus=self.bus,
            epoch=self.epoch,
            hosts=self.hosts,
            agent=self.agent,
            config=self.config,
        )
        self.stream = StreamAssembler(
            store=self.store, epoch=self.epoch, hosts=self.hosts, receive=self.receiver.receive
        )
        self.queue = MessageQueue(store=self.store, bus=self.bus, transport=transport, config=self.config)
        self.queue.instance = self
        self.sending = SendController(store=self.store, queue=self.queue, hydration=_Hydration(self))
        self.history = HistoryService(bus=self.bus, loader=history_loader, instance=self)
        self.lifecycle = SessionLifecycle(
            store=self.store,
            bus=self.bus,
            epoch=self.epoch,
            hosts=self.hosts,
            agent=self.agent,
            history=self.history,
            sending=self.sending,
            queue=self.queue,
            receiver=self.receiver,
            config=self.config,
            agent_factory=agent_provider_factory,
            instance=self,
        )
        self.view = ViewTransitionMachine(store=self.store, bus=self.bus, hydrate=self.lifecycle.hydrate)
        self.lifecycle.change_view = self.view.change_view
        self.messaging = Messaging(self)

        self._persistence = persistence
        self._last_saved: PersistedState | None = None
        self._unsubscribe_persistence = None
        if persistence is not None:
            self._load_persisted(persistence)
            self._unsubscribe_persistence = self.store.subscribe(self._save_persisted)

    # -- State -----------------------------------------------------------------

    @property
    def state(self) -> AppState:
        return self.store.state

    def _load_persisted(self, persistence: PersistencePort) -> None:
        try:
            data = persistence.load()
        except Exception:
            log.exception("Could not load persisted state; starting fresh")
            return
        if data:
            self.store.dispatch(LoadPersistedState(PersistedState.from_dict(data)))

    def _save_persisted(self, state: AppState, action: Action) -> None:
        if self._last_saved is state.persisted:
            return
        self._last_saved = state.persisted
        self._persistence.save(state.persisted.to_dict())

    # -- Sending ---------------------------------------------------------------

    async def send(
        self,
        message: MessageRequest | str,
        options: SendOptions | None = None,
        source: MessageSendSource = MessageSendSource.INSTANCE_SEND,
    ) -> None:
        """Send to the assistant, or to the human agent while one is connected."""
        agent_state = self.store.state.persisted.agent
        if agent_state.is_connected and not agent_state.is_suspended:
            text = message if isinstance(message, str) else message.text
            self.sending.close_home_screen_and_panel()
            await self.agent.send_message_to_agent(text)
            return
        await self.sending.send(message, source, options)

    async def send_safely(
        self,
        message: MessageRequest | str,
        options: SendOptions | None = None,
        source: MessageSendSource = MessageSendSource.INSTANCE_SEND,
    ) -> None:
        await guard(self.send(message, options, source), context="send", logger=log)

    # -- View ------------------------------------------------------------------

    async def change_view(
        self,
        target: ViewTarget,
        reason: ViewChangeReason = ViewChangeReason.CALLED_CHANGE_VIEW,
        try_hydrate: bool = True,
        force: bool = False,
    ) -> ViewState:
        return await self.view.change_view(target, reason, try_hydrate, force)

    async def open(self) -> ViewState:
        return await self.change_view("main_window", ViewChangeReason.LAUNCHER_CLICKED)

    # -- Events ----------------------------------------------------------------

    def on(self, event_type: BusEventType | str, listener: Listener) -> ChatEngine:
        self.bus.on(event_type, listener)
        return self

    def once(self, event_type: BusEventType | str, listener: Listener) -> ChatEngine:
        self.bus.once(event_type, listener)
        return self

    def off(self, event_type: BusEventType | str, listener: Listener | None = None) -> ChatEngine:
        self.bus.off(event_type, listener)
        return self

    # -- Teardown --------------------------------------------------------------

    async def wait_idle(self) -> None:
        """Settle every background continuation started so far."""
        # Work settling in one component can start work in another.
        for _ in range(3):
            await self.lifecycle.wait_idle()
            await self.view.wait_idle()
            await self.receiver.wait_idle()
            await self.agent.wait_idle()
            await self.queue.wait_idle()
            await asyncio.sleep(0)

    async def destroy(self) -> None:
        log.info("Destroying chat engine")
        if self._unsubscribe_persistence is not None:
            self._unsubscribe_persistence()
            self._unsubscribe_persistence = None
        self.epoch.bump()
        self.queue.shutdown()
        self.stream.shutdown()
        self.receiver.cancel_all()
        self.agent.shutdown()
        close = getattr(self.agent.provider, "shutdown", None)
        if callable(close):
            await guard(maybe_await(close()), context="agent provider shutdown", logger=log)
