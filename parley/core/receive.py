"""Full-response receive path.

``MessageReceiver.receive`` is what ``messaging.add_message`` and final
stream chunks go through: ``pre:receive``, the item walk and ``receive``.
The item walk runs in the background so that ``pause`` items and agent
availability checks never block the transport that delivered the response.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from parley.config import ChatConfig
from parley.core.epoch import EpochToken, SessionEpoch
from parley.core.events import BusEventType, EventBus, MessageEvent
from parley.core.hosts import RenderHosts
from parley.core.items import (
    flatten_item,
    is_silent_user_defined,
    output_item_to_local_item,
    response_type_of,
)
from parley.core.models import (
    AgentsOnlineStatus,
    Message,
    MessageItem,
    MessageRequest,
    MessageResponse,
    ResponseType,
    create_response_for_text,
)
from parley.core.store import Store
from parley.core.store.actions import (
    AddLocalMessageItem,
    AddMessage,
    AddNestedItems,
    AddTypingCounter,
    SetHasSentNonWelcomeMessage,
    SetMessageHistoryValue,
)
from parley.core.strings import text
from parley.errors import EpochExpired
from parley.utils import BackgroundTasks, new_id

if TYPE_CHECKING:
    from parley.core.agent.channel import AgentChannel

log = logging.getLogger("parley.receive")


class MessageReceiver:
    def __init__(
        self,
        *,
        store: Store,
        bus: EventBus,
        epoch: SessionEpoch,
        hosts: RenderHosts,
        agent: AgentChannel,
        config: ChatConfig,
    ):
        self._store = store
        self._bus = bus
        self._epoch = epoch
        self._hosts = hosts
        self._agent = agent
        self._config = config
        self._tasks = BackgroundTasks(log)

    async def wait_idle(self) -> None:
        """Wait for every item walk started so far (and any they started)."""
        await self._tasks.wait_idle()

    def cancel_all(self) -> None:
        self._tasks.cancel_all()

    async def receive(
        self,
        message: Message,
        *,
        is_latest_welcome: bool = False,
        request: MessageRequest | None = None,
        disable_fade_animation: bool = False,
    ) -> None:
        token = self._epoch.capture()
        if message.is_frozen:
            message = message.copy()
        if not message.id:
            message.id = new_id()

        event = await self._bus.fire(MessageEvent(type=BusEventType.PRE_RECEIVE, data=message))
        message = event.data
        if token.expired:
            log.debug("Dropping message %s received before a restart", message.id)
            return

        if not is_latest_welcome and isinstance(message, MessageResponse):
            is_latest_welcome = self._answers_welcome(message.request_id or (request.id if request else None))
        if not is_latest_welcome:
            self._store.dispatch(SetHasSentNonWelcomeMessage(True))

        if isinstance(message, MessageResponse):
            if request is not None and not message.request_id:
                message.request_id = request.id
            message.freeze()
            self._tasks.spawn_guarded(
                self._process_response(
                    message,
                    token,
                    is_latest_welcome=is_latest_welcome,
                    disable_fade_animation=disable_fade_animation,
                ),
                context=f"process response {message.id}",
            )
        else:
            log.error("Received a message that is not a response (id=%s); showing an error instead", message.id)
            error = create_response_for_text(
                text("errors_single_message"),
                response_type=ResponseType.INLINE_ERROR,
                thread_id=message.thread_id,
            )
            await self.receive(error)
            message.freeze()

        await self._bus.fire(MessageEvent(type=BusEventType.RECEIVE, data=message))

    def _answers_welcome(self, request_id: str | None) -> bool:
        if not request_id:
            return False
        request = self._store.state.messages_by_id.get(request_id)
        return isinstance(request, MessageRequest) and bool(request.history.get("is_welcome_request"))

    async def _process_response(
        self,
        message: MessageResponse,
        token: EpochToken,
        *,
        is_latest_welcome: bool,
        disable_fade_animation: bool,
    ) -> None:
        try:
            await self._walk_items(message, token, is_latest_welcome, disable_fade_animation)
        except EpochExpired:
            log.debug("Conversation restarted while processing %s; remaining items discarded", message.id)

    async def _walk_items(
        self,
        message: MessageResponse,
        token: EpochToken,
        is_latest_welcome: bool,
        disable_fade_animation: bool,
    ) -> None:
        token.check()
        self._store.dispatch(AddMessage(message))
        previous_id: str | None = None

        for raw in message.items:
            token.check()
            rtype = response_type_of(raw)

            if rtype is ResponseType.PAUSE:
                typing = bool(raw.get("typing"))
                if typing:
                    self._store.dispatch(AddTypingCounter(1))
                await token.resume(asyncio.sleep(float(raw.get("time") or 0) / 1000))
                if typing:
                    self._store.dispatch(AddTypingCounter(-1))
                continue

            local = output_item_to_local_item(
                raw,
                message,
                is_latest_welcome=is_latest_welcome,
                disable_fade_animation=disable_fade_animation,
            )
            parent, *nested = flatten_item(local, message)
            self._store.dispatch(AddNestedItems(tuple(nested)))

            if rtype is ResponseType.CONNECT_TO_AGENT:
                await self._check_agent_availability(parent, message, token)

            await token.resume(self._hosts.notify_items(parent, message))
            if not is_silent_user_defined(raw):
                self._store.dispatch(
                    AddLocalMessageItem(parent, message, add_message=False, add_after_id=previous_id)
                )
                previous_id = parent.id

    async def _check_agent_availability(
        self, local: MessageItem, message: MessageResponse, token: EpochToken
    ) -> None:
        if not self._agent.has_provider:
            log.error("Received connect_to_agent but no agent provider is configured")
            self._store.dispatch(SetMessageHistoryValue(message.id, "agent_no_service_desk", True))
            return

        self._store.dispatch(AddTypingCounter(1))
        status = await token.resume(self._agent.check_are_any_agents_online(message))
        self._store.dispatch(AddTypingCounter(-1))
        self._store.dispatch(SetMessageHistoryValue(message.id, "agent_availability", status.value))

        if self._config.agent.skip_connect_agent_card and status is AgentsOnlineStatus.ONLINE:
            self._tasks.spawn_guarded(
                self._agent.start_chat(local, message),
                context="start agent chat from connect_to_agent",
            )
