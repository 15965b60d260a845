"""Event bus and the event payloads it carries.

Listeners receive ``(event, instance)`` and may be plain functions or
coroutines. Events the core consults after firing (``pre:*`` events, the
view change pair, agent pre start/end) are mutable dataclasses: listeners
veto or rewrite by assigning to their fields.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from parley.core.models import (
    AgentProfile,
    AgentsOnlineStatus,
    FileUpload,
    Message,
    MessageItem,
    MessageResponse,
    MessageSendSource,
    StreamChunk,
    ViewChangeReason,
    ViewState,
)
from parley.utils import maybe_await

log = logging.getLogger("parley.events")


class BusEventType(str, Enum):
    PRE_SEND = "pre:send"
    SEND = "send"
    PRE_RECEIVE = "pre:receive"
    RECEIVE = "receive"
    VIEW_PRE_CHANGE = "view:pre:change"
    VIEW_CHANGE = "view:change"
    HISTORY_BEGIN = "history:begin"
    HISTORY_END = "history:end"
    USER_DEFINED_RESPONSE = "userDefinedResponse"
    CHUNK_USER_DEFINED_RESPONSE = "chunk:userDefinedResponse"
    PRE_RESTART_CONVERSATION = "pre:restartConversation"
    RESTART_CONVERSATION = "restartConversation"
    CHAT_READY = "chat:ready"
    AGENT_PRE_START_CHAT = "agent:pre:startChat"
    AGENT_PRE_END_CHAT = "agent:pre:endChat"
    AGENT_END_CHAT = "agent:endChat"
    AGENT_PRE_RECEIVE = "agent:pre:receive"
    AGENT_RECEIVE = "agent:receive"
    AGENT_PRE_SEND = "agent:pre:send"
    AGENT_SEND = "agent:send"
    AGENT_ARE_ANY_AGENTS_ONLINE = "agent:areAnyAgentsOnline"
    ALL = "*"


@dataclass
class BusEvent:
    type: BusEventType


@dataclass
class MessageEvent(BusEvent):
    data: Message
    source: MessageSendSource | None = None


@dataclass
class PreSendEvent(MessageEvent):
    cancel_send: bool = False


@dataclass
class ViewChangeEvent(BusEvent):
    reason: ViewChangeReason
    old_view_state: ViewState
    new_view_state: ViewState
    cancel_view_change: bool = False


@dataclass
class HistoryEvent(BusEvent):
    messages: tuple[Message, ...]


@dataclass(frozen=True)
class RenderHost:
    """Slot handed to the host for a custom-rendered (``user_defined``) item."""

    item_id: str
    message_id: str
    slot_name: str


@dataclass
class UserDefinedResponseEvent(BusEvent):
    item: MessageItem
    full_message: Message
    host: RenderHost | None


@dataclass
class ChunkUserDefinedResponseEvent(BusEvent):
    item: Mapping[str, Any]
    chunk: StreamChunk
    host: RenderHost | None


@dataclass
class AgentPreStartChatEvent(BusEvent):
    message: MessageResponse
    cancel_start_chat: bool = False
    pre_start_chat_payload: Any = None


@dataclass
class AgentPreEndChatEvent(BusEvent):
    ended_by_agent: bool
    pre_end_chat_payload: Any = None
    cancel_end_chat: bool = False


@dataclass
class AgentEndChatEvent(BusEvent):
    ended_by_agent: bool
    request_cancelled: bool


@dataclass
class AgentMessageEvent(BusEvent):
    data: Message
    agent_profile: AgentProfile | None = None
    files: tuple[FileUpload, ...] = ()


@dataclass
class AgentsOnlineEvent(BusEvent):
    are_any_agents_online: AgentsOnlineStatus


Listener = Callable[[BusEvent, Any], Union[Awaitable[None], None]]


class _Once:
    def __init__(self, bus: EventBus, key: str, listener: Listener):
        self.bus = bus
        self.key = key
        self.listener = listener

    def __call__(self, event: BusEvent, instance: Any):
        self.bus.off(self.key, self)
        return self.listener(event, instance)


def _key(event_type: BusEventType | str) -> str:
    return BusEventType(event_type).value


class EventBus:
    """Ordered listeners per event type, plus ``*`` for every event."""

    def __init__(self, instance: Any = None):
        self.instance = instance
        self._listeners: dict[str, list[Listener]] = {}

    def on(self, event_type: BusEventType | str, listener: Listener) -> None:
        if not callable(listener):
            raise TypeError("listener must be callable")
        self._listeners.setdefault(_key(event_type), []).append(listener)

    def once(self, event_type: BusEventType | str, listener: Listener) -> None:
        key = _key(event_type)
        self._listeners.setdefault(key, []).append(_Once(self, key, listener))

    def off(self, event_type: BusEventType | str, listener: Listener | None = None) -> None:
        """Remove ``listener``, or every listener of the type when omitted."""
        key = _key(event_type)
        if listener is None:
            self._listeners.pop(key, None)
            return
        current = self._listeners.get(key, [])
        self._listeners[key] = [
            h for h in current if h != listener and getattr(h, "listener", None) != listener
        ]

    def listener_count(self, event_type: BusEventType | str) -> int:
        return len(self._listeners.get(_key(event_type), ()))

    async def fire(self, event: BusEvent) -> BusEvent:
        """Call every listener in registration order and return the event.

        A failing listener is logged and skipped so that the rest of the
        listeners, and the caller's own bookkeeping, still run.
        """
        key = _key(event.type)
        listeners = list(self._listeners.get(key, ()))
        listeners.extend(self._listeners.get(BusEventType.ALL.value, ()))
        for listener in listeners:
            try:
                await maybe_await(listener(event, self.instance))
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Listener for %s failed", key)
        return event
