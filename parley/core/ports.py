"""Ports for the chat engine.

These interfaces keep the core independent of the network transport to the
assistant, history storage, persisted-state storage and the human-agent
backend.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Awaitable, Protocol, Union

from parley.core.models import (
    AgentErrorInfo,
    AgentProfile,
    Message,
    MessageRequest,
    MessageResponse,
    ScreenShareState,
)


class Transport(Protocol):
    """Delivers a request to the assistant.

    Responses flow back through ``engine.messaging.add_message`` or
    ``add_message_chunk``; the call resolves once the exchange settles.
    Implementations should stop work when ``signal`` is set.
    """

    async def __call__(self, request: MessageRequest, *, signal: asyncio.Event, instance: Any) -> None: ...


@dataclass(frozen=True)
class HistoryItem:
    message: Message
    time: str


class HistoryLoader(Protocol):
    async def __call__(self, instance: Any) -> Sequence[HistoryItem] | None: ...


class PersistencePort(Protocol):
    def load(self) -> Mapping[str, Any] | None: ...

    def save(self, data: Mapping[str, Any]) -> None: ...


class AgentCallbackPort(Protocol):
    """What an agent provider may call back into."""

    def update_capabilities(self, capabilities: Mapping[str, Any]) -> None: ...

    async def update_agent_availability(self, availability: Mapping[str, Any]) -> None: ...

    async def agent_joined(self, profile: AgentProfile) -> None: ...

    async def agent_read_messages(self) -> None: ...

    async def agent_typing(self, is_typing: bool) -> None: ...

    async def send_message_to_user(
        self, message: MessageResponse | str, agent_id: str | None = None
    ) -> None: ...

    async def begin_transfer_to_another_agent(self, profile: AgentProfile | None = None) -> None: ...

    async def agent_left_chat(self) -> None: ...

    async def agent_ended_chat(self) -> None: ...

    async def set_error_status(self, info: AgentErrorInfo) -> None: ...

    async def set_file_upload_status(
        self, file_id: str, is_error: bool = False, error_message: str | None = None
    ) -> None: ...

    async def screen_share_request(self) -> ScreenShareState: ...

    async def screen_share_ended(self) -> None: ...

    def persisted_state(self) -> dict[str, Any]: ...

    def update_persisted_state(self, state: Mapping[str, Any], merge: bool = True) -> None: ...


class AgentProvider(Protocol):
    """Human-agent backend.

    Optional hooks, looked up with ``getattr`` and skipped when absent:
    ``are_any_agents_online(message)``, ``user_typing(is_typing)``,
    ``user_read_messages()``, ``files_selected_for_upload(uploads)``,
    ``screen_share_stop()``, ``reconnect() -> bool`` and ``shutdown()``
    (called when the engine is destroyed).
    """

    def get_name(self) -> str: ...

    async def start_chat(self, message: MessageResponse, *, pre_start_chat_payload: Any = None) -> None: ...

    async def end_chat(self, *, ended_by_agent: bool, pre_end_chat_payload: Any = None) -> None: ...

    async def send_message_to_agent(
        self, message: MessageRequest, message_id: str, *, files: Sequence[Any] = ()
    ) -> None: ...


class AgentProviderFactory(Protocol):
    def __call__(
        self, *, callback: AgentCallbackPort, instance: Any, persisted_state: Mapping[str, Any] | None = None
    ) -> Union[AgentProvider, Awaitable[AgentProvider]]: ...


class HydrationPort(Protocol):
    """The slice of the session lifecycle the send path depends on."""

    @property
    def started(self) -> bool: ...

    async def wait(self) -> None: ...

    async def hydrate(
        self,
        alternate_request: MessageRequest | None = None,
        source: Any = None,
        options: Any = None,
    ) -> None: ...
