"""The callback surface handed to an agent provider."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from parley.core.events import AgentMessageEvent, BusEventType, EventBus
from parley.core.items import create_local_message_for_inline_error, flatten_item, output_item_to_local_item
from parley.core.models import (
    AgentErrorInfo,
    AgentErrorType,
    AgentMessageType,
    AgentProfile,
    ErrorState,
    FileUploadStatus,
    MessageResponse,
    ScreenShareState,
    create_response_for_text,
)
from parley.core.store import Store
from parley.core.store.actions import (
    AgentJoined,
    AgentLeftChat,
    SetAgentAvailability,
    SetAgentConnecting,
    SetAgentTyping,
    SetFilesUploadInProgress,
    SetFileUploadStatus,
    SetInputReadonly,
    SetScreenSharing,
    UpdateCapabilities,
    UpdateProviderState,
)
from parley.core.strings import text
from parley.errors import ContractViolation, EpochExpired
from parley.utils import thaw

if TYPE_CHECKING:
    from parley.core.agent.channel import AgentChannel
    from parley.core.epoch import EpochToken

log = logging.getLogger("parley.agent")


class AgentCallback:
    """Implements ``AgentCallbackPort``.

    Calls that arrive while no chat is running are ignored: a provider may
    still be flushing events from a chat the user already ended.
    """

    def __init__(self, channel: AgentChannel, *, store: Store, bus: EventBus):
        self._channel = channel
        self._store = store
        self._bus = bus

    @property
    def _active(self) -> bool:
        return self._channel.chat_started

    def update_capabilities(self, capabilities: Mapping[str, Any]) -> None:
        if self._active:
            self._store.dispatch(UpdateCapabilities(dict(capabilities)))

    async def update_agent_availability(self, availability: Mapping[str, Any]) -> None:
        if self._active and self._store.state.agent.is_connecting:
            self._store.dispatch(SetAgentAvailability(availability))

    async def agent_joined(self, profile: AgentProfile) -> None:
        if not self._active:
            return
        channel = self._channel
        token = channel.epoch.capture()
        channel.cancel_join_timer()
        self._store.dispatch(AgentJoined(profile))
        try:
            await channel.add_agent_local_message(AgentMessageType.AGENT_JOINED, profile, token=token)
            token.check()
            if channel.show_leave_warning:
                await channel.add_agent_local_message(
                    AgentMessageType.RELOAD_WARNING, fire_events=False, token=token
                )
                channel.show_leave_warning = False
        except EpochExpired:
            log.debug("Conversation restarted while an agent was joining; join message dropped")

    async def agent_read_messages(self) -> None:
        if self._active:
            log.debug("Agent read the user's messages")

    async def agent_typing(self, is_typing: bool) -> None:
        if not self._store.state.persisted.agent.is_connected:
            return
        if self._channel.is_agent_typing != is_typing:
            self._channel.is_agent_typing = is_typing
            self._store.dispatch(SetAgentTyping(is_typing))

    async def send_message_to_user(self, message: MessageResponse | str, agent_id: str | None = None) -> None:
        if not self._active:
            return
        token = self._channel.epoch.capture()
        try:
            await self._deliver_to_user(message, agent_id, token)
        except EpochExpired:
            log.debug("Conversation restarted before an agent message arrived; message dropped")

    async def _deliver_to_user(self, message: MessageResponse | str, agent_id: str | None, token: EpochToken) -> None:
        if isinstance(message, str):
            message = create_response_for_text(message)
        elif message.is_frozen:
            message = message.copy()

        generic = message.output.setdefault("generic", [])
        for index, item in enumerate(generic):
            generic[index] = {**item, "agent_message_type": AgentMessageType.FROM_AGENT.value}

        persisted = self._store.state.persisted.agent
        profile = persisted.agent_profile
        if agent_id is not None:
            cached = persisted.agent_profiles.get(agent_id)
            if cached is None:
                log.error("Agent profile %s is unknown; using the current agent", agent_id)
            else:
                profile = cached

        await self._bus.fire(
            AgentMessageEvent(type=BusEventType.AGENT_PRE_RECEIVE, data=message, agent_profile=profile)
        )
        token.check()
        if profile is not None:
            message.history["agent_profile"] = profile.to_dict()
        message.freeze()

        local_items = []
        for raw in message.items:
            local_items.extend(flatten_item(output_item_to_local_item(raw, message), message))
        await self._channel.add_messages(
            [(local_items, message)], show_live=not self._store.state.persisted.agent.is_suspended, token=token
        )

        await self._bus.fire(
            AgentMessageEvent(type=BusEventType.AGENT_RECEIVE, data=message, agent_profile=profile)
        )

    async def begin_transfer_to_another_agent(self, profile: AgentProfile | None = None) -> None:
        if not self._active:
            return
        token = self._channel.epoch.capture()
        if profile is not None:
            self._store.dispatch(AgentJoined(profile))
        try:
            await self._channel.add_agent_local_message(AgentMessageType.TRANSFER_TO_AGENT, profile, token=token)
        except EpochExpired:
            log.debug("Conversation restarted during an agent transfer; transfer message dropped")

    async def agent_left_chat(self) -> None:
        if not self._active:
            return
        await self._channel.add_agent_local_message(AgentMessageType.AGENT_LEFT_CHAT)
        self._channel.is_agent_typing = False
        self._store.dispatch(AgentLeftChat())

    async def agent_ended_chat(self) -> None:
        if not self._active:
            return
        event = await self._channel.fire_pre_end_chat(True)
        if event.cancel_end_chat:
            return
        await self._channel.do_end_chat(
            True, event.pre_end_chat_payload, True, True, AgentMessageType.AGENT_ENDED_CHAT
        )

    async def set_error_status(self, info: AgentErrorInfo) -> None:
        channel = self._channel
        if not channel.chat_started:
            return
        if info.log_info is not None:
            log.error("Agent provider reported %s: %s", info.type.value, info.log_info)

        state = self._store.state
        error_type = info.type
        if error_type is AgentErrorType.DISCONNECTED and state.agent.is_connecting:
            error_type = AgentErrorType.CONNECTING

        if error_type is AgentErrorType.DISCONNECTED:
            if info.is_disconnected:
                if not channel.showing_disconnected_error:
                    channel.showing_disconnected_error = True
                    await channel.add_agent_local_message(AgentMessageType.DISCONNECTED, fire_events=False)
                    self._store.dispatch(SetInputReadonly(True))
            elif channel.showing_disconnected_error:
                channel.showing_disconnected_error = False
                await channel.add_agent_local_message(AgentMessageType.RECONNECTED, fire_events=False)
                self._store.dispatch(SetInputReadonly(False))

        elif error_type is AgentErrorType.CONNECTING:
            was_connecting = state.agent.is_connecting
            await channel.add_inline_error(info.message_to_user or text("errors_connecting_to_agent"))
            self._store.dispatch(SetAgentConnecting(False, None))
            channel.chat_started = False
            channel.cancel_join_timer()
            await channel.fire_end_chat(False, was_connecting)

        elif error_type is AgentErrorType.USER_MESSAGE:
            channel.set_message_error_state(info.message_id, ErrorState.FAILED)

    async def set_file_upload_status(
        self, file_id: str, is_error: bool = False, error_message: str | None = None
    ) -> None:
        if not self._active:
            return
        channel = self._channel
        if is_error:
            self._store.dispatch(
                SetFileUploadStatus(file_id, FileUploadStatus.COMPLETE.value, error_message or "")
            )
            if error_message:
                local, message = create_local_message_for_inline_error(
                    error_message, agent_message_type=AgentMessageType.INLINE_ERROR.value
                )
                await channel.add_messages([([local], message.freeze())], show_live=not channel.is_suspended())
        else:
            self._store.dispatch(SetFileUploadStatus(file_id, FileUploadStatus.SUCCESS.value))

        channel.uploading_files.discard(file_id)
        self._store.dispatch(SetFilesUploadInProgress(bool(channel.uploading_files)))

    async def screen_share_request(self) -> ScreenShareState:
        """Ask the user to share their screen; resolves with their answer."""
        if not self._store.state.persisted.agent.is_connected:
            raise ContractViolation("Cannot request screen sharing if no chat is in progress.")
        channel = self._channel
        future = channel.open_screen_share_request()
        if future is None:
            future = channel.screen_share_request_pending
        else:
            await channel.add_agent_local_message(AgentMessageType.SHARING_REQUESTED)
        return await future

    async def screen_share_ended(self) -> None:
        if not self._store.state.persisted.agent.is_connected:
            return
        channel = self._channel
        if self._store.state.agent.is_screen_sharing:
            self._store.dispatch(SetScreenSharing(False))
            await channel.add_agent_local_message(AgentMessageType.SHARING_ENDED)
        elif channel.screen_share_request_pending is not None:
            channel.close_screen_share_request(ScreenShareState.CANCELLED)
            await channel.add_agent_local_message(AgentMessageType.SHARING_CANCELLED)

    def persisted_state(self) -> dict[str, Any]:
        return thaw(self._store.state.persisted.agent.provider_state)

    def update_persisted_state(self, state: Mapping[str, Any], merge: bool = True) -> None:
        self._store.dispatch(UpdateProviderState(state, merge))
