"""Store actions.

Each action is a frozen dataclass tagged by a ``type`` class attribute;
``parley.core.store.reducers`` registers exactly one reducer per tag.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, ClassVar

from parley.core.models import AgentProfile, Message, MessageItem, ViewState
from parley.core.store.state import PersistedState


@dataclass(frozen=True)
class Action:
    type: ClassVar[str] = ""


# -- Messages ------------------------------------------------------------------


@dataclass(frozen=True)
class AddMessage(Action):
    type: ClassVar[str] = "add_message"
    message: Message


@dataclass(frozen=True)
class AddLocalMessageItem(Action):
    type: ClassVar[str] = "add_local_message_item"
    item: MessageItem
    message: Message
    add_message: bool = True
    add_after_id: str | None = None


@dataclass(frozen=True)
class AddNestedItems(Action):
    type: ClassVar[str] = "add_nested_items"
    items: tuple[MessageItem, ...]


@dataclass(frozen=True)
class UpdateMessage(Action):
    type: ClassVar[str] = "update_message"
    message: Message


@dataclass(frozen=True)
class UpdateLocalMessageItem(Action):
    type: ClassVar[str] = "update_local_message_item"
    item: MessageItem


@dataclass(frozen=True)
class UpdateItemUIState(Action):
    type: ClassVar[str] = "update_item_ui_state"
    item_id: str
    changes: Mapping[str, Any]


@dataclass(frozen=True)
class SetMessageHistoryValue(Action):
    type: ClassVar[str] = "set_message_history_value"
    message_id: str
    key: str
    value: Any


@dataclass(frozen=True)
class RemoveMessages(Action):
    type: ClassVar[str] = "remove_messages"
    message_ids: tuple[str, ...]


@dataclass(frozen=True)
class HydrateHistory(Action):
    """Merge replayed history; ``prepend`` keeps existing entries authoritative."""

    type: ClassVar[str] = "hydrate_history"
    messages: tuple[Message, ...]
    items: tuple[MessageItem, ...]
    local_message_ids: tuple[str, ...]
    prepend: bool = False


@dataclass(frozen=True)
class ChatWasHydrated(Action):
    type: ClassVar[str] = "chat_was_hydrated"


@dataclass(frozen=True)
class RestartConversation(Action):
    type: ClassVar[str] = "restart_conversation"


# -- Streaming -----------------------------------------------------------------


@dataclass(frozen=True)
class StreamingStart(Action):
    type: ClassVar[str] = "streaming_start"
    message_id: str


@dataclass(frozen=True)
class StreamingAddChunk(Action):
    type: ClassVar[str] = "streaming_add_chunk"
    message_id: str
    item_id: str
    chunk_item: Mapping[str, Any]
    is_complete: bool
    disable_fade_animation: bool = False


@dataclass(frozen=True)
class StreamingMergeMessageOptions(Action):
    type: ClassVar[str] = "streaming_merge_message_options"
    message_id: str
    message_options: Mapping[str, Any]


@dataclass(frozen=True)
class SetStopStreamingVisible(Action):
    type: ClassVar[str] = "set_stop_streaming_visible"
    visible: bool


@dataclass(frozen=True)
class SetStopStreamingDisabled(Action):
    type: ClassVar[str] = "set_stop_streaming_disabled"
    disabled: bool


# -- View and chrome -----------------------------------------------------------


@dataclass(frozen=True)
class ChangeViewState(Action):
    type: ClassVar[str] = "change_view_state"
    view_state: ViewState


@dataclass(frozen=True)
class SetViewChanging(Action):
    type: ClassVar[str] = "set_view_changing"
    changing: bool


@dataclass(frozen=True)
class SetHomeScreenOpen(Action):
    type: ClassVar[str] = "set_home_screen_open"
    is_open: bool


@dataclass(frozen=True)
class SetResponsePanel(Action):
    type: ClassVar[str] = "set_response_panel"
    is_open: bool
    local_message_item_id: str | None = None
    is_message_for_input: bool = False


@dataclass(frozen=True)
class AddTypingCounter(Action):
    type: ClassVar[str] = "add_typing_counter"
    delta: int


@dataclass(frozen=True)
class AddLoadingCounter(Action):
    type: ClassVar[str] = "add_loading_counter"
    delta: int


@dataclass(frozen=True)
class SetHasSentNonWelcomeMessage(Action):
    type: ClassVar[str] = "set_has_sent_non_welcome_message"
    value: bool


@dataclass(frozen=True)
class SetInputReadonly(Action):
    type: ClassVar[str] = "set_input_readonly"
    readonly: bool


@dataclass(frozen=True)
class LoadPersistedState(Action):
    type: ClassVar[str] = "load_persisted_state"
    persisted: PersistedState


# -- Agent ---------------------------------------------------------------------


@dataclass(frozen=True)
class SetAgentConnecting(Action):
    type: ClassVar[str] = "agent_set_connecting"
    is_connecting: bool
    local_message_id: str | None = None


@dataclass(frozen=True)
class SetAgentReconnecting(Action):
    type: ClassVar[str] = "agent_set_reconnecting"
    is_reconnecting: bool


@dataclass(frozen=True)
class AgentJoined(Action):
    type: ClassVar[str] = "agent_joined"
    profile: AgentProfile | None


@dataclass(frozen=True)
class AgentLeftChat(Action):
    type: ClassVar[str] = "agent_left_chat"


@dataclass(frozen=True)
class EndAgentChat(Action):
    type: ClassVar[str] = "agent_end_chat"


@dataclass(frozen=True)
class SetAgentTyping(Action):
    type: ClassVar[str] = "agent_set_typing"
    is_typing: bool


@dataclass(frozen=True)
class SetAgentAvailability(Action):
    type: ClassVar[str] = "agent_set_availability"
    availability: Mapping[str, Any] | None


@dataclass(frozen=True)
class UpdateCapabilities(Action):
    type: ClassVar[str] = "agent_update_capabilities"
    capabilities: Mapping[str, Any]


@dataclass(frozen=True)
class SetAgentSuspended(Action):
    type: ClassVar[str] = "agent_set_suspended"
    is_suspended: bool


@dataclass(frozen=True)
class SetFilesUploadInProgress(Action):
    type: ClassVar[str] = "set_files_upload_in_progress"
    in_progress: bool


@dataclass(frozen=True)
class SetFileUploadStatus(Action):
    """Update the upload item's request ``history.file_upload_status``."""

    type: ClassVar[str] = "set_file_upload_status"
    file_id: str
    status: str
    error_message: str | None = None


@dataclass(frozen=True)
class SetScreenShareRequest(Action):
    type: ClassVar[str] = "agent_set_screen_share_request"
    show: bool


@dataclass(frozen=True)
class SetScreenSharing(Action):
    type: ClassVar[str] = "agent_set_screen_sharing"
    is_sharing: bool


@dataclass(frozen=True)
class UpdateProviderState(Action):
    type: ClassVar[str] = "agent_update_provider_state"
    state: Mapping[str, Any]
    merge: bool = True
