"""Message, item and chunk types shared by every core component.

Messages travel as plain JSON-like payloads (``input`` / ``output`` /
``history`` dicts) so that hosts can hand in whatever their backend returns.
The dataclasses here only add identity, immutability once delivered, and
a few typed accessors.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import FrozenInstanceError, dataclass, field, fields, replace
from enum import Enum
from typing import Any, Union

from parley.errors import StreamAssemblyError
from parley.utils import deep_freeze, new_id, thaw

THREAD_ID_MAIN = "main"


class ResponseType(str, Enum):
    TEXT = "text"
    OPTION = "option"
    CARD = "card"
    CAROUSEL = "carousel"
    GRID = "grid"
    BUTTON = "button"
    IMAGE = "image"
    TABLE = "table"
    DATE = "date"
    PAUSE = "pause"
    CONNECT_TO_AGENT = "connect_to_agent"
    INLINE_ERROR = "inline_error"
    USER_DEFINED = "user_defined"
    IFRAME = "iframe"
    VIDEO = "video"
    AUDIO = "audio"
    CONVERSATIONAL_SEARCH = "conversational_search"
    PREVIEW_CARD = "preview_card"


class ButtonType(str, Enum):
    POST_BACK = "post_back"
    URL = "url"
    SHOW_PANEL = "show_panel"
    CUSTOM_EVENT = "custom_event"


class MessageInputType(str, Enum):
    TEXT = "text"
    EVENT = "event"


class ErrorState(str, Enum):
    NONE = "none"
    RETRYING = "retrying"
    WAITING = "waiting"
    FAILED = "failed"


class FileUploadStatus(str, Enum):
    UPLOADING = "uploading"
    SUCCESS = "success"
    COMPLETE = "complete"


class MessageSendSource(str, Enum):
    INSTANCE_SEND = "instance_send"
    MESSAGE_INPUT = "message_input"
    OPTION_BUTTON = "option_button"
    WELCOME_REQUEST = "welcome_request"
    HYDRATE_RESEND = "hydrate_resend"
    HISTORY_UPDATE = "history_update"
    OTHER = "other"


class AgentMessageType(str, Enum):
    FROM_USER = "from_user"
    FROM_AGENT = "from_agent"
    INLINE_ERROR = "inline_error"
    AGENT_JOINED = "agent_joined"
    RELOAD_WARNING = "reload_warning"
    AGENT_LEFT_CHAT = "agent_left_chat"
    AGENT_ENDED_CHAT = "agent_ended_chat"
    TRANSFER_TO_AGENT = "transfer_to_agent"
    USER_ENDED_CHAT = "user_ended_chat"
    CHAT_WAS_ENDED = "chat_was_ended"
    DISCONNECTED = "disconnected"
    RECONNECTED = "reconnected"
    SHARING_REQUESTED = "sharing_requested"
    SHARING_ACCEPTED = "sharing_accepted"
    SHARING_DECLINED = "sharing_declined"
    SHARING_CANCELLED = "sharing_cancelled"
    SHARING_ENDED = "sharing_ended"


class AgentsOnlineStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class AgentErrorType(str, Enum):
    CONNECTING = "connecting"
    DISCONNECTED = "disconnected"
    USER_MESSAGE = "user_message"


class ScreenShareState(str, Enum):
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    ENDED = "ended"


class ViewType(str, Enum):
    LAUNCHER = "launcher"
    MAIN_WINDOW = "main_window"
    TOUR = "tour"


class ViewChangeReason(str, Enum):
    CALLED_CHANGE_VIEW = "called_change_view"
    LAUNCHER_CLICKED = "launcher_clicked"
    MAIN_WINDOW_MINIMIZED = "main_window_minimized"
    TOUR_OPENED = "tour_opened"
    TOUR_CLOSED = "tour_closed"
    HISTORY_LOADED = "history_loaded"
    SESSION_RESTORED = "session_restored"


# -----------------------------------------------------------------------------
# Messages
# -----------------------------------------------------------------------------


@dataclass
class BaseMessage:
    id: str = field(default_factory=new_id)
    thread_id: str = THREAD_ID_MAIN
    timestamp: float = field(default_factory=time.time)
    history: dict[str, Any] = field(default_factory=dict)

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get("_frozen"):
            raise FrozenInstanceError(
                f"cannot assign to field {name!r}: message {self.id} is frozen"
            )
        super().__setattr__(name, value)

    @property
    def is_frozen(self) -> bool:
        return bool(self.__dict__.get("_frozen"))

    @property
    def is_silent(self) -> bool:
        return bool(self.history.get("silent"))

    def freeze(self):
        """Make the message and all of its payloads read-only. Idempotent."""
        if self.is_frozen:
            return self
        for f in fields(self):
            object.__setattr__(self, f.name, deep_freeze(getattr(self, f.name)))
        object.__setattr__(self, "_frozen", True)
        return self

    def copy(self):
        """Return a mutable deep copy, even of a frozen message."""
        return type(self)(**{f.name: thaw(getattr(self, f.name)) for f in fields(self)})

    def to_dict(self) -> dict[str, Any]:
        return {f.name: thaw(getattr(self, f.name)) for f in fields(self)}


@dataclass
class MessageRequest(BaseMessage):
    input: dict[str, Any] = field(
        default_factory=lambda: {"message_type": MessageInputType.TEXT.value, "text": ""}
    )

    @property
    def text(self) -> str:
        return str(self.input.get("text") or "")

    @property
    def is_event(self) -> bool:
        return self.input.get("message_type") == MessageInputType.EVENT.value

    @property
    def display_text(self) -> str:
        return str(self.history.get("label") or self.text)


@dataclass
class MessageResponse(BaseMessage):
    output: dict[str, Any] = field(default_factory=lambda: {"generic": []})
    request_id: str | None = None

    @property
    def items(self) -> tuple[Mapping[str, Any], ...]:
        generic = self.output.get("generic") if isinstance(self.output, Mapping) else None
        return tuple(generic or ())


Message = Union[MessageRequest, MessageResponse]


def message_from_dict(data: Mapping[str, Any]) -> Message:
    """Build a request or response from its JSON form."""
    if isinstance(data, BaseMessage):
        return data
    common = {
        "id": str(data.get("id") or new_id()),
        "thread_id": str(data.get("thread_id") or THREAD_ID_MAIN),
        "timestamp": float(data.get("timestamp") or time.time()),
        "history": thaw(data.get("history") or {}),
    }
    if "input" in data:
        payload = thaw(data.get("input") or {})
        payload.setdefault("message_type", MessageInputType.TEXT.value)
        return MessageRequest(input=payload, **common)
    output = thaw(data.get("output") or {})
    output.setdefault("generic", [])
    return MessageResponse(output=output, request_id=data.get("request_id"), **common)


def create_request_for_text(text: str, **history: Any) -> MessageRequest:
    return MessageRequest(
        input={"message_type": MessageInputType.TEXT.value, "text": text},
        history=dict(history),
    )


def create_response_for_item(item: Mapping[str, Any], *, thread_id: str = THREAD_ID_MAIN) -> MessageResponse:
    return MessageResponse(thread_id=thread_id, output={"generic": [thaw(item)]})


def create_response_for_text(
    text: str,
    *,
    response_type: ResponseType = ResponseType.TEXT,
    thread_id: str = THREAD_ID_MAIN,
) -> MessageResponse:
    return create_response_for_item(
        {"response_type": response_type.value, "text": text}, thread_id=thread_id
    )


def stream_item_id(message_id: str, item: Mapping[str, Any]) -> str | None:
    metadata = item.get("streaming_metadata")
    if isinstance(metadata, Mapping) and metadata.get("id") is not None:
        return f"{message_id}-{metadata['id']}"
    return None


# -----------------------------------------------------------------------------
# Rendered items
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class StreamingState:
    chunks: tuple[Mapping[str, Any], ...] = ()
    is_done: bool = False


@dataclass(frozen=True)
class ItemUIState:
    id: str
    needs_announcement: bool = True
    disable_fade_animation: bool = False
    is_welcome_response: bool = False
    streaming_state: StreamingState | None = None
    # Children are referenced by id only; the store owns the item objects.
    body_ids: tuple[str, ...] | None = None
    footer_ids: tuple[str, ...] | None = None
    items_ids: tuple[str, ...] | None = None
    grid_ids: tuple[tuple[tuple[str, ...], ...], ...] | None = None


@dataclass(frozen=True)
class MessageItem:
    item: Mapping[str, Any]
    full_message_id: str
    ui_state: ItemUIState

    @property
    def id(self) -> str:
        return self.ui_state.id

    @property
    def response_type(self) -> str | None:
        value = self.item.get("response_type")
        return str(value) if value is not None else None

    @property
    def is_streaming(self) -> bool:
        return self.ui_state.streaming_state is not None

    def with_ui(self, **changes: Any) -> MessageItem:
        return replace(self, ui_state=replace(self.ui_state, **changes))


# -----------------------------------------------------------------------------
# View and agent records
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ViewState:
    launcher: bool = True
    main_window: bool = False
    tour: bool = False

    @classmethod
    def only(cls, view: ViewType | str) -> ViewState:
        name = ViewType(view).value
        return cls(**{v.value: v.value == name for v in ViewType})

    def merge(self, patch: Mapping[str, bool]) -> ViewState:
        unknown = set(patch) - {v.value for v in ViewType}
        if unknown:
            raise ValueError(f"Unknown view names: {', '.join(sorted(unknown))}")
        return replace(self, **{k: bool(v) for k, v in patch.items()})

    def to_dict(self) -> dict[str, bool]:
        return {v.value: getattr(self, v.value) for v in ViewType}


@dataclass(frozen=True)
class AgentProfile:
    id: str
    nickname: str | None = None
    profile_picture_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "nickname": self.nickname,
            "profile_picture_url": self.profile_picture_url,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AgentProfile:
        return cls(
            id=str(data["id"]),
            nickname=data.get("nickname"),
            profile_picture_url=data.get("profile_picture_url"),
        )


@dataclass(frozen=True)
class AgentErrorInfo:
    type: AgentErrorType
    is_disconnected: bool = False
    message_to_user: str | None = None
    message_id: str | None = None
    log_info: object | None = None


@dataclass(frozen=True)
class FileUpload:
    id: str
    name: str
    size: int = 0
    content_type: str | None = None


# -----------------------------------------------------------------------------
# Streaming chunks
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class PartialItemChunk:
    partial_item: Mapping[str, Any]
    response_id: str | None = None
    partial_response: Mapping[str, Any] | None = None

    @property
    def cancellable(self) -> bool:
        metadata = self.partial_item.get("streaming_metadata") or {}
        return bool(metadata.get("cancellable"))


@dataclass(frozen=True)
class CompleteItemChunk:
    complete_item: Mapping[str, Any]
    response_id: str | None = None
    partial_response: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class FinalResponseChunk:
    final_response: MessageResponse


StreamChunk = Union[PartialItemChunk, CompleteItemChunk, FinalResponseChunk]


def parse_chunk(data: Mapping[str, Any] | StreamChunk) -> StreamChunk:
    """Parse the wire form of a chunk."""
    if isinstance(data, (PartialItemChunk, CompleteItemChunk, FinalResponseChunk)):
        return data
    if not isinstance(data, Mapping):
        raise StreamAssemblyError(f"Chunk must be an object, got {type(data).__name__}")

    if "final_response" in data:
        final = message_from_dict(data["final_response"])
        if not isinstance(final, MessageResponse):
            raise StreamAssemblyError("final_response must be a response message")
        return FinalResponseChunk(final_response=final)

    metadata = data.get("streaming_metadata") or {}
    response_id = metadata.get("response_id") if isinstance(metadata, Mapping) else None
    partial_response = data.get("partial_response")
    if "partial_item" in data:
        return PartialItemChunk(
            partial_item=thaw(data["partial_item"]),
            response_id=response_id,
            partial_response=thaw(partial_response) if partial_response else None,
        )
    if "complete_item" in data:
        return CompleteItemChunk(
            complete_item=thaw(data["complete_item"]),
            response_id=response_id,
            partial_response=thaw(partial_response) if partial_response else None,
        )
    raise StreamAssemblyError(f"Unrecognised chunk keys: {sorted(data)}")
