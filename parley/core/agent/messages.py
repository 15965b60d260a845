"""Transcript entries the agent channel writes on its own."""

from __future__ import annotations

from parley.core.items import input_item_to_local_item, output_item_to_local_item
from parley.core.models import (
    AgentMessageType,
    AgentProfile,
    FileUpload,
    FileUploadStatus,
    MessageInputType,
    MessageItem,
    MessageRequest,
    MessageResponse,
    ResponseType,
    create_response_for_item,
)
from parley.core.strings import text

# (key with a nickname, key without one)
_STATUS_KEYS: dict[AgentMessageType, tuple[str, str]] = {
    AgentMessageType.AGENT_JOINED: ("agent_joined_name", "agent_joined_no_name"),
    AgentMessageType.RELOAD_WARNING: ("agent_you_connected_warning", "agent_you_connected_warning"),
    AgentMessageType.AGENT_LEFT_CHAT: ("agent_left_chat_name", "agent_left_chat_no_name"),
    AgentMessageType.AGENT_ENDED_CHAT: ("agent_ended_chat_name", "agent_ended_chat_no_name"),
    AgentMessageType.TRANSFER_TO_AGENT: ("agent_transferring_name", "agent_transferring_no_name"),
    AgentMessageType.USER_ENDED_CHAT: ("agent_you_ended_chat", "agent_you_ended_chat"),
    AgentMessageType.CHAT_WAS_ENDED: ("agent_conversation_was_ended", "agent_conversation_was_ended"),
    AgentMessageType.DISCONNECTED: ("agent_disconnected", "agent_disconnected"),
    AgentMessageType.RECONNECTED: ("agent_reconnected", "agent_reconnected"),
    AgentMessageType.SHARING_REQUESTED: ("agent_sharing_requested", "agent_sharing_requested"),
    AgentMessageType.SHARING_ACCEPTED: ("agent_sharing_accepted", "agent_sharing_accepted"),
    AgentMessageType.SHARING_DECLINED: ("agent_sharing_declined", "agent_sharing_declined"),
    AgentMessageType.SHARING_CANCELLED: ("agent_sharing_cancelled", "agent_sharing_cancelled"),
    AgentMessageType.SHARING_ENDED: ("agent_sharing_ended", "agent_sharing_ended"),
}


def status_text(message_type: AgentMessageType, profile: AgentProfile | None = None) -> str:
    keys = _STATUS_KEYS.get(message_type)
    if keys is None:
        return ""
    name = profile.nickname if profile else None
    with_name, without_name = keys
    if name and with_name != without_name:
        return text(with_name, name=name)
    return text(without_name)


def create_status_message(
    message_type: AgentMessageType, profile: AgentProfile | None = None
) -> tuple[MessageItem, MessageResponse]:
    message = create_response_for_item(
        {
            "response_type": ResponseType.TEXT.value,
            "agent_message_type": message_type.value,
            "text": status_text(message_type, profile),
        }
    )
    if profile is not None:
        message.history["agent_profile"] = profile.to_dict()
    return output_item_to_local_item(message.items[0], message), message


def create_bot_return_message() -> tuple[MessageItem, MessageResponse]:
    message = create_response_for_item(
        {"response_type": ResponseType.TEXT.value, "text": text("agent_bot_returned")}
    )
    return output_item_to_local_item(message.items[0], message), message


def create_file_upload_message(upload: FileUpload) -> tuple[MessageItem, MessageRequest]:
    """A request that stands for one uploaded file; its id is the upload id."""
    request = MessageRequest(
        id=upload.id,
        input={
            "message_type": MessageInputType.TEXT.value,
            "text": upload.name,
            "agent_message_type": AgentMessageType.FROM_USER.value,
        },
        history={
            "file_upload_status": FileUploadStatus.UPLOADING.value,
            "file": {"name": upload.name, "size": upload.size, "content_type": upload.content_type},
        },
    )
    return input_item_to_local_item(request, local_id=upload.id), request


def is_agent_message(message) -> bool:
    if isinstance(message, MessageRequest):
        return bool(message.input.get("agent_message_type"))
    if isinstance(message, MessageResponse):
        return any(item.get("agent_message_type") for item in message.items)
    return False
