"""English text for messages the engine itself writes into the transcript."""

from __future__ import annotations

ENGLISH: dict[str, str] = {
    "errors_single_message": "There was an error getting a response. Please try again.",
    "errors_connecting_to_agent": "There was an error connecting you to an agent. Please try again.",
    "errors_no_agents_joined": "It looks like no agents are available right now. Please try again later.",
    "errors_no_agent_provider": "Live agent support is not available in this chat.",
    "agent_joined_name": "{name} has joined the chat.",
    "agent_joined_no_name": "An agent has joined the chat.",
    "agent_you_connected_warning": (
        "You are connected to a live agent. Leaving or reloading this chat may end the conversation."
    ),
    "agent_left_chat_name": "{name} has left the chat.",
    "agent_left_chat_no_name": "The agent has left the chat.",
    "agent_ended_chat_name": "{name} ended the chat.",
    "agent_ended_chat_no_name": "The agent ended the chat.",
    "agent_transferring_name": "{name} is transferring you to another agent.",
    "agent_transferring_no_name": "Transferring you to another agent.",
    "agent_you_ended_chat": "You ended the chat.",
    "agent_conversation_was_ended": "The conversation with the agent has ended.",
    "agent_disconnected": "You have been disconnected from the agent.",
    "agent_reconnected": "You have been reconnected to the agent.",
    "agent_sharing_requested": "The agent is asking to share your screen.",
    "agent_sharing_accepted": "You accepted the request to share your screen.",
    "agent_sharing_declined": "You declined the request to share your screen.",
    "agent_sharing_cancelled": "The request to share your screen was cancelled.",
    "agent_sharing_ended": "Screen sharing has ended.",
    "agent_bot_returned": "The assistant is back. What else can I help you with?",
    "welcome": "Hello! How can I help you today?",
}


def text(key: str, **values: object) -> str:
    template = ENGLISH[key]
    return template.format(**values) if values else template
