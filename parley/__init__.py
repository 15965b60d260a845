"""Parley: an asyncio chat engine for assistant conversations with human-agent hand-off."""

from parley.config import ChatConfig, get_chat_config, load_env
from parley.engine import ChatEngine

__all__ = ["ChatConfig", "ChatEngine", "get_chat_config", "load_env"]
