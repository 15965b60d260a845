"""Application state tree.

Every node is a frozen dataclass and every dispatch replaces the path it
touches. Dict-valued fields are never mutated in place: reducers build a
new dict and swap it in.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from parley.core.models import (
    AgentProfile,
    Message,
    MessageItem,
    ViewState,
)
from parley.utils import thaw


@dataclass(frozen=True)
class ResponsePanelState:
    is_open: bool = False
    local_message_item_id: str | None = None
    is_message_for_input: bool = False


@dataclass(frozen=True)
class StopStreamingState:
    is_visible: bool = False
    is_disabled: bool = False


@dataclass(frozen=True)
class InputState:
    is_readonly: bool = False
    files_upload_in_progress: bool = False


@dataclass(frozen=True)
class AgentState:
    """Agent fields that are rebuilt on every page load."""

    is_connecting: bool = False
    is_reconnecting: bool = False
    active_local_message_id: str | None = None
    availability: Mapping[str, Any] | None = None
    is_agent_typing: bool = False
    capabilities: Mapping[str, Any] = field(default_factory=dict)
    show_screen_share_request: bool = False
    is_screen_sharing: bool = False


@dataclass(frozen=True)
class PersistedAgentState:
    is_connected: bool = False
    is_suspended: bool = False
    agent_profile: AgentProfile | None = None
    agent_profiles: Mapping[str, AgentProfile] = field(default_factory=dict)
    provider_state: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_connected": self.is_connected,
            "is_suspended": self.is_suspended,
            "agent_profile": self.agent_profile.to_dict() if self.agent_profile else None,
            "agent_profiles": {k: p.to_dict() for k, p in self.agent_profiles.items()},
            "provider_state": thaw(self.provider_state),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PersistedAgentState:
        profile = data.get("agent_profile")
        return cls(
            is_connected=bool(data.get("is_connected")),
            is_suspended=bool(data.get("is_suspended")),
            agent_profile=AgentProfile.from_dict(profile) if profile else None,
            agent_profiles={
                str(k): AgentProfile.from_dict(v) for k, v in (data.get("agent_profiles") or {}).items()
            },
            provider_state=thaw(data.get("provider_state") or {}),
        )


@dataclass(frozen=True)
class PersistedState:
    """State that survives a reload. Must round-trip through JSON."""

    view_state: ViewState = field(default_factory=ViewState)
    home_screen_open: bool = False
    has_sent_non_welcome_message: bool = False
    agent: PersistedAgentState = field(default_factory=PersistedAgentState)

    def to_dict(self) -> dict[str, Any]:
        return {
            "view_state": self.view_state.to_dict(),
            "home_screen_open": self.home_screen_open,
            "has_sent_non_welcome_message": self.has_sent_non_welcome_message,
            "agent": self.agent.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PersistedState:
        view = data.get("view_state") or {}
        return cls(
            view_state=ViewState().merge(view),
            home_screen_open=bool(data.get("home_screen_open")),
            has_sent_non_welcome_message=bool(data.get("has_sent_non_welcome_message")),
            agent=PersistedAgentState.from_dict(data.get("agent") or {}),
        )


@dataclass(frozen=True)
class AppState:
    messages_by_id: Mapping[str, Message] = field(default_factory=dict)
    items_by_id: Mapping[str, MessageItem] = field(default_factory=dict)
    # Every message id in arrival order.
    message_ids: tuple[str, ...] = ()
    # Top-level item ids in transcript order.
    local_message_ids: tuple[str, ...] = ()
    is_hydrated: bool = False
    view_changing: bool = False
    typing_counter: int = 0
    loading_counter: int = 0
    input: InputState = field(default_factory=InputState)
    response_panel: ResponsePanelState = field(default_factory=ResponsePanelState)
    stop_streaming: StopStreamingState = field(default_factory=StopStreamingState)
    agent: AgentState = field(default_factory=AgentState)
    persisted: PersistedState = field(default_factory=PersistedState)

    @property
    def is_typing(self) -> bool:
        return self.typing_counter > 0

    @property
    def is_loading(self) -> bool:
        return self.loading_counter > 0

    def transcript(self) -> list[MessageItem]:
        """Top-level items in display order."""
        return [self.items_by_id[i] for i in self.local_message_ids if i in self.items_by_id]
