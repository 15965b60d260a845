"""Tests for the state container and its reducers."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import ClassVar

import pytest

from parley.core.items import input_item_to_local_item, output_item_to_local_item
from parley.core.models import AgentProfile, MessageResponse, ViewState, create_request_for_text
from parley.core.store import PersistedState, Store
from parley.core.store.actions import (
    Action,
    AddLocalMessageItem,
    AddMessage,
    AddTypingCounter,
    AgentJoined,
    EndAgentChat,
    HydrateHistory,
    RemoveMessages,
    SetAgentConnecting,
    SetAgentSuspended,
    SetMessageHistoryValue,
    UpdateProviderState,
)
from parley.core.store.state import PersistedAgentState


@dataclass(frozen=True)
class UnknownAction(Action):
    type: ClassVar[str] = "no_such_action"


def _response(text: str) -> MessageResponse:
    return MessageResponse(output={"generic": [{"response_type": "text", "text": text}]}).freeze()


class TestMessages:
    def test_silent_message_is_stored_without_an_item(self):
        store = Store()
        request = create_request_for_text("", silent=True).freeze()
        store.dispatch(AddLocalMessageItem(input_item_to_local_item(request), request))

        assert request.id in store.state.messages_by_id
        assert store.state.local_message_ids == ()

    def test_remove_messages_drops_their_items(self):
        store = Store()
        keep, drop = _response("keep"), _response("drop")
        for message in (keep, drop):
            store.dispatch(AddLocalMessageItem(output_item_to_local_item(message.items[0], message), message))

        store.dispatch(RemoveMessages((drop.id,)))

        assert store.state.message_ids == (keep.id,)
        assert [i.item["text"] for i in store.state.transcript()] == ["keep"]

    def test_prepended_history_keeps_existing_entries(self):
        store = Store()
        live = _response("live")
        live_item = output_item_to_local_item(live.items[0], live)
        store.dispatch(AddLocalMessageItem(live_item, live))

        old = _response("old")
        old_item = output_item_to_local_item(old.items[0], old)
        stale_copy = MessageResponse(
            id=live.id, output={"generic": [{"response_type": "text", "text": "stale"}]}
        ).freeze()
        store.dispatch(HydrateHistory((old, stale_copy), (old_item,), (old_item.id,), prepend=True))

        assert store.state.message_ids == (old.id, live.id)
        assert store.state.messages_by_id[live.id].items[0]["text"] == "live"
        assert [i.item["text"] for i in store.state.transcript()] == ["old", "live"]

    def test_history_value_replaces_the_frozen_message(self):
        store = Store()
        message = _response("x")
        store.dispatch(AddMessage(message))
        store.dispatch(SetMessageHistoryValue(message.id, "error_state", "failed"))

        updated = store.state.messages_by_id[message.id]
        assert updated is not message
        assert updated.history["error_state"] == "failed" and updated.is_frozen

    def test_counters_never_go_negative(self):
        store = Store()
        store.dispatch(AddTypingCounter(-1))
        assert store.state.typing_counter == 0


class TestAgentReducers:
    def test_suspend_is_ignored_when_idle(self):
        store = Store()
        store.dispatch(SetAgentSuspended(True))
        assert store.state.persisted.agent.is_suspended is False

    def test_stop_connecting_clears_suspension(self):
        store = Store()
        store.dispatch(SetAgentConnecting(True, "item-1"))
        store.dispatch(SetAgentSuspended(True))
        assert store.state.persisted.agent.is_suspended

        store.dispatch(SetAgentConnecting(False))
        assert store.state.persisted.agent.is_suspended is False
        assert store.state.agent.active_local_message_id is None

    def test_joined_then_ended(self):
        store = Store()
        store.dispatch(SetAgentConnecting(True))
        store.dispatch(AgentJoined(AgentProfile("a1", "Ada")))

        agent = store.state.persisted.agent
        assert agent.is_connected and not store.state.agent.is_connecting
        assert agent.agent_profiles["a1"].nickname == "Ada"

        store.dispatch(EndAgentChat())
        agent = store.state.persisted.agent
        assert not agent.is_connected and agent.agent_profile is None
        assert "a1" in agent.agent_profiles

    def test_provider_state_merges(self):
        store = Store()
        store.dispatch(UpdateProviderState({"a": {"x": 1}}))
        store.dispatch(UpdateProviderState({"a": {"y": 2}}))
        assert store.state.persisted.agent.provider_state == {"a": {"x": 1, "y": 2}}

        store.dispatch(UpdateProviderState({"b": 1}, merge=False))
        assert store.state.persisted.agent.provider_state == {"b": 1}


class TestStore:
    def test_unknown_action_raises(self):
        with pytest.raises(KeyError):
            Store().dispatch(UnknownAction())

    def test_failing_subscriber_is_logged_and_others_still_run(self, caplog):
        store = Store()
        seen = []

        def broken(state, action):
            raise RuntimeError("boom")

        store.subscribe(broken)
        store.subscribe(lambda state, action: seen.append(action.type))
        with caplog.at_level(logging.ERROR, logger="parley.store"):
            store.dispatch(AddTypingCounter(1))

        assert seen == ["add_typing_counter"]
        assert "Store subscriber failed" in caplog.text

    def test_unsubscribe(self):
        store = Store()
        seen = []
        unsubscribe = store.subscribe(lambda state, action: seen.append(action))
        unsubscribe()
        store.dispatch(AddTypingCounter(1))
        assert seen == []


class TestPersistedState:
    def test_json_round_trip(self):
        persisted = PersistedState(
            view_state=ViewState.only("main_window"),
            home_screen_open=True,
            agent=PersistedAgentState(
                is_connected=True,
                agent_profile=AgentProfile("a1", "Ada"),
                agent_profiles={"a1": AgentProfile("a1", "Ada")},
                provider_state={"chat_open": True},
            ),
        )
        restored = PersistedState.from_dict(json.loads(json.dumps(persisted.to_dict())))
        assert restored == persisted

    def test_missing_fields_use_defaults(self):
        assert PersistedState.from_dict({}) == PersistedState()
