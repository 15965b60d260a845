"""Pure reducers, one per action tag.

A reducer takes the current ``AppState`` and an action and returns the next
state. Reducers never raise on well-formed actions and never touch anything
but their arguments; validation of untrusted input happens before dispatch.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Callable, TypeVar

from parley.core.models import (
    ErrorState,
    FileUploadStatus,
    ItemUIState,
    MessageItem,
    MessageResponse,
    StreamingState,
)
from parley.core.store import actions as a
from parley.core.store.state import (
    AgentState,
    AppState,
    InputState,
    ResponsePanelState,
    StopStreamingState,
)
from parley.utils import deep_freeze, deep_merge

Reducer = Callable[[AppState, a.Action], AppState]
A = TypeVar("A", bound=a.Action)

REDUCERS: dict[str, Reducer] = {}


def reducer(action_cls: type[A]):
    def register(fn: Callable[[AppState, A], AppState]) -> Callable[[AppState, A], AppState]:
        if action_cls.type in REDUCERS:
            raise ValueError(f"Duplicate reducer for {action_cls.type}")
        REDUCERS[action_cls.type] = fn
        return fn

    return register


def _with_persisted_agent(state: AppState, **changes) -> AppState:
    agent = replace(state.persisted.agent, **changes)
    return replace(state, persisted=replace(state.persisted, agent=agent))


def _with_agent(state: AppState, **changes) -> AppState:
    return replace(state, agent=replace(state.agent, **changes))


def _put_message(state: AppState, message) -> AppState:
    messages = dict(state.messages_by_id)
    messages[message.id] = message
    ids = state.message_ids if message.id in state.messages_by_id else state.message_ids + (message.id,)
    return replace(state, messages_by_id=messages, message_ids=ids)


def _put_items(state: AppState, items) -> AppState:
    by_id = dict(state.items_by_id)
    for item in items:
        by_id[item.id] = item
    return replace(state, items_by_id=by_id)


def _insert_local_id(ids: tuple[str, ...], item_id: str, after_id: str | None) -> tuple[str, ...]:
    if item_id in ids:
        return ids
    if after_id is not None and after_id in ids:
        index = ids.index(after_id) + 1
        return ids[:index] + (item_id,) + ids[index:]
    return ids + (item_id,)


def _update_history(state: AppState, message_id: str, **values) -> AppState:
    message = state.messages_by_id.get(message_id)
    if message is None:
        return state
    updated = message.copy()
    updated.history.update(values)
    return _put_message(state, updated.freeze())


# -- Messages ------------------------------------------------------------------


@reducer(a.AddMessage)
def add_message(state: AppState, action: a.AddMessage) -> AppState:
    return _put_message(state, action.message)


@reducer(a.AddLocalMessageItem)
def add_local_message_item(state: AppState, action: a.AddLocalMessageItem) -> AppState:
    if action.add_message:
        state = _put_message(state, action.message)
    if action.message.is_silent:
        return state
    state = _put_items(state, (action.item,))
    ids = _insert_local_id(state.local_message_ids, action.item.id, action.add_after_id)
    return replace(state, local_message_ids=ids)


@reducer(a.AddNestedItems)
def add_nested_items(state: AppState, action: a.AddNestedItems) -> AppState:
    if not action.items:
        return state
    return _put_items(state, action.items)


@reducer(a.UpdateMessage)
def update_message(state: AppState, action: a.UpdateMessage) -> AppState:
    return _put_message(state, action.message)


@reducer(a.UpdateLocalMessageItem)
def update_local_message_item(state: AppState, action: a.UpdateLocalMessageItem) -> AppState:
    return _put_items(state, (action.item,))


@reducer(a.UpdateItemUIState)
def update_item_ui_state(state: AppState, action: a.UpdateItemUIState) -> AppState:
    item = state.items_by_id.get(action.item_id)
    if item is None:
        return state
    return _put_items(state, (item.with_ui(**action.changes),))


@reducer(a.SetMessageHistoryValue)
def set_message_history_value(state: AppState, action: a.SetMessageHistoryValue) -> AppState:
    return _update_history(state, action.message_id, **{action.key: action.value})


@reducer(a.RemoveMessages)
def remove_messages(state: AppState, action: a.RemoveMessages) -> AppState:
    doomed = set(action.message_ids)
    if not doomed:
        return state
    dropped_items = {i for i, item in state.items_by_id.items() if item.full_message_id in doomed}
    return replace(
        state,
        messages_by_id={k: v for k, v in state.messages_by_id.items() if k not in doomed},
        items_by_id={k: v for k, v in state.items_by_id.items() if k not in dropped_items},
        message_ids=tuple(i for i in state.message_ids if i not in doomed),
        local_message_ids=tuple(i for i in state.local_message_ids if i not in dropped_items),
    )


@reducer(a.HydrateHistory)
def hydrate_history(state: AppState, action: a.HydrateHistory) -> AppState:
    incoming_messages = {m.id: m for m in action.messages}
    incoming_items = {i.id: i for i in action.items}
    if action.prepend:
        messages = {**incoming_messages, **state.messages_by_id}
        items = {**incoming_items, **state.items_by_id}
        message_ids = tuple(i for i in incoming_messages if i not in state.messages_by_id) + state.message_ids
        local_ids = (
            tuple(i for i in action.local_message_ids if i not in state.items_by_id) + state.local_message_ids
        )
    else:
        messages = {**state.messages_by_id, **incoming_messages}
        items = {**state.items_by_id, **incoming_items}
        message_ids = state.message_ids + tuple(i for i in incoming_messages if i not in state.messages_by_id)
        local_ids = state.local_message_ids + tuple(
            i for i in action.local_message_ids if i not in state.local_message_ids
        )
    return replace(
        state,
        messages_by_id=messages,
        items_by_id=items,
        message_ids=message_ids,
        local_message_ids=local_ids,
    )


@reducer(a.ChatWasHydrated)
def chat_was_hydrated(state: AppState, action: a.ChatWasHydrated) -> AppState:
    return replace(state, is_hydrated=True)


@reducer(a.RestartConversation)
def restart_conversation(state: AppState, action: a.RestartConversation) -> AppState:
    persisted = replace(state.persisted, home_screen_open=False, has_sent_non_welcome_message=False)
    return replace(
        state,
        messages_by_id={},
        items_by_id={},
        message_ids=(),
        local_message_ids=(),
        is_hydrated=False,
        typing_counter=0,
        loading_counter=0,
        input=replace(state.input, files_upload_in_progress=False),
        response_panel=ResponsePanelState(),
        stop_streaming=StopStreamingState(),
        persisted=persisted,
    )


# -- Streaming -----------------------------------------------------------------


@reducer(a.StreamingStart)
def streaming_start(state: AppState, action: a.StreamingStart) -> AppState:
    if action.message_id in state.messages_by_id:
        return state
    placeholder = MessageResponse(id=action.message_id, output={"generic": []}).freeze()
    return _put_message(state, placeholder)


@reducer(a.StreamingAddChunk)
def streaming_add_chunk(state: AppState, action: a.StreamingAddChunk) -> AppState:
    chunk = deep_freeze(action.chunk_item)
    existing = state.items_by_id.get(action.item_id)

    if existing is None:
        item = MessageItem(
            item=chunk,
            full_message_id=action.message_id,
            ui_state=ItemUIState(
                id=action.item_id,
                needs_announcement=False,
                disable_fade_animation=action.disable_fade_animation,
                streaming_state=StreamingState(
                    chunks=() if action.is_complete else (chunk,),
                    is_done=action.is_complete,
                ),
            ),
        )
        state = _put_items(state, (item,))
        return replace(state, local_message_ids=_insert_local_id(state.local_message_ids, item.id, None))

    if existing.ui_state.streaming_state is None:
        # Already finalized by the full response; late chunks are stale.
        return state

    if action.is_complete:
        item = replace(existing, item=chunk).with_ui(streaming_state=StreamingState(chunks=(), is_done=True))
    else:
        streaming = existing.ui_state.streaming_state
        item = existing.with_ui(streaming_state=replace(streaming, chunks=streaming.chunks + (chunk,)))
    return _put_items(state, (item,))


@reducer(a.StreamingMergeMessageOptions)
def streaming_merge_message_options(state: AppState, action: a.StreamingMergeMessageOptions) -> AppState:
    message = state.messages_by_id.get(action.message_id)
    if message is None:
        return state
    merged = deep_merge(message.history.get("message_options") or {}, action.message_options)
    return _update_history(state, action.message_id, message_options=merged)


@reducer(a.SetStopStreamingVisible)
def set_stop_streaming_visible(state: AppState, action: a.SetStopStreamingVisible) -> AppState:
    return replace(state, stop_streaming=replace(state.stop_streaming, is_visible=action.visible))


@reducer(a.SetStopStreamingDisabled)
def set_stop_streaming_disabled(state: AppState, action: a.SetStopStreamingDisabled) -> AppState:
    return replace(state, stop_streaming=replace(state.stop_streaming, is_disabled=action.disabled))


# -- View and chrome -----------------------------------------------------------


@reducer(a.ChangeViewState)
def change_view_state(state: AppState, action: a.ChangeViewState) -> AppState:
    return replace(state, persisted=replace(state.persisted, view_state=action.view_state))


@reducer(a.SetViewChanging)
def set_view_changing(state: AppState, action: a.SetViewChanging) -> AppState:
    return replace(state, view_changing=action.changing)


@reducer(a.SetHomeScreenOpen)
def set_home_screen_open(state: AppState, action: a.SetHomeScreenOpen) -> AppState:
    return replace(state, persisted=replace(state.persisted, home_screen_open=action.is_open))


@reducer(a.SetResponsePanel)
def set_response_panel(state: AppState, action: a.SetResponsePanel) -> AppState:
    # The owning message remembers an open panel so history replay can reopen it.
    previous = state.items_by_id.get(state.response_panel.local_message_item_id or "")
    if not action.is_open:
        state = replace(state, response_panel=replace(state.response_panel, is_open=False))
        if previous is not None:
            state = _update_history(state, previous.full_message_id, response_panel_open=False)
        return state
    panel = ResponsePanelState(
        is_open=True,
        local_message_item_id=action.local_message_item_id,
        is_message_for_input=action.is_message_for_input,
    )
    state = replace(state, response_panel=panel)
    item = state.items_by_id.get(action.local_message_item_id or "")
    if item is not None and not action.is_message_for_input:
        state = _update_history(state, item.full_message_id, response_panel_open=True)
    return state


@reducer(a.AddTypingCounter)
def add_typing_counter(state: AppState, action: a.AddTypingCounter) -> AppState:
    return replace(state, typing_counter=max(0, state.typing_counter + action.delta))


@reducer(a.AddLoadingCounter)
def add_loading_counter(state: AppState, action: a.AddLoadingCounter) -> AppState:
    return replace(state, loading_counter=max(0, state.loading_counter + action.delta))


@reducer(a.SetHasSentNonWelcomeMessage)
def set_has_sent_non_welcome_message(state: AppState, action: a.SetHasSentNonWelcomeMessage) -> AppState:
    return replace(state, persisted=replace(state.persisted, has_sent_non_welcome_message=action.value))


@reducer(a.SetInputReadonly)
def set_input_readonly(state: AppState, action: a.SetInputReadonly) -> AppState:
    return replace(state, input=replace(state.input, is_readonly=action.readonly))


@reducer(a.LoadPersistedState)
def load_persisted_state(state: AppState, action: a.LoadPersistedState) -> AppState:
    return replace(state, persisted=action.persisted)


# -- Agent ---------------------------------------------------------------------


@reducer(a.SetAgentConnecting)
def agent_set_connecting(state: AppState, action: a.SetAgentConnecting) -> AppState:
    state = _with_agent(
        state,
        is_connecting=action.is_connecting,
        active_local_message_id=action.local_message_id,
    )
    if not action.is_connecting:
        state = _with_persisted_agent(state, is_suspended=False)
    return state


@reducer(a.SetAgentReconnecting)
def agent_set_reconnecting(state: AppState, action: a.SetAgentReconnecting) -> AppState:
    return _with_agent(state, is_reconnecting=action.is_reconnecting)


@reducer(a.AgentJoined)
def agent_joined(state: AppState, action: a.AgentJoined) -> AppState:
    state = _with_agent(state, is_connecting=False, is_reconnecting=False)
    profiles = dict(state.persisted.agent.agent_profiles)
    if action.profile is not None:
        profiles[action.profile.id] = action.profile
    return _with_persisted_agent(
        state,
        is_connected=True,
        agent_profile=action.profile,
        agent_profiles=profiles,
    )


@reducer(a.AgentLeftChat)
def agent_left_chat(state: AppState, action: a.AgentLeftChat) -> AppState:
    state = _with_agent(state, is_agent_typing=False)
    return _with_persisted_agent(state, agent_profile=None)


@reducer(a.EndAgentChat)
def agent_end_chat(state: AppState, action: a.EndAgentChat) -> AppState:
    state = replace(
        state,
        agent=AgentState(capabilities=state.agent.capabilities),
        input=InputState(),
    )
    return _with_persisted_agent(state, is_connected=False, is_suspended=False, agent_profile=None)


@reducer(a.SetAgentTyping)
def agent_set_typing(state: AppState, action: a.SetAgentTyping) -> AppState:
    return _with_agent(state, is_agent_typing=action.is_typing)


@reducer(a.SetAgentAvailability)
def agent_set_availability(state: AppState, action: a.SetAgentAvailability) -> AppState:
    availability = deep_freeze(action.availability) if action.availability is not None else None
    return _with_agent(state, availability=availability)


@reducer(a.UpdateCapabilities)
def agent_update_capabilities(state: AppState, action: a.UpdateCapabilities) -> AppState:
    merged = {**state.agent.capabilities, **action.capabilities}
    return _with_agent(state, capabilities=merged)


@reducer(a.SetAgentSuspended)
def agent_set_suspended(state: AppState, action: a.SetAgentSuspended) -> AppState:
    if not (state.agent.is_connecting or state.persisted.agent.is_connected):
        return state
    return _with_persisted_agent(state, is_suspended=action.is_suspended)


@reducer(a.SetFilesUploadInProgress)
def set_files_upload_in_progress(state: AppState, action: a.SetFilesUploadInProgress) -> AppState:
    return replace(state, input=replace(state.input, files_upload_in_progress=action.in_progress))


@reducer(a.SetFileUploadStatus)
def set_file_upload_status(state: AppState, action: a.SetFileUploadStatus) -> AppState:
    values = {"file_upload_status": action.status}
    if action.error_message is not None:
        values["error_message"] = action.error_message
        values["error_state"] = ErrorState.FAILED.value
    elif action.status == FileUploadStatus.COMPLETE.value:
        values["error_state"] = ErrorState.NONE.value
    return _update_history(state, action.file_id, **values)


@reducer(a.SetScreenShareRequest)
def agent_set_screen_share_request(state: AppState, action: a.SetScreenShareRequest) -> AppState:
    return _with_agent(state, show_screen_share_request=action.show)


@reducer(a.SetScreenSharing)
def agent_set_screen_sharing(state: AppState, action: a.SetScreenSharing) -> AppState:
    return _with_agent(state, is_screen_sharing=action.is_sharing)


@reducer(a.UpdateProviderState)
def agent_update_provider_state(state: AppState, action: a.UpdateProviderState) -> AppState:
    if action.merge:
        provider_state = deep_merge(state.persisted.agent.provider_state, action.state)
    else:
        provider_state = dict(action.state)
    return _with_persisted_agent(state, provider_state=provider_state)


def reduce(state: AppState, action: a.Action) -> AppState:
    try:
        fn = REDUCERS[action.type]
    except KeyError:
        raise KeyError(f"No reducer registered for action {action.type!r}") from None
    return fn(state, action)
