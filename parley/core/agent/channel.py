"""AgentChannel: hand-off of the conversation to a human agent.

State machine: idle → connecting → connected → idle, or connecting → idle
when the start is vetoed, fails or times out. Connection and suspension
are independent: a suspended chat stays connected but its traffic is hidden
and user input goes back to the assistant.

The provider is an external collaborator reached through the
``AgentProvider`` port; it reports back through ``AgentCallback``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from parley.config import AgentConfig
from parley.core.agent.callback import AgentCallback
from parley.core.agent.messages import (
    create_bot_return_message,
    create_file_upload_message,
    create_status_message,
)
from parley.core.epoch import EpochToken, SessionEpoch
from parley.core.events import (
    AgentEndChatEvent,
    AgentMessageEvent,
    AgentPreEndChatEvent,
    AgentPreStartChatEvent,
    AgentsOnlineEvent,
    BusEventType,
    EventBus,
)
from parley.core.hosts import RenderHosts
from parley.core.items import create_local_message_for_inline_error, input_item_to_local_item
from parley.core.models import (
    AgentErrorInfo,
    AgentErrorType,
    AgentMessageType,
    AgentProfile,
    AgentsOnlineStatus,
    ErrorState,
    FileUpload,
    Message,
    MessageItem,
    MessageResponse,
    ScreenShareState,
    create_request_for_text,
)
from parley.core.ports import AgentProvider, AgentProviderFactory
from parley.core.store import Store
from parley.core.store.actions import (
    AddLocalMessageItem,
    AddMessage,
    EndAgentChat,
    SetAgentConnecting,
    SetAgentReconnecting,
    SetAgentSuspended,
    SetFilesUploadInProgress,
    SetMessageHistoryValue,
    SetScreenShareRequest,
    SetScreenSharing,
)
from parley.core.store.state import PersistedAgentState
from parley.core.strings import text
from parley.errors import AgentChatAlreadyActive, AgentProviderError, EpochExpired
from parley.utils import BackgroundTasks, maybe_await, resolve_or_timeout, thaw

log = logging.getLogger("parley.agent")

MAX_PROVIDER_NAME_LENGTH = 40

MessagePair = tuple[Sequence[MessageItem], Message]


def validate_provider(provider: Any) -> None:
    if provider is None:
        raise AgentProviderError("The agent provider factory returned nothing")
    for name in ("start_chat", "end_chat", "send_message_to_agent"):
        if not callable(getattr(provider, name, None)):
            raise AgentProviderError(f"The agent provider does not implement {name}()")
    get_name = getattr(provider, "get_name", None)
    name = get_name() if callable(get_name) else None
    if not name:
        raise AgentProviderError("The agent provider does not have a name")
    if not isinstance(name, str) or len(name) > MAX_PROVIDER_NAME_LENGTH:
        raise AgentProviderError(f"The agent provider name {name!r} is not valid")


class AgentChannel:
    def __init__(
        self,
        *,
        store: Store,
        bus: EventBus,
        epoch: SessionEpoch,
        hosts: RenderHosts,
        config: AgentConfig,
    ):
        self._store = store
        self._bus = bus
        self._epoch = epoch
        self._hosts = hosts
        self._config = config
        self._tasks = BackgroundTasks(log)

        self.provider: AgentProvider | None = None
        self.callback = AgentCallback(self, store=store, bus=bus)

        # Local view of the chat; the store holds what the UI needs.
        self.chat_started = False
        self.showing_disconnected_error = False
        self.show_leave_warning = True
        self.is_agent_typing = False
        self.uploading_files: set[str] = set()
        self._join_timer: asyncio.Task | None = None
        self._screen_share_request: asyncio.Future[ScreenShareState] | None = None

    # -- Provider setup --------------------------------------------------------

    @property
    def epoch(self) -> SessionEpoch:
        return self._epoch

    @property
    def has_provider(self) -> bool:
        return self.provider is not None

    async def initialize(self, factory: AgentProviderFactory | None, instance: Any = None) -> None:
        if self.provider is not None:
            raise AgentProviderError("An agent provider has already been created")
        if factory is None:
            log.debug("No agent provider configured")
            return
        provider = await maybe_await(
            factory(
                callback=self.callback,
                instance=instance,
                persisted_state=thaw(self.persisted().provider_state),
            )
        )
        validate_provider(provider)
        self.provider = provider
        self.show_leave_warning = not callable(getattr(provider, "reconnect", None))
        log.info("Agent provider %s initialised", provider.get_name())

    async def wait_idle(self) -> None:
        await self._tasks.wait_idle()

    def shutdown(self) -> None:
        self.cancel_join_timer()
        self._tasks.cancel_all()

    def persisted(self) -> PersistedAgentState:
        return self._store.state.persisted.agent

    def is_suspended(self) -> bool:
        return self.persisted().is_suspended

    # -- Chat lifecycle --------------------------------------------------------

    async def start_chat(self, local_item: MessageItem | None, message: MessageResponse) -> None:
        if self.provider is None:
            raise AgentProviderError("No agent provider has been configured")

        if self.is_suspended():
            await self.end_chat(True, True, False)

        if self.chat_started:
            raise AgentChatAlreadyActive()

        try:
            self.chat_started = True
            self.is_agent_typing = False
            self.uploading_files.clear()
            self._store.dispatch(SetFilesUploadInProgress(False))

            event = await self._bus.fire(
                AgentPreStartChatEvent(type=BusEventType.AGENT_PRE_START_CHAT, message=message)
            )
            if event.cancel_start_chat:
                log.info("Agent chat start vetoed by an agent:pre:startChat listener")
                self.chat_started = False
                await self.fire_end_chat(False, True)
                self._store.dispatch(SetAgentConnecting(False, None))
                return

            if self._config.join_timeout_secs > 0:
                self._join_timer = asyncio.create_task(
                    self._join_timeout(self._config.join_timeout_secs, self._epoch.capture())
                )

            self._store.dispatch(SetAgentConnecting(True, local_item.id if local_item else None))
            await self.provider.start_chat(message, pre_start_chat_payload=event.pre_start_chat_payload)
        except Exception as e:
            log.exception("[start_chat] The agent provider failed")
            await self.callback.set_error_status(AgentErrorInfo(type=AgentErrorType.CONNECTING, log_info=e))
            self._store.dispatch(SetAgentConnecting(False, None))
            self.chat_started = False
            self.cancel_join_timer()
            raise

    async def end_chat(
        self,
        ended_by_user: bool,
        show_agent_left: bool = True,
        show_bot_return: bool = True,
    ) -> None:
        """End the chat from the user's side.

        The pre-end event (and its veto) only applies to a connected chat; a
        chat that is still connecting is simply torn down.
        """
        if not self.chat_started or self.provider is None:
            return

        payload = None
        if self.persisted().is_connected:
            event = await self.fire_pre_end_chat(False)
            if event.cancel_end_chat:
                return
            payload = event.pre_end_chat_payload

        message_type = AgentMessageType.USER_ENDED_CHAT if ended_by_user else AgentMessageType.CHAT_WAS_ENDED
        await self.do_end_chat(False, payload, show_agent_left, show_bot_return, message_type)

    async def do_end_chat(
        self,
        ended_by_agent: bool,
        pre_end_chat_payload: Any,
        show_agent_left: bool,
        show_bot_return: bool,
        message_type: AgentMessageType,
    ) -> None:
        persisted = self.persisted()
        is_connected = persisted.is_connected
        was_suspended = persisted.is_suspended
        profile = persisted.agent_profile

        self.cancel_join_timer()
        self.close_screen_share_request(ScreenShareState.CANCELLED)

        try:
            await resolve_or_timeout(
                maybe_await(
                    self.provider.end_chat(
                        ended_by_agent=ended_by_agent, pre_end_chat_payload=pre_end_chat_payload
                    )
                ),
                self._config.end_chat_timeout_secs,
            )
        except asyncio.TimeoutError:
            log.warning("[end_chat] The agent provider did not finish within %ss", self._config.end_chat_timeout_secs)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("[end_chat] The agent provider failed")

        if is_connected and show_agent_left:
            await self.add_agent_local_message(message_type, profile, fire_events=True, show_live=not was_suspended)

        self.chat_started = False
        self.is_agent_typing = False
        self.showing_disconnected_error = False
        self._store.dispatch(EndAgentChat())

        await self.fire_end_chat(ended_by_agent, not is_connected)

        if is_connected and show_bot_return:
            self._tasks.spawn_guarded(
                self._add_bot_return(self._config.bot_return_delay_secs, was_suspended, self._epoch.capture()),
                context="bot return message",
            )

    async def fire_pre_end_chat(self, ended_by_agent: bool) -> AgentPreEndChatEvent:
        return await self._bus.fire(
            AgentPreEndChatEvent(type=BusEventType.AGENT_PRE_END_CHAT, ended_by_agent=ended_by_agent)
        )

    async def fire_end_chat(self, ended_by_agent: bool, request_cancelled: bool) -> None:
        await self._bus.fire(
            AgentEndChatEvent(
                type=BusEventType.AGENT_END_CHAT,
                ended_by_agent=ended_by_agent,
                request_cancelled=request_cancelled,
            )
        )

    # -- Timers ----------------------------------------------------------------

    def cancel_join_timer(self) -> None:
        task = self._join_timer
        self._join_timer = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _join_timeout(self, delay: float, token: EpochToken) -> None:
        await asyncio.sleep(delay)
        self._join_timer = None
        if token.expired or not self.chat_started:
            return
        log.warning("No agent joined within %ss; ending the chat", delay)
        await self.add_inline_error(text("errors_no_agents_joined"))
        await self.end_chat(False)

    async def _add_bot_return(self, delay: float, was_suspended: bool, token: EpochToken) -> None:
        try:
            await token.resume(asyncio.sleep(delay))
        except EpochExpired:
            return
        local, message = create_bot_return_message()
        await self.add_messages([([local], message)], show_live=not was_suspended)

    async def _mark_after(self, delay: float, message_id: str, state: ErrorState, token: EpochToken) -> None:
        await asyncio.sleep(delay)
        if not token.expired:
            self.set_message_error_state(message_id, state)

    # -- Messages --------------------------------------------------------------

    async def send_message_to_agent(self, text_value: str, uploads: Sequence[FileUpload] = ()) -> None:
        if self.provider is None or not self.chat_started:
            return

        request = create_request_for_text(text_value)
        request.input["agent_message_type"] = AgentMessageType.FROM_USER.value
        uploads = tuple(uploads)

        await self._bus.fire(
            AgentMessageEvent(type=BusEventType.AGENT_PRE_SEND, data=request, files=uploads)
        )

        local = input_item_to_local_item(request, request.text)
        pairs: list[MessagePair] = []
        if request.text:
            pairs.append(([local], request))
        for upload in uploads:
            upload_local, upload_request = create_file_upload_message(upload)
            pairs.append(([upload_local], upload_request))
            self.uploading_files.add(upload.id)
        self._store.dispatch(SetFilesUploadInProgress(bool(self.uploading_files)))

        await self.add_messages(pairs, show_live=not self.is_suspended())
        request.freeze()

        token = self._epoch.capture()
        warning = asyncio.create_task(
            self._mark_after(self._config.send_warning_secs, request.id, ErrorState.RETRYING, token)
        )
        failure = asyncio.create_task(
            self._mark_after(self._config.send_error_secs, request.id, ErrorState.FAILED, token)
        )
        try:
            await self.provider.send_message_to_agent(request, local.id, files=uploads)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("[send_message_to_agent] The agent provider failed")
            if not token.expired:
                self.set_message_error_state(request.id, ErrorState.FAILED)
        else:
            if token.expired:
                return
            self.set_message_error_state(request.id, ErrorState.NONE)
            await self._bus.fire(AgentMessageEvent(type=BusEventType.AGENT_SEND, data=request, files=uploads))
        finally:
            warning.cancel()
            failure.cancel()

    def set_message_error_state(self, message_id: str | None, state: ErrorState) -> None:
        if message_id is None:
            return
        message = self._store.state.messages_by_id.get(message_id)
        if message is not None and message.history.get("error_state") != state.value:
            self._store.dispatch(SetMessageHistoryValue(message_id, "error_state", state.value))

    async def add_messages(
        self, pairs: Sequence[MessagePair], *, show_live: bool, token: EpochToken | None = None
    ) -> None:
        """Add agent traffic; hidden (stored only) while the chat is suspended.

        With a ``token``, raises ``EpochExpired`` instead of adding an item
        once a restart has happened.
        """
        for local_items, message in pairs:
            if not show_live:
                self._store.dispatch(AddMessage(message))
                continue
            for index, local in enumerate(local_items):
                await self._hosts.notify_items(local, message)
                if token is not None:
                    token.check()
                self._store.dispatch(AddLocalMessageItem(local, message, add_message=index == 0))

    async def add_agent_local_message(
        self,
        message_type: AgentMessageType,
        profile: AgentProfile | None = None,
        *,
        fire_events: bool = True,
        show_live: bool | None = None,
        token: EpochToken | None = None,
    ) -> None:
        if profile is None:
            profile = self.persisted().agent_profile
        local, message = create_status_message(message_type, profile)
        if fire_events:
            await self._bus.fire(
                AgentMessageEvent(type=BusEventType.AGENT_PRE_RECEIVE, data=message, agent_profile=profile)
            )
            if token is not None:
                token.check()
        message.freeze()
        if show_live is None:
            show_live = not self.is_suspended()
        await self.add_messages([([local], message)], show_live=show_live, token=token)
        if fire_events:
            await self._bus.fire(
                AgentMessageEvent(type=BusEventType.AGENT_RECEIVE, data=message, agent_profile=profile)
            )

    async def add_inline_error(self, message_text: str) -> None:
        local, message = create_local_message_for_inline_error(message_text)
        await self.add_messages([([local], message.freeze())], show_live=not self.is_suspended())

    # -- Availability ----------------------------------------------------------

    async def check_are_any_agents_online(self, message: MessageResponse) -> AgentsOnlineStatus:
        token = self._epoch.capture()
        check_online = getattr(self.provider, "are_any_agents_online", None) if self.provider else None

        if not callable(check_online):
            status = AgentsOnlineStatus.UNKNOWN
        else:
            try:
                result = await resolve_or_timeout(
                    maybe_await(check_online(message)), self._config.availability_timeout_secs
                )
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                log.warning("Agent availability check timed out; treating agents as offline")
                status = AgentsOnlineStatus.OFFLINE
            except Exception:
                log.exception("Error attempting to get agent availability")
                status = AgentsOnlineStatus.OFFLINE
            else:
                if result is True:
                    status = AgentsOnlineStatus.ONLINE
                elif result is False:
                    status = AgentsOnlineStatus.OFFLINE
                else:
                    status = AgentsOnlineStatus.UNKNOWN

        if token.expired:
            log.debug("Availability result %s dropped: conversation restarted", status.value)
        else:
            self._tasks.spawn_guarded(
                self._bus.fire(
                    AgentsOnlineEvent(type=BusEventType.AGENT_ARE_ANY_AGENTS_ONLINE, are_any_agents_online=status)
                ),
                context="agent:areAnyAgentsOnline listeners",
            )
        return status

    # -- User-side signals -----------------------------------------------------

    async def _call_optional(self, name: str, *args: Any) -> None:
        if self.provider is None or not self.chat_started:
            return
        hook = getattr(self.provider, name, None)
        if not callable(hook):
            return
        try:
            await maybe_await(hook(*args))
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("[%s] The agent provider failed", name)

    async def user_typing(self, is_typing: bool) -> None:
        await self._call_optional("user_typing", is_typing)

    async def user_read_messages(self) -> None:
        await self._call_optional("user_read_messages")

    async def files_selected_for_upload(self, uploads: Sequence[FileUpload]) -> None:
        await self._call_optional("files_selected_for_upload", tuple(uploads))

    def update_is_suspended(self, is_suspended: bool) -> None:
        self._store.dispatch(SetAgentSuspended(is_suspended))

    # -- Screen sharing --------------------------------------------------------

    def open_screen_share_request(self) -> asyncio.Future[ScreenShareState] | None:
        """Return the pending request future, creating it if needed.

        ``None`` means a request was already pending and has been reused.
        """
        if self._screen_share_request is not None:
            return None
        self._screen_share_request = asyncio.get_running_loop().create_future()
        self._store.dispatch(SetScreenShareRequest(True))
        return self._screen_share_request

    @property
    def screen_share_request_pending(self) -> asyncio.Future[ScreenShareState] | None:
        return self._screen_share_request

    def close_screen_share_request(self, state: ScreenShareState) -> None:
        self._store.dispatch(SetScreenShareRequest(False))
        request = self._screen_share_request
        self._screen_share_request = None
        if request is not None and not request.done():
            request.set_result(state)
        self._store.dispatch(SetScreenSharing(state is ScreenShareState.ACCEPTED))

    async def screen_share_respond(self, state: ScreenShareState) -> None:
        """The user answered the agent's screen-share request."""
        if not self.persisted().is_connected:
            return
        self.close_screen_share_request(state)
        message_type = {
            ScreenShareState.ACCEPTED: AgentMessageType.SHARING_ACCEPTED,
            ScreenShareState.DECLINED: AgentMessageType.SHARING_DECLINED,
            ScreenShareState.CANCELLED: AgentMessageType.SHARING_CANCELLED,
            ScreenShareState.ENDED: AgentMessageType.SHARING_ENDED,
        }[state]
        await self.add_agent_local_message(message_type)

    async def screen_share_stop(self) -> None:
        self._store.dispatch(SetScreenSharing(False))
        await self.add_agent_local_message(AgentMessageType.SHARING_ENDED)
        hook = getattr(self.provider, "screen_share_stop", None) if self.provider else None
        if callable(hook):
            await maybe_await(hook())

    # -- Hydration -------------------------------------------------------------

    async def handle_hydration(self, allow_reconnect: bool, allow_end_chat_messages: bool) -> None:
        """Reconcile a persisted agent connection after a reload."""
        if not self.persisted().is_connected:
            return

        token = self._epoch.capture()
        self.chat_started = True
        did_reconnect = False
        reconnect = getattr(self.provider, "reconnect", None) if self.provider else None

        try:
            if allow_reconnect and callable(reconnect):
                self._store.dispatch(SetAgentReconnecting(True))
                try:
                    did_reconnect = bool(await token.resume(maybe_await(reconnect())))
                except EpochExpired:
                    raise
                except asyncio.CancelledError:
                    raise
                except Exception:
                    log.exception("Error while trying to reconnect to an agent")
            token.check()
        except EpochExpired:
            log.debug("Conversation restarted during agent reconnect; result dropped")
            return

        self._store.dispatch(SetAgentReconnecting(False))

        if not self.persisted().is_connected:
            self.chat_started = False
            return

        if did_reconnect:
            self.show_leave_warning = False
            return

        self.chat_started = False
        persisted = self.persisted()
        self._store.dispatch(EndAgentChat())
        if allow_end_chat_messages:
            await self.add_agent_local_message(
                AgentMessageType.CHAT_WAS_ENDED,
                persisted.agent_profile,
                fire_events=False,
                show_live=not persisted.is_suspended,
            )
            await self._add_bot_return(0, persisted.is_suspended, token)
