"""Human-agent provider over XMPP.

The user is represented by one client account that chats with a single agent
JID. The agent's first message counts as joining; chat states map to the
typing indicator and an ``unavailable`` presence ends the chat.

``AgentRelayClient`` owns the slixmpp stream and forwards stanzas;
``XMPPAgentProvider`` implements the engine's ``AgentProvider`` port on top
of it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import Any, Callable

from slixmpp import JID, ClientXMPP

from parley.config import XMPPAgentConfig
from parley.core.models import (
    AgentErrorInfo,
    AgentErrorType,
    AgentProfile,
    FileUpload,
    MessageRequest,
    MessageResponse,
    ResponseType,
)
from parley.core.ports import AgentCallbackPort
from parley.utils import guard

log = logging.getLogger("parley.xmpp")

ROSTER_TIMEOUT_SECS = 15


def _handoff_notice(message: MessageResponse) -> str:
    for item in message.items:
        if item.get("response_type") == ResponseType.CONNECT_TO_AGENT.value:
            summary = item.get("message_to_human_agent")
            if summary:
                return f"A user is requesting an agent: {summary}"
    return "A user is requesting an agent."


class AgentRelayClient(ClientXMPP):
    def __init__(self, config: XMPPAgentConfig, provider: XMPPAgentProvider):
        super().__init__(config.jid, config.password)
        self.agent_config = config
        self.provider = provider
        self.agent_jid = JID(config.agent_jid).bare
        self.shutting_down = False
        self.relay_ready = asyncio.Event()

        self.register_plugin("xep_0199")  # Ping
        self.register_plugin("xep_0085")  # Chat State Notifications

        self.add_event_handler("session_start", self.on_start)
        self.add_event_handler("disconnected", self.on_disconnected)
        self.add_event_handler("message", self.on_message)
        self.add_event_handler("chatstate_composing", self.on_composing)
        self.add_event_handler("chatstate_paused", self.on_stopped_typing)
        self.add_event_handler("chatstate_active", self.on_stopped_typing)
        self.add_event_handler("presence_available", self.on_presence_available)
        self.add_event_handler("presence_unavailable", self.on_presence_unavailable)

    def connect_to_server(self) -> None:
        """Connect with plain settings (no TLS), as for a local server."""
        server = self.agent_config.server or self.boundjid.domain
        self["feature_mechanisms"].unencrypted_plain = True  # type: ignore[attr-defined]
        self.enable_starttls = False
        self.enable_direct_tls = False
        self.enable_plaintext = True
        self.connect(host=server, port=self.agent_config.port)

    def close(self) -> None:
        self.shutting_down = True
        if self.relay_ready.is_set():
            self.disconnect()

    def send_text(self, text: str) -> None:
        msg = self.make_message(mto=self.agent_jid, mbody=text, mtype="chat")
        msg["chat_state"] = "active"
        msg.send()

    def send_chat_state(self, state: str) -> None:
        msg = self.make_message(mto=self.agent_jid, mtype="chat")
        msg["chat_state"] = state
        msg.send()

    def from_agent(self, stanza) -> bool:
        return JID(stanza["from"]).bare == self.agent_jid

    # -- slixmpp handlers ------------------------------------------------------

    async def on_start(self, event) -> None:
        self.send_presence()
        try:
            await asyncio.wait_for(self.get_roster(), timeout=ROSTER_TIMEOUT_SECS)
        except asyncio.TimeoutError:
            log.error("Roster request timed out; continuing without it")
        self.relay_ready.set()
        log.info("Connected as %s", self.boundjid.bare)
        await guard(self.provider.session_started(), context="xmpp.on_start", logger=log)

    async def on_disconnected(self, event) -> None:
        self.relay_ready.clear()
        if self.shutting_down:
            log.info("Disconnected during shutdown")
            return
        log.warning("Lost the XMPP connection")
        await guard(self.provider.session_lost(event), context="xmpp.on_disconnected", logger=log)

    async def on_message(self, msg) -> None:
        if msg["type"] not in ("chat", "normal") or not self.from_agent(msg):
            return
        body = (msg["body"] or "").strip()
        if body:
            await guard(self.provider.agent_message(JID(msg["from"]), body), context="xmpp.on_message", logger=log)

    async def on_composing(self, msg) -> None:
        if self.from_agent(msg):
            await guard(self.provider.agent_chat_state(True), context="xmpp.on_composing", logger=log)

    async def on_stopped_typing(self, msg) -> None:
        if self.from_agent(msg):
            await guard(self.provider.agent_chat_state(False), context="xmpp.on_stopped_typing", logger=log)

    def on_presence_available(self, presence) -> None:
        if self.from_agent(presence):
            self.provider.agent_online = True

    async def on_presence_unavailable(self, presence) -> None:
        if self.from_agent(presence):
            await guard(self.provider.agent_went_offline(), context="xmpp.on_presence_unavailable", logger=log)


ClientFactory = Callable[[XMPPAgentConfig, "XMPPAgentProvider"], Any]


class XMPPAgentProvider:
    def __init__(
        self,
        config: XMPPAgentConfig,
        callback: AgentCallbackPort,
        *,
        client_factory: ClientFactory = AgentRelayClient,
    ):
        self.config = config
        self.callback = callback
        self.agent_jid = JID(config.agent_jid).bare
        self.agent_online: bool | None = None
        self._agent_joined = False
        self._lost_connection = False
        self.client = client_factory(config, self)

    def get_name(self) -> str:
        return "xmpp"

    async def ensure_connected(self) -> None:
        ready = self.client.relay_ready
        if ready.is_set():
            return
        self.client.connect_to_server()
        try:
            await asyncio.wait_for(ready.wait(), self.config.connect_timeout_secs)
        except asyncio.TimeoutError:
            raise ConnectionError(
                f"XMPP session for {self.config.jid} not established within {self.config.connect_timeout_secs}s"
            ) from None

    # -- AgentProvider ---------------------------------------------------------

    async def start_chat(self, message: MessageResponse, *, pre_start_chat_payload: Any = None) -> None:
        await self.ensure_connected()
        self._agent_joined = False
        self.callback.update_persisted_state({"agent_jid": self.agent_jid, "chat_open": True})
        self.client.send_text(_handoff_notice(message))
        log.info("Requested an agent chat with %s", self.agent_jid)

    async def end_chat(self, *, ended_by_agent: bool, pre_end_chat_payload: Any = None) -> None:
        if not ended_by_agent and self.client.relay_ready.is_set():
            self.client.send_text("The user has ended the chat.")
        self._agent_joined = False
        self.callback.update_persisted_state({"chat_open": False})

    async def send_message_to_agent(
        self, message: MessageRequest, message_id: str, *, files: Sequence[FileUpload] = ()
    ) -> None:
        await self.ensure_connected()
        if message.text:
            self.client.send_text(message.text)
        for upload in files:
            # Only the file name travels over the chat.
            self.client.send_text(f"[file] {upload.name}")
            await self.callback.set_file_upload_status(upload.id)

    async def are_any_agents_online(self, message: MessageResponse) -> bool | None:
        await self.ensure_connected()
        return self.agent_online

    async def user_typing(self, is_typing: bool) -> None:
        if self.client.relay_ready.is_set():
            self.client.send_chat_state("composing" if is_typing else "paused")

    async def user_read_messages(self) -> None:
        log.debug("User read the agent's messages")

    async def reconnect(self) -> bool:
        state = self.callback.persisted_state()
        if not state.get("chat_open") or state.get("agent_jid") != self.agent_jid:
            return False
        await self.ensure_connected()
        self._agent_joined = True
        return True

    async def shutdown(self) -> None:
        self.client.close()

    # -- Relay events ----------------------------------------------------------

    async def session_started(self) -> None:
        if self._lost_connection and self._agent_joined:
            self._lost_connection = False
            await self.callback.set_error_status(
                AgentErrorInfo(type=AgentErrorType.DISCONNECTED, is_disconnected=False)
            )

    async def session_lost(self, reason: Any = None) -> None:
        if not self._agent_joined:
            return
        self._lost_connection = True
        await self.callback.set_error_status(
            AgentErrorInfo(type=AgentErrorType.DISCONNECTED, is_disconnected=True, log_info=reason)
        )

    async def agent_message(self, sender: JID, body: str) -> None:
        if not self._agent_joined:
            self._agent_joined = True
            await self.callback.agent_joined(AgentProfile(id=sender.bare, nickname=sender.user or None))
        await self.callback.agent_typing(False)
        await self.callback.send_message_to_user(body, sender.bare)

    async def agent_chat_state(self, is_typing: bool) -> None:
        if self._agent_joined:
            await self.callback.agent_typing(is_typing)

    async def agent_went_offline(self) -> None:
        self.agent_online = False
        if self._agent_joined:
            log.info("Agent %s went offline; ending the chat", self.agent_jid)
            self._agent_joined = False
            await self.callback.agent_ended_chat()


def xmpp_provider_factory(config: XMPPAgentConfig):
    """Return an ``AgentProviderFactory`` building an ``XMPPAgentProvider``."""

    def factory(
        *, callback: AgentCallbackPort, instance: Any = None, persisted_state: Mapping[str, Any] | None = None
    ) -> XMPPAgentProvider:
        return XMPPAgentProvider(config, callback)

    return factory
