"""Render hosts for custom (``user_defined``) items.

The core does not render anything. For every ``user_defined`` item it hands
the host application a ``RenderHost`` slot through the
``userDefinedResponse`` / ``chunk:userDefinedResponse`` events and awaits
the listeners before moving on.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from typing import Any

from parley.core.events import (
    BusEventType,
    ChunkUserDefinedResponseEvent,
    EventBus,
    RenderHost,
    UserDefinedResponseEvent,
)
from parley.core.items import is_silent_user_defined
from parley.core.models import Message, MessageItem, ResponseType, StreamChunk, stream_item_id
from parley.core.store import Store

log = logging.getLogger("parley.hosts")


class RenderHosts:
    def __init__(self, *, store: Store, bus: EventBus):
        self._store = store
        self._bus = bus
        self._hosts: dict[str, RenderHost] = {}

    def get(self, item_id: str) -> RenderHost | None:
        return self._hosts.get(item_id)

    def host_for(self, item_id: str, message_id: str) -> RenderHost:
        host = self._hosts.get(item_id)
        if host is None:
            host = RenderHost(item_id=item_id, message_id=message_id, slot_name=f"user-defined-{item_id}")
            self._hosts[item_id] = host
        return host

    def clear(self) -> None:
        self._hosts.clear()

    def _walk(self, item: MessageItem) -> Iterator[MessageItem]:
        yield item
        ui = item.ui_state
        child_ids: list[str] = [*(ui.body_ids or ()), *(ui.footer_ids or ()), *(ui.items_ids or ())]
        for row in ui.grid_ids or ():
            for cell in row:
                child_ids.extend(cell)
        items_by_id = self._store.state.items_by_id
        for child_id in child_ids:
            child = items_by_id.get(child_id)
            if child is not None:
                yield from self._walk(child)

    async def notify_items(self, local_item: MessageItem, message: Message) -> None:
        """Fire ``userDefinedResponse`` for every custom item in the tree."""
        for item in self._walk(local_item):
            if item.response_type != ResponseType.USER_DEFINED.value:
                continue
            host = None if is_silent_user_defined(item.item) else self.host_for(item.id, message.id)
            await self._bus.fire(
                UserDefinedResponseEvent(
                    type=BusEventType.USER_DEFINED_RESPONSE,
                    item=item,
                    full_message=message,
                    host=host,
                )
            )

    async def notify_chunk(self, message_id: str, chunk: StreamChunk, item: Mapping[str, Any]) -> None:
        if item.get("response_type") != ResponseType.USER_DEFINED.value:
            return
        host = None
        if not is_silent_user_defined(item):
            item_id = stream_item_id(message_id, item)
            if item_id is None:
                log.warning("Streamed user_defined item in %s has no streaming id; no host created", message_id)
            else:
                host = self.host_for(item_id, message_id)
        await self._bus.fire(
            ChunkUserDefinedResponseEvent(
                type=BusEventType.CHUNK_USER_DEFINED_RESPONSE,
                item=item,
                chunk=chunk,
                host=host,
            )
        )
