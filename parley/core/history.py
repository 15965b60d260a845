"""History loading and replay.

A history loader returns ``HistoryItem(message, time)`` pairs. Replay turns
them into store entries the same way live traffic would have, except that
pauses are skipped and nothing is announced.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from parley.core.events import BusEventType, EventBus, HistoryEvent
from parley.core.items import flatten_item, input_item_to_local_item, is_show_panel_button, output_item_to_local_item
from parley.core.models import (
    ErrorState,
    FileUploadStatus,
    Message,
    MessageItem,
    MessageRequest,
    MessageResponse,
    ResponseType,
    message_from_dict,
)
from parley.core.ports import HistoryItem, HistoryLoader
from parley.utils import guard

log = logging.getLogger("parley.history")


@dataclass
class LoadedHistory:
    messages: list[Message] = field(default_factory=list)
    # Every store entry, nested items included.
    items: list[MessageItem] = field(default_factory=list)
    # Top-level transcript order.
    local_message_ids: list[str] = field(default_factory=list)
    latest_panel_item: MessageItem | None = None

    def __bool__(self) -> bool:
        return bool(self.messages)

    @property
    def last_local_item(self) -> MessageItem | None:
        if not self.local_message_ids:
            return None
        last_id = self.local_message_ids[-1]
        return next((i for i in self.items if i.id == last_id), None)


def parse_history_time(value: Any) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()
    except ValueError:
        log.warning("Unparseable history timestamp %r", value)
        return None


def _coerce(entry: HistoryItem | Mapping[str, Any]) -> tuple[Message | None, Any]:
    if isinstance(entry, HistoryItem):
        message, when = entry.message, entry.time
    else:
        message, when = entry.get("message"), entry.get("time")
    if isinstance(message, Mapping):
        message = message_from_dict(message)
    if not isinstance(message, (MessageRequest, MessageResponse)):
        return None, when
    return (message.copy() if message.is_frozen else message), when


class HistoryService:
    def __init__(self, *, bus: EventBus, loader: HistoryLoader | None, instance: Any = None):
        self._bus = bus
        self._loader = loader
        self._instance = instance

    @property
    def configured(self) -> bool:
        return self._loader is not None

    async def load(self) -> LoadedHistory:
        """Load and replay the stored conversation; failures mean no history."""
        if self._loader is None:
            return LoadedHistory()
        entries = await guard(self._loader(self._instance), context="history loader", logger=log)
        if not entries:
            return LoadedHistory()
        return await self.convert(entries)

    async def convert(self, entries: Sequence[HistoryItem | Mapping[str, Any]]) -> LoadedHistory:
        messages: list[Message] = []
        for entry in entries:
            message, when = _coerce(entry)
            if message is None:
                log.debug("Skipping history entry that is not a request or response")
                continue
            if isinstance(message, MessageRequest) and message.is_event:
                continue
            if isinstance(message, MessageResponse) and message.is_silent:
                continue
            message.history["from_history"] = True
            timestamp = parse_history_time(when)
            if timestamp is not None:
                message.history["timestamp"] = timestamp
            if message.history.get("file_upload_status") == FileUploadStatus.UPLOADING.value:
                # The user left mid-upload.
                message.history["file_upload_status"] = FileUploadStatus.COMPLETE.value
                message.history["error_state"] = ErrorState.FAILED.value
            messages.append(message)

        if not messages:
            return LoadedHistory()

        # Listeners may still edit the messages during history:begin.
        await self._bus.fire(HistoryEvent(type=BusEventType.HISTORY_BEGIN, messages=tuple(messages)))
        for message in messages:
            message.freeze()
        await self._bus.fire(HistoryEvent(type=BusEventType.HISTORY_END, messages=tuple(messages)))

        return self._replay(messages)

    def _replay(self, messages: list[Message]) -> LoadedHistory:
        loaded = LoadedHistory(messages=messages)
        welcome_response_id = self._latest_welcome_response_id(messages)

        for message in messages:
            if isinstance(message, MessageRequest):
                if message.is_silent:
                    continue
                local = input_item_to_local_item(message)
                loaded.items.append(local)
                loaded.local_message_ids.append(local.id)
                continue

            for raw in message.items:
                if raw.get("response_type") == ResponseType.PAUSE.value:
                    continue
                local = output_item_to_local_item(
                    raw, message, is_latest_welcome=message.id == welcome_response_id
                )
                flattened = flatten_item(local, message)
                loaded.items.extend(flattened)
                loaded.local_message_ids.append(local.id)
                if message.history.get("response_panel_open") and is_show_panel_button(raw):
                    loaded.latest_panel_item = local

        return loaded

    @staticmethod
    def _latest_welcome_response_id(messages: list[Message]) -> str | None:
        welcome = next(
            (m for m in reversed(messages) if isinstance(m, MessageRequest) and m.history.get("is_welcome_request")),
            None,
        )
        if welcome is None:
            return None
        for message in messages:
            if isinstance(message, MessageResponse) and message.request_id == welcome.id:
                return message.id
        return None
