"""StreamAssembler: strictly ordered merge of streamed response chunks.

Chunks are processed one at a time by a single loop task. Each caller's
``enqueue`` resolves once *its* chunk has been merged, so a transport can
pace itself on the engine without waiting for the whole stream.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from parley.core.epoch import EpochToken, SessionEpoch
from parley.core.hosts import RenderHosts
from parley.core.models import (
    CompleteItemChunk,
    FinalResponseChunk,
    MessageResponse,
    PartialItemChunk,
    StreamChunk,
    parse_chunk,
    stream_item_id,
)
from parley.core.store import Store
from parley.core.store.actions import (
    SetStopStreamingDisabled,
    SetStopStreamingVisible,
    StreamingAddChunk,
    StreamingMergeMessageOptions,
    StreamingStart,
)
from parley.errors import EpochExpired, StreamAssemblyError

log = logging.getLogger("parley.stream")

_ALLOWED_PARTIAL_RESPONSE_KEYS = frozenset({"message_options"})

ReceiveFn = Callable[..., Awaitable[None]]


@dataclass(frozen=True)
class QueuedChunk:
    token: EpochToken
    chunk: StreamChunk
    message_id: str | None
    disable_fade_animation: bool
    is_latest_welcome: bool
    done: asyncio.Future[None]
    enqueued_at: float = field(default_factory=time.monotonic)


class StreamAssembler:
    def __init__(
        self,
        *,
        store: Store,
        epoch: SessionEpoch,
        hosts: RenderHosts,
        receive: ReceiveFn,
    ):
        self._store = store
        self._epoch = epoch
        self._hosts = hosts
        self._receive = receive

        self._task: asyncio.Task | None = None
        self._queue: asyncio.Queue[QueuedChunk] = asyncio.Queue()

    def ensure_running(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop())

    def pending_count(self) -> int:
        return self._queue.qsize()

    async def enqueue(
        self,
        chunk: StreamChunk | Mapping[str, Any],
        message_id: str | None = None,
        *,
        disable_fade_animation: bool = True,
        is_latest_welcome: bool = False,
    ) -> None:
        """Queue a chunk and wait until it has been merged.

        Raises ``StreamAssemblyError`` if this chunk cannot be assembled; the
        queue itself keeps going.
        """
        parsed = parse_chunk(chunk)
        done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        item = QueuedChunk(
            token=self._epoch.capture(),
            chunk=parsed,
            message_id=message_id,
            disable_fade_animation=disable_fade_animation,
            is_latest_welcome=is_latest_welcome,
            done=done,
        )
        await self._queue.put(item)
        self.ensure_running()
        await done

    def shutdown(self) -> None:
        task = self._task
        self._task = None
        if task and not task.done():
            task.cancel()
        while not self._queue.empty():
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if not item.done.done():
                item.done.cancel()

    async def _loop(self) -> None:
        try:
            while True:
                item = await self._queue.get()
                try:
                    if item.token.expired:
                        log.debug("Dropping chunk queued before a restart")
                    else:
                        await self._process(item)
                except EpochExpired:
                    log.debug("Conversation restarted while merging a chunk; rest of it discarded")
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    if isinstance(e, StreamAssemblyError):
                        log.warning("Chunk rejected: %s", e)
                    else:
                        log.exception("StreamAssembler loop error")
                    if not item.done.done():
                        item.done.set_exception(e)
                finally:
                    if not item.done.done():
                        item.done.set_result(None)
        except asyncio.CancelledError:
            return

    def _validate(self, message_id: str, payload: Mapping[str, Any], partial_response) -> str:
        item_id = stream_item_id(message_id, payload)
        if item_id is None:
            raise StreamAssemblyError(
                f"Streamed item for message {message_id} has no streaming_metadata.id"
            )
        if item_id not in self._store.state.items_by_id and payload.get("response_type") is None:
            raise StreamAssemblyError(
                f"First chunk of streamed item {item_id} has no response_type"
            )
        if partial_response:
            extra = set(partial_response) - _ALLOWED_PARTIAL_RESPONSE_KEYS
            if extra:
                raise StreamAssemblyError(
                    f"partial_response only supports message_options; got {sorted(extra)}"
                )
        return item_id

    async def _process(self, item: QueuedChunk) -> None:
        chunk = item.chunk
        stop_was_visible = self._store.state.stop_streaming.is_visible

        if isinstance(chunk, PartialItemChunk) and chunk.cancellable and not stop_was_visible:
            self._store.dispatch(SetStopStreamingVisible(True))

        if isinstance(chunk, FinalResponseChunk):
            await self._receive_final(item, chunk.final_response)
        else:
            is_complete = isinstance(chunk, CompleteItemChunk)
            payload = chunk.complete_item if is_complete else chunk.partial_item
            message_id = item.message_id or chunk.response_id
            if not message_id:
                raise StreamAssemblyError("Chunk carries no response_id and no message id was given")

            item_id = self._validate(message_id, payload, chunk.partial_response)

            if message_id not in self._store.state.messages_by_id:
                self._store.dispatch(StreamingStart(message_id))
            self._store.dispatch(
                StreamingAddChunk(
                    message_id=message_id,
                    item_id=item_id,
                    chunk_item=payload,
                    is_complete=is_complete,
                    disable_fade_animation=item.disable_fade_animation,
                )
            )
            if chunk.partial_response:
                self._store.dispatch(
                    StreamingMergeMessageOptions(message_id, chunk.partial_response["message_options"])
                )
            await item.token.resume(self._hosts.notify_chunk(message_id, chunk, payload))

        if isinstance(chunk, (CompleteItemChunk, FinalResponseChunk)) and stop_was_visible:
            self._store.dispatch(SetStopStreamingDisabled(False))
            self._store.dispatch(SetStopStreamingVisible(False))

    async def _receive_final(self, item: QueuedChunk, message: MessageResponse) -> None:
        await item.token.resume(
            self._receive(
                message,
                is_latest_welcome=item.is_latest_welcome,
                disable_fade_animation=item.disable_fade_animation,
            )
        )
