"""Outbound messages: SendController and the single-flight MessageQueue.

The queue follows the actor pattern: a single loop task pulls one request at
a time, and each request carries a future that settles when its transport
call does. A generation counter invalidates everything queued before a
restart.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from parley.config import ChatConfig
from parley.core.events import BusEventType, EventBus, MessageEvent, PreSendEvent
from parley.core.items import create_local_message_for_inline_error, input_item_to_local_item
from parley.core.models import (
    ErrorState,
    MessageRequest,
    MessageSendSource,
    create_request_for_text,
)
from parley.core.ports import HydrationPort, Transport
from parley.core.store import Store
from parley.core.store.actions import (
    AddLoadingCounter,
    AddLocalMessageItem,
    AddMessage,
    RemoveMessages,
    SetHomeScreenOpen,
    SetMessageHistoryValue,
    SetResponsePanel,
    UpdateLocalMessageItem,
    UpdateMessage,
)
from parley.core.strings import text
from parley.errors import MessageCancelled, ReadOnlyInputError, TransportError
from parley.utils import discard_late_result, guard

log = logging.getLogger("parley.send")


@dataclass(frozen=True)
class SendOptions:
    silent: bool = False
    # Run ahead of anything already queued.
    skip_queue: bool = False
    # Resolve the caller on the first response or chunk for the request.
    return_before_streaming: bool = False
    set_value_selected_for_message_id: str | None = None


@dataclass(eq=False)
class PendingRequest:
    generation: int
    message: MessageRequest
    source: MessageSendSource
    local_item_id: str | None
    options: SendOptions
    done: asyncio.Future[None]
    first_response: asyncio.Future[None]
    signal: asyncio.Event = field(default_factory=asyncio.Event)
    try_count: int = 0
    transport_task: asyncio.Task | None = None
    enqueued_at: float = field(default_factory=time.monotonic)


def _retrieve(fut: asyncio.Future) -> None:
    # Mark exceptions as retrieved for fire-and-forget senders.
    if not fut.cancelled():
        fut.exception()


class LoadingWatch:
    """Raise the loading counter when a request goes unanswered for a while."""

    def __init__(self, store: Store, delay_secs: float):
        self._store = store
        self._delay = delay_secs
        self._handle: asyncio.TimerHandle | None = None
        self._shown = False

    def start(self) -> None:
        self.end()
        if self._delay <= 0:
            self._show()
        else:
            self._handle = asyncio.get_running_loop().call_later(self._delay, self._show)

    def _show(self) -> None:
        self._handle = None
        self._shown = True
        self._store.dispatch(AddLoadingCounter(1))

    def end(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._shown:
            self._shown = False
            self._store.dispatch(AddLoadingCounter(-1))

    def reset(self) -> None:
        """Forget any shown indicator without touching the store (it was reset)."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._shown = False


class MessageQueue:
    def __init__(
        self,
        *,
        store: Store,
        bus: EventBus,
        transport: Transport | None,
        config: ChatConfig,
    ):
        self._store = store
        self._bus = bus
        self._transport = transport
        self._config = config
        self.instance: Any = None

        self._generation = 0
        self._seq = itertools.count()
        self._task: asyncio.Task | None = None
        self._queue: asyncio.PriorityQueue[tuple[int, int, PendingRequest]] = asyncio.PriorityQueue()
        self._pending: dict[str, PendingRequest] = {}
        self._current: PendingRequest | None = None
        self._loading = LoadingWatch(store, config.loading_indicator_delay_secs)

    @property
    def current(self) -> PendingRequest | None:
        return self._current

    def ensure_running(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop())

    def pending_count(self) -> int:
        return len(self._pending)

    async def wait_idle(self) -> None:
        """Wait until every submitted request has settled."""
        while True:
            waiting = {p.done for p in self._pending.values() if not p.done.done()}
            if not waiting:
                return
            await asyncio.wait(waiting)
            await asyncio.sleep(0)

    def submit(
        self,
        message: MessageRequest,
        source: MessageSendSource,
        local_item_id: str | None,
        options: SendOptions,
    ) -> PendingRequest:
        loop = asyncio.get_running_loop()
        pending = PendingRequest(
            generation=self._generation,
            message=message,
            source=source,
            local_item_id=local_item_id,
            options=options,
            done=loop.create_future(),
            first_response=loop.create_future(),
        )
        pending.done.add_done_callback(_retrieve)
        self._pending[message.id] = pending
        priority = 0 if options.skip_queue else 1
        self._queue.put_nowait((priority, next(self._seq), pending))
        self.ensure_running()
        return pending

    def note_response(self) -> None:
        """A response or chunk arrived for the in-flight request."""
        self._loading.end()
        current = self._current
        if current is not None and not current.first_response.done():
            current.first_response.set_result(None)

    def cancel_request(self, message_id: str, reason: str = "Message was cancelled") -> bool:
        pending = self._pending.get(message_id)
        if pending is None:
            return False
        pending.signal.set()
        if pending.transport_task is not None:
            pending.transport_task.cancel()
        self._fail(pending, MessageCancelled(reason))
        return True

    def cancel_all(self) -> None:
        """Abort the in-flight call and reject everything queued (restart)."""
        self._generation += 1
        self._loading.reset()
        for pending in list(self._pending.values()):
            pending.signal.set()
            if pending.transport_task is not None:
                pending.transport_task.cancel()
            self._settle(pending, MessageCancelled("Conversation restarted"))
        self._pending.clear()
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break

    def shutdown(self) -> None:
        task = self._task
        self._task = None
        if task and not task.done():
            task.cancel()
        self.cancel_all()

    async def _loop(self) -> None:
        try:
            while True:
                _, _, pending = await self._queue.get()

                if pending.generation != self._generation or pending.done.done():
                    continue

                self._current = pending
                try:
                    await self._run(pending)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    log.exception("MessageQueue loop error")
                    self._fail(pending, e)
                finally:
                    self._current = None
                    self._loading.end()
                    self._settle(pending, None)
        except asyncio.CancelledError:
            return

    async def _run(self, pending: PendingRequest) -> None:
        self._loading.start()

        event = await self._bus.fire(
            PreSendEvent(type=BusEventType.PRE_SEND, data=pending.message, source=pending.source)
        )
        if pending.done.done():
            return
        if event.cancel_send:
            log.info("Send of %s vetoed by a pre:send listener", pending.message.id)
            self._store.dispatch(RemoveMessages((pending.message.id,)))
            self._pending.pop(pending.message.id, None)
            return

        message = event.data if isinstance(event.data, MessageRequest) else pending.message
        if message.is_frozen:
            message = message.copy()
        message.freeze()
        pending.message = message
        self._store.dispatch(UpdateMessage(message))
        if not message.is_silent and pending.local_item_id:
            self._store.dispatch(
                UpdateLocalMessageItem(input_item_to_local_item(message, local_id=pending.local_item_id))
            )

        await self._bus.fire(MessageEvent(type=BusEventType.SEND, data=message, source=pending.source))
        await self._send_with_retries(pending)

    async def _send_with_retries(self, pending: PendingRequest) -> None:
        allow_retry = self._config.allow_retry or bool(getattr(self._transport, "allow_retry", False))
        delays = self._config.retry_delays_secs

        while True:
            if pending.done.done() or pending.generation != self._generation:
                return
            try:
                await self._call_transport(pending)
            except MessageCancelled:
                return
            except Exception as e:
                if pending.done.done():
                    return
                retryable = allow_retry and bool(getattr(e, "retryable", False))
                if retryable and pending.try_count < len(delays):
                    delay = delays[pending.try_count]
                    pending.try_count += 1
                    log.warning(
                        "Send of %s failed (%s); retry %d/%d in %.1fs",
                        pending.message.id,
                        e,
                        pending.try_count,
                        len(delays),
                        delay,
                    )
                    self._set_error_state(pending.message.id, ErrorState.RETRYING)
                    for other in self._pending.values():
                        if other is not pending:
                            self._set_error_state(other.message.id, ErrorState.WAITING)
                    await asyncio.sleep(delay)
                    continue
                self._fail(pending, e)
                return
            else:
                self._succeed(pending)
                return

    async def _call_transport(self, pending: PendingRequest) -> None:
        if self._transport is None:
            raise TransportError("No transport is configured")

        pending.signal = asyncio.Event()
        task = asyncio.ensure_future(
            self._transport(pending.message, signal=pending.signal, instance=self.instance)
        )
        pending.transport_task = task
        timeout = self._config.message_timeout_secs or None
        try:
            finished, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            pending.signal.set()
            task.cancel()
            raise
        finally:
            pending.transport_task = None

        if not finished:
            # The signal tells the transport to stop; only the wait ends here.
            pending.signal.set()
            task.add_done_callback(discard_late_result)
            raise TransportError(f"No response to {pending.message.id} within {timeout:.0f}s")
        if task.cancelled():
            raise MessageCancelled()
        task.result()

    def _set_error_state(self, message_id: str, state: ErrorState) -> None:
        message = self._store.state.messages_by_id.get(message_id)
        if message is None:
            return
        if message.history.get("error_state", ErrorState.NONE.value) != state.value:
            self._store.dispatch(SetMessageHistoryValue(message_id, "error_state", state.value))

    def _succeed(self, pending: PendingRequest) -> None:
        self._pending.pop(pending.message.id, None)
        self._set_error_state(pending.message.id, ErrorState.NONE)
        self._settle(pending, None)

    def _fail(self, pending: PendingRequest, error: BaseException) -> None:
        if pending.done.done():
            return
        self._pending.pop(pending.message.id, None)
        message = pending.message
        log.error("Message %s failed after %d attempt(s): %s", message.id, pending.try_count + 1, error)
        self._set_error_state(message.id, ErrorState.FAILED)
        if message.history.get("is_welcome_request"):
            log.error("The welcome request failed; the conversation starts without a greeting")
        elif pending.options.silent:
            local, response = create_local_message_for_inline_error(
                text("errors_single_message"), thread_id=message.thread_id
            )
            self._store.dispatch(AddLocalMessageItem(local, response.freeze()))
        self._settle(pending, error)

    @staticmethod
    def _settle(pending: PendingRequest, error: BaseException | None) -> None:
        if not pending.done.done():
            if error is None:
                pending.done.set_result(None)
            else:
                pending.done.set_exception(error)
        if not pending.first_response.done():
            pending.first_response.cancel()


class SendController:
    """Public send path: chrome side effects, hydration hand-off, queueing."""

    def __init__(
        self,
        *,
        store: Store,
        queue: MessageQueue,
        hydration: HydrationPort,
    ):
        self._store = store
        self._queue = queue
        self._hydration = hydration

    def close_home_screen_and_panel(self) -> None:
        state = self._store.state
        if state.persisted.home_screen_open:
            self._store.dispatch(SetHomeScreenOpen(False))
        if state.response_panel.is_open:
            self._store.dispatch(SetResponsePanel(False))

    async def send(
        self,
        message: MessageRequest | str,
        source: MessageSendSource = MessageSendSource.INSTANCE_SEND,
        options: SendOptions | None = None,
        *,
        ignore_hydration: bool = False,
    ) -> None:
        request = create_request_for_text(message) if isinstance(message, str) else message
        options = options or SendOptions()
        state = self._store.state
        if state.input.is_readonly and source is MessageSendSource.MESSAGE_INPUT:
            raise ReadOnlyInputError()

        self.close_home_screen_and_panel()

        if self._hydration.started or ignore_hydration:
            if not ignore_hydration:
                await self._hydration.wait()
            await self.do_send(request, source, options)
        else:
            await self._hydration.hydrate(request, source, options)

    async def send_safely(
        self,
        message: MessageRequest | str,
        source: MessageSendSource = MessageSendSource.INSTANCE_SEND,
        options: SendOptions | None = None,
        *,
        ignore_hydration: bool = False,
    ) -> None:
        await guard(
            self.send(message, source, options, ignore_hydration=ignore_hydration),
            context="send",
            logger=log,
        )

    async def do_send(
        self,
        request: MessageRequest,
        source: MessageSendSource,
        options: SendOptions,
    ) -> None:
        if request.is_frozen:
            request = request.copy()
        if not request.is_event and request.text == "":
            # An empty request asks the assistant for its greeting.
            request.history.setdefault("is_welcome_request", True)
        if options.silent or request.history.get("is_welcome_request"):
            request.history["silent"] = True

        local = input_item_to_local_item(request)
        if request.is_silent:
            self._store.dispatch(AddMessage(request))
        else:
            self._store.dispatch(AddLocalMessageItem(local, request))
        if options.set_value_selected_for_message_id:
            self._store.dispatch(
                SetMessageHistoryValue(options.set_value_selected_for_message_id, "selected_request_id", request.id)
            )
        request.freeze()

        pending = self._queue.submit(request.copy(), source, local.id, options)
        if options.return_before_streaming:
            await asyncio.wait({pending.done, pending.first_response}, return_when=asyncio.FIRST_COMPLETED)
            if pending.done.done():
                pending.done.result()
            return
        await pending.done

    def resend(self, message: MessageRequest, local_item_id: str | None) -> asyncio.Future[None]:
        """Silently re-deliver a request whose response never arrived."""
        options = SendOptions(silent=True, skip_queue=True)
        return self._queue.submit(message.copy(), MessageSendSource.HYDRATE_RESEND, local_item_id, options).done
