"""Tests for the send path and the single-flight message queue."""

from __future__ import annotations

import asyncio

import pytest

from helpers import fast_config, find_request, transcript_texts, until
from parley.core.events import BusEventType
from parley.core.models import MessageSendSource
from parley.core.send import SendOptions
from parley.core.store.actions import SetInputReadonly
from parley.core.strings import text
from parley.errors import MessageCancelled, ReadOnlyInputError, TransportError


async def hydrated(make_engine, **kwargs):
    config = kwargs.pop("config", None) or fast_config(skip_welcome=True)
    engine = make_engine(config=config, **kwargs)
    await engine.lifecycle.hydrate()
    await engine.wait_idle()
    return engine


class TestSend:
    @pytest.mark.asyncio
    async def test_round_trip(self, engine, transport):
        await engine.send("hi")
        await engine.wait_idle()

        assert transport.texts == ["hi"]
        assert transcript_texts(engine) == ["hi", "You said: hi"]
        assert engine.state.persisted.has_sent_non_welcome_message

    @pytest.mark.asyncio
    async def test_one_request_in_flight_at_a_time(self, engine, transport):
        transport.gate = asyncio.Event()
        first = asyncio.ensure_future(engine.send("one"))
        second = asyncio.ensure_future(engine.send("two"))

        await until(lambda: transport.requests)
        await asyncio.sleep(0.01)
        assert transport.texts == ["one"]

        transport.gate.set()
        await asyncio.gather(first, second)
        assert transport.texts == ["one", "two"]

    @pytest.mark.asyncio
    async def test_skip_queue_runs_ahead_of_queued_requests(self, engine, transport):
        transport.gate = asyncio.Event()
        sends = [asyncio.ensure_future(engine.send("one"))]
        await until(lambda: transport.requests)
        sends.append(asyncio.ensure_future(engine.send("two")))
        sends.append(asyncio.ensure_future(engine.send("three", SendOptions(skip_queue=True))))
        await until(lambda: engine.queue.pending_count() == 3)

        transport.gate.set()
        await asyncio.gather(*sends)

        assert transport.texts == ["one", "three", "two"]

    @pytest.mark.asyncio
    async def test_read_only_input_rejects_typed_messages(self, engine, transport):
        engine.store.dispatch(SetInputReadonly(True))

        with pytest.raises(ReadOnlyInputError):
            await engine.send("typed", source=MessageSendSource.MESSAGE_INPUT)
        await engine.send("from code")

        assert transport.texts == ["from code"]

    @pytest.mark.asyncio
    async def test_missing_transport(self, make_engine):
        engine = await hydrated(make_engine, transport=None)

        with pytest.raises(TransportError, match="No transport"):
            await engine.send("hi")

    @pytest.mark.asyncio
    async def test_return_before_streaming(self, make_engine):
        gate = asyncio.Event()

        async def streaming(request, *, signal, instance):
            await instance.messaging.add_message_chunk(
                {
                    "partial_item": {"response_type": "text", "text": "...", "streaming_metadata": {"id": "1"}},
                    "streaming_metadata": {"response_id": "answer"},
                }
            )
            await gate.wait()

        engine = await hydrated(make_engine, transport=streaming)
        await asyncio.wait_for(engine.send("hi", SendOptions(return_before_streaming=True)), 1)

        assert engine.queue.pending_count() == 1
        gate.set()
        await engine.wait_idle()
        assert engine.queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_sending_closes_the_home_screen_first(self, make_engine, transport):
        engine = await hydrated(make_engine, config=fast_config(home_screen_enabled=True))
        assert engine.state.persisted.home_screen_open
        seen = []
        engine.on(BusEventType.PRE_SEND, lambda event, instance: seen.append(instance.state.persisted.home_screen_open))

        await engine.send("hi")

        assert seen == [False]


class TestSendEvents:
    @pytest.mark.asyncio
    async def test_pre_send_veto_removes_the_message(self, engine, transport):
        def veto(event, instance):
            event.cancel_send = True

        engine.on(BusEventType.PRE_SEND, veto)
        await engine.send("secret")

        assert transport.requests == []
        assert transcript_texts(engine) == []

    @pytest.mark.asyncio
    async def test_pre_send_can_rewrite_the_request(self, engine, transport):
        def rewrite(event, instance):
            event.data.input["text"] = "rewritten"

        engine.on(BusEventType.PRE_SEND, rewrite)
        await engine.send("original")
        await engine.wait_idle()

        assert transport.texts == ["rewritten"]
        assert transcript_texts(engine) == ["rewritten", "You said: rewritten"]

    @pytest.mark.asyncio
    async def test_send_event_carries_the_frozen_request(self, engine):
        seen = []
        engine.on(BusEventType.SEND, lambda event, instance: seen.append(event.data))

        await engine.send("hi")

        assert seen[0].is_frozen and seen[0].text == "hi"


class TestFailures:
    @pytest.mark.asyncio
    async def test_retryable_error_is_retried(self, make_engine, transport):
        engine = await hydrated(make_engine, config=fast_config(skip_welcome=True, allow_retry=True))
        transport.errors = [TransportError("busy", retryable=True)]

        await engine.send("hi")

        assert transport.texts == ["hi", "hi"]
        assert find_request(engine, "hi").history["error_state"] == "none"

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, make_engine, transport):
        engine = await hydrated(make_engine, config=fast_config(skip_welcome=True, allow_retry=True))
        transport.errors = [TransportError("busy", retryable=True) for _ in range(3)]

        with pytest.raises(TransportError, match="busy"):
            await engine.send("hi")

        assert len(transport.requests) == 3
        assert find_request(engine, "hi").history["error_state"] == "failed"
        assert transcript_texts(engine) == ["hi"]

    @pytest.mark.asyncio
    async def test_no_retry_unless_allowed(self, engine, transport):
        transport.errors = [TransportError("busy", retryable=True)]

        with pytest.raises(TransportError):
            await engine.send("hi")
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_at_once(self, make_engine, transport):
        engine = await hydrated(make_engine, config=fast_config(skip_welcome=True, allow_retry=True))
        transport.errors = [TransportError("bad request")]

        with pytest.raises(TransportError):
            await engine.send("hi")
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_timeout_aborts_the_transport(self, make_engine, transport):
        engine = await hydrated(make_engine, config=fast_config(skip_welcome=True, message_timeout_secs=0.05))
        transport.gate = asyncio.Event()

        with pytest.raises(TransportError, match="No response"):
            await engine.send("hi")
        assert transport.signals[0].is_set()

    @pytest.mark.asyncio
    async def test_timeout_signals_but_does_not_cancel_the_transport(self, make_engine):
        class SignalAware:
            allow_retry = False

            def __init__(self):
                self.stopped = asyncio.Event()
                self.cancelled = False

            async def __call__(self, request, *, signal, instance):
                try:
                    await signal.wait()
                except asyncio.CancelledError:
                    self.cancelled = True
                    raise
                self.stopped.set()

        slow = SignalAware()
        engine = await hydrated(
            make_engine, transport=slow, config=fast_config(skip_welcome=True, message_timeout_secs=0.05)
        )

        with pytest.raises(TransportError, match="No response"):
            await engine.send("hi")
        await asyncio.wait_for(slow.stopped.wait(), 1)

        assert not slow.cancelled
        assert engine.queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_silent_failure_shows_an_inline_error(self, engine, transport):
        transport.errors = [TransportError("down")]

        with pytest.raises(TransportError):
            await engine.send("hidden", SendOptions(silent=True))

        assert transcript_texts(engine) == [text("errors_single_message")]

    @pytest.mark.asyncio
    async def test_restart_rejects_in_flight_and_queued_requests(self, engine, transport):
        transport.gate = asyncio.Event()
        first = asyncio.ensure_future(engine.send("one"))
        await until(lambda: transport.requests)
        second = asyncio.ensure_future(engine.send("two"))
        await until(lambda: engine.queue.pending_count() == 2)

        await engine.messaging.restart_conversation()

        with pytest.raises(MessageCancelled):
            await first
        with pytest.raises(MessageCancelled):
            await second
        assert transport.signals[0].is_set()
        assert transport.texts == ["one"]


class TestLoadingIndicator:
    @pytest.mark.asyncio
    async def test_shown_while_waiting_and_cleared_on_response(self, make_engine, transport):
        engine = await hydrated(
            make_engine, config=fast_config(skip_welcome=True, loading_indicator_delay_secs=0)
        )
        transport.gate = asyncio.Event()
        pending = asyncio.ensure_future(engine.send("hi"))

        await until(lambda: transport.requests)
        assert engine.state.is_loading

        transport.gate.set()
        await pending
        assert not engine.state.is_loading

    @pytest.mark.asyncio
    async def test_not_shown_before_the_delay(self, engine, transport):
        transport.gate = asyncio.Event()
        pending = asyncio.ensure_future(engine.send("hi"))

        await until(lambda: transport.requests)
        assert not engine.state.is_loading
        transport.gate.set()
        await pending


class TestWelcome:
    @pytest.mark.asyncio
    async def test_hydration_asks_for_the_welcome(self, make_engine, transport):
        engine = make_engine()
        await engine.lifecycle.hydrate()
        await engine.wait_idle()

        assert transport.texts == [""]
        assert transcript_texts(engine) == ["Welcome"]
        assert engine.state.transcript()[0].ui_state.is_welcome_response
        assert not engine.state.persisted.has_sent_non_welcome_message

    @pytest.mark.asyncio
    async def test_empty_send_asks_for_the_welcome(self, engine, transport):
        await engine.send("")
        await engine.wait_idle()

        request = find_request(engine, "")
        assert request.history["is_welcome_request"]
        assert request.is_silent
        assert transport.texts == [""]
        assert transcript_texts(engine) == ["Welcome"]
        assert engine.state.transcript()[0].ui_state.is_welcome_response
        assert not engine.state.persisted.has_sent_non_welcome_message

    @pytest.mark.asyncio
    async def test_first_send_replaces_the_welcome(self, make_engine, transport):
        engine = make_engine()
        ready = []
        engine.on(BusEventType.CHAT_READY, lambda event, instance: ready.append(event))

        await engine.send("hi")
        await engine.wait_idle()

        assert transport.texts == ["hi"]
        assert len(ready) == 1
        assert engine.state.is_hydrated

    @pytest.mark.asyncio
    async def test_failed_welcome_still_hydrates(self, make_engine, transport):
        transport.errors = [TransportError("down")]
        engine = make_engine()

        await engine.lifecycle.hydrate()
        await engine.wait_idle()

        assert engine.state.is_hydrated
        assert transcript_texts(engine) == []
