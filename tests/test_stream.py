"""Tests for streamed chunk assembly."""

from __future__ import annotations

import asyncio

import pytest

from helpers import transcript_texts, until
from parley.core.events import BusEventType
from parley.errors import StreamAssemblyError


def partial(text, *, response_id="r1", stream_id="1", cancellable=False, **extra):
    item = {"response_type": "text", "text": text, "streaming_metadata": {"id": stream_id}}
    if cancellable:
        item["streaming_metadata"]["cancellable"] = True
    return {"partial_item": item, "streaming_metadata": {"response_id": response_id}, **extra}


def complete(text, *, response_id="r1", stream_id="1"):
    return {
        "complete_item": {"response_type": "text", "text": text, "streaming_metadata": {"id": stream_id}},
        "streaming_metadata": {"response_id": response_id},
    }


def final(text, *, response_id="r1", stream_id="1"):
    return {
        "final_response": {
            "id": response_id,
            "output": {
                "generic": [
                    {"response_type": "text", "text": text, "streaming_metadata": {"id": stream_id}}
                ]
            },
        }
    }


class TestAssembly:
    @pytest.mark.asyncio
    async def test_partial_complete_final(self, engine):
        messaging = engine.messaging

        await messaging.add_message_chunk(partial("Hel"))
        await messaging.add_message_chunk(partial("lo"))
        item = engine.state.items_by_id["r1-1"]
        assert [c["text"] for c in item.ui_state.streaming_state.chunks] == ["Hel", "lo"]
        assert not item.ui_state.streaming_state.is_done

        await messaging.add_message_chunk(complete("Hello"))
        item = engine.state.items_by_id["r1-1"]
        assert item.item["text"] == "Hello"
        assert item.ui_state.streaming_state.is_done

        await messaging.add_message_chunk(final("Hello"))
        await engine.wait_idle()

        item = engine.state.items_by_id["r1-1"]
        assert item.ui_state.streaming_state is None
        assert transcript_texts(engine) == ["Hello"]
        assert engine.state.messages_by_id["r1"].items[0]["text"] == "Hello"

    @pytest.mark.asyncio
    async def test_two_items_keep_their_order(self, engine):
        await engine.messaging.add_message_chunk(complete("first", stream_id="a"))
        await engine.messaging.add_message_chunk(complete("second", stream_id="b"))

        assert transcript_texts(engine) == ["first", "second"]

    @pytest.mark.asyncio
    async def test_message_options_are_merged(self, engine):
        await engine.messaging.add_message_chunk(
            partial("x", partial_response={"message_options": {"feedback": {"enabled": True}}})
        )
        history = engine.state.messages_by_id["r1"].history
        assert history["message_options"] == {"feedback": {"enabled": True}}


class TestRejectedChunks:
    @pytest.mark.asyncio
    async def test_first_chunk_needs_a_response_type(self, engine):
        chunk = partial("x")
        del chunk["partial_item"]["response_type"]

        with pytest.raises(StreamAssemblyError):
            await engine.messaging.add_message_chunk(chunk)

    @pytest.mark.asyncio
    async def test_partial_response_only_carries_message_options(self, engine):
        with pytest.raises(StreamAssemblyError):
            await engine.messaging.add_message_chunk(partial("x", partial_response={"output": {}}))

    @pytest.mark.asyncio
    async def test_chunk_without_response_id(self, engine):
        chunk = partial("x")
        del chunk["streaming_metadata"]

        with pytest.raises(StreamAssemblyError):
            await engine.messaging.add_message_chunk(chunk)

    @pytest.mark.asyncio
    async def test_stream_continues_after_a_rejected_chunk(self, engine):
        with pytest.raises(StreamAssemblyError):
            await engine.messaging.add_message_chunk({"bogus": True})

        await engine.messaging.add_message_chunk(complete("still here"))
        assert transcript_texts(engine) == ["still here"]


class TestStopStreaming:
    @pytest.mark.asyncio
    async def test_cancellable_stream_shows_the_stop_button_until_complete(self, engine):
        await engine.messaging.add_message_chunk(partial("x", cancellable=True))
        assert engine.state.stop_streaming.is_visible

        await engine.messaging.add_message_chunk(complete("xy"))
        assert not engine.state.stop_streaming.is_visible

    @pytest.mark.asyncio
    async def test_plain_stream_never_shows_it(self, engine):
        await engine.messaging.add_message_chunk(partial("x"))
        assert not engine.state.stop_streaming.is_visible


class TestCustomChunks:
    @pytest.mark.asyncio
    async def test_user_defined_chunk_gets_a_host(self, engine):
        events = []
        engine.on(BusEventType.CHUNK_USER_DEFINED_RESPONSE, lambda event, instance: events.append(event))

        await engine.messaging.add_message_chunk(
            {
                "partial_item": {"response_type": "user_defined", "streaming_metadata": {"id": "9"}},
                "streaming_metadata": {"response_id": "r1"},
            }
        )

        assert events[0].host.item_id == "r1-9"
        assert engine.hosts.get("r1-9") is events[0].host

    @pytest.mark.asyncio
    async def test_chunks_queued_before_a_restart_are_dropped(self, engine):
        gate = asyncio.Event()
        entered = []

        async def slow_host(event, instance):
            entered.append(event)
            await gate.wait()

        engine.on(BusEventType.CHUNK_USER_DEFINED_RESPONSE, slow_host)
        first = asyncio.ensure_future(
            engine.messaging.add_message_chunk(
                {
                    "partial_item": {"response_type": "user_defined", "streaming_metadata": {"id": "1"}},
                    "streaming_metadata": {"response_id": "r1"},
                }
            )
        )
        await until(lambda: entered)
        second = asyncio.ensure_future(engine.messaging.add_message_chunk(complete("late", response_id="r2")))
        await asyncio.sleep(0)

        engine.epoch.bump()
        gate.set()
        await first
        await second

        assert "r2-1" not in engine.state.items_by_id
