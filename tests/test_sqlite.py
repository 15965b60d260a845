"""Tests for the sqlite history store and persisted state."""

from __future__ import annotations

import pytest

from helpers import fast_config, transcript_texts
from parley.adapters.sqlite import SQLiteHistoryStore, SQLitePersistence, connect_db
from parley.core.models import MessageRequest, MessageResponse, ViewState, create_request_for_text, create_response_for_text


@pytest.fixture
def conn():
    conn = connect_db()
    yield conn
    conn.close()


@pytest.fixture
def history(conn):
    return SQLiteHistoryStore(conn)


class TestHistoryStore:
    def test_record_and_load(self, history):
        request = create_request_for_text("hi")
        response = create_response_for_text("hello")
        history.record(request)
        history.record(response)

        items = history.load_items()

        assert [type(i.message) for i in items] == [MessageRequest, MessageResponse]
        assert items[0].message.id == request.id
        assert items[0].message.text == "hi"
        assert items[1].time

    def test_rerecording_keeps_the_position(self, history):
        first = create_request_for_text("first")
        history.record(first)
        history.record(create_request_for_text("second"))

        first.history["error_state"] = "failed"
        history.record(first)

        items = history.load_items()
        assert [i.message.text for i in items] == ["first", "second"]
        assert items[0].message.history["error_state"] == "failed"

    def test_limit_keeps_the_most_recent(self, history):
        for word in ("a", "b", "c", "d"):
            history.record(create_request_for_text(word))

        assert [i.message.text for i in history.load_items(limit=2)] == ["c", "d"]

    def test_conversations_are_separate(self, conn, history):
        other = SQLiteHistoryStore(conn, conversation_id="other")
        history.record(create_request_for_text("mine"))
        other.record(create_request_for_text("theirs"))

        history.clear()

        assert history.load_items() == []
        assert [i.message.text for i in other.load_items()] == ["theirs"]

    def test_unreadable_rows_are_skipped(self, conn, history):
        conn.execute(
            "INSERT INTO chat_messages (conversation_id, message_id, kind, payload, created_at) VALUES (?, ?, ?, ?, ?)",
            ("default", "broken", "response", "{truncated", "2026-01-01T00:00:00Z"),
        )
        history.record(create_request_for_text("fine"))

        assert [i.message.text for i in history.load_items()] == ["fine"]

    @pytest.mark.asyncio
    async def test_empty_store_loads_nothing(self, history):
        assert await history(None) is None


class TestEngineWiring:
    @pytest.mark.asyncio
    async def test_records_the_exchange_and_replays_it(self, make_engine, transport, history):
        engine = make_engine(config=fast_config(skip_welcome=True), history_loader=history)
        history.attach(engine)
        await engine.lifecycle.hydrate()
        await engine.send("hi")
        await engine.wait_idle()

        assert [type(i.message) for i in history.load_items()] == [MessageRequest, MessageResponse]

        later = make_engine(config=fast_config(skip_welcome=True), history_loader=history)
        await later.lifecycle.hydrate()
        await later.wait_idle()

        assert transcript_texts(later) == ["hi", "You said: hi"]
        assert transport.texts == ["hi"]

    @pytest.mark.asyncio
    async def test_restart_clears_but_clear_does_not(self, engine, history):
        history.attach(engine)
        await engine.send("hi")
        await engine.wait_idle()

        await engine.messaging.clear_conversation()
        assert len(history.load_items()) == 2

        await engine.messaging.restart_conversation()
        assert history.load_items() == []

    @pytest.mark.asyncio
    async def test_detach(self, engine, history):
        history.attach(engine)
        history.detach(engine)

        await engine.send("hi")
        await engine.wait_idle()

        assert history.load_items() == []


class TestPersistence:
    def test_nothing_saved_yet(self, conn):
        assert SQLitePersistence(conn).load() is None

    def test_save_and_load(self, conn):
        store = SQLitePersistence(conn)
        store.save({"home_screen_open": True})
        store.save({"home_screen_open": False})

        assert store.load() == {"home_screen_open": False}

    @pytest.mark.asyncio
    async def test_view_survives_a_new_engine(self, make_engine, tmp_path):
        conn = connect_db(tmp_path / "parley.db")
        try:
            engine = make_engine(config=fast_config(skip_welcome=True), persistence=SQLitePersistence(conn))
            await engine.change_view("main_window", try_hydrate=False)

            later = make_engine(config=fast_config(skip_welcome=True), persistence=SQLitePersistence(conn))
            assert later.state.persisted.view_state == ViewState.only("main_window")
        finally:
            conn.close()
