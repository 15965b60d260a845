"""sqlite3-backed conversation history and persisted session state.

Provides:
- connect_db: connection with the pragmas both stores expect
- SQLiteHistoryStore: records sent/received messages and serves them back
  as the engine's ``HistoryLoader``
- SQLitePersistence: JSON blob store for ``PersistedState``
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from parley.core.events import AgentMessageEvent, BusEvent, BusEventType, MessageEvent
from parley.core.models import BaseMessage, MessageRequest, message_from_dict
from parley.core.ports import HistoryItem

log = logging.getLogger("parley.sqlite")

DEFAULT_CONVERSATION = "default"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def connect_db(path: str | Path = ":memory:") -> sqlite3.Connection:
    conn = sqlite3.connect(str(path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    if str(path) != ":memory:":
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.OperationalError as e:
            log.warning("Could not enable WAL mode: %s", e)
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


class SQLiteHistoryStore:
    """History table keyed by conversation.

    Call ``attach(engine)`` to record every sent and received message (the
    agent exchange included) and pass the store itself as ``history_loader``
    to replay it on hydration. A restart clears the conversation.
    """

    def __init__(self, conn: sqlite3.Connection, conversation_id: str = DEFAULT_CONVERSATION):
        self.conn = conn
        self.conversation_id = conversation_id
        self._init_schema()

    def _init_schema(self) -> None:
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS chat_messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                message_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE (conversation_id, message_id)
            )
            """
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_chat_messages_conversation ON chat_messages(conversation_id, id)"
        )
        self.conn.commit()

    def record(self, message: BaseMessage) -> None:
        """Insert a message, or replace the stored copy of the same id.

        A replaced message keeps its original position and time.
        """
        kind = "request" if isinstance(message, MessageRequest) else "response"
        payload = json.dumps(message.to_dict())
        self.conn.execute(
            """INSERT INTO chat_messages (conversation_id, message_id, kind, payload, created_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT (conversation_id, message_id) DO UPDATE SET payload = excluded.payload""",
            (self.conversation_id, message.id, kind, payload, _now()),
        )
        self.conn.commit()

    def load_items(self, limit: int | None = None) -> list[HistoryItem]:
        if limit is None:
            rows = self.conn.execute(
                "SELECT * FROM chat_messages WHERE conversation_id = ? ORDER BY id",
                (self.conversation_id,),
            ).fetchall()
        else:
            # Most recent ``limit`` rows, still returned oldest first.
            rows = self.conn.execute(
                """SELECT * FROM (
                       SELECT * FROM chat_messages WHERE conversation_id = ?
                       ORDER BY id DESC LIMIT ?
                   ) ORDER BY id""",
                (self.conversation_id, limit),
            ).fetchall()

        items: list[HistoryItem] = []
        for row in rows:
            try:
                data = json.loads(row["payload"])
            except json.JSONDecodeError:
                log.warning("Skipping unreadable history row %s", row["id"])
                continue
            items.append(HistoryItem(message=message_from_dict(data), time=row["created_at"]))
        return items

    def clear(self) -> None:
        self.conn.execute("DELETE FROM chat_messages WHERE conversation_id = ?", (self.conversation_id,))
        self.conn.commit()

    async def __call__(self, instance: Any) -> list[HistoryItem] | None:
        items = self.load_items()
        log.debug("Loaded %d history items for %s", len(items), self.conversation_id)
        return items or None

    # -- Engine wiring -----------------------------------------------------------

    def attach(self, engine: Any) -> SQLiteHistoryStore:
        engine.on(BusEventType.SEND, self._on_message)
        engine.on(BusEventType.RECEIVE, self._on_message)
        engine.on(BusEventType.AGENT_SEND, self._on_message)
        engine.on(BusEventType.AGENT_RECEIVE, self._on_message)
        engine.on(BusEventType.RESTART_CONVERSATION, self._on_restart)
        return self

    def detach(self, engine: Any) -> None:
        engine.off(BusEventType.SEND, self._on_message)
        engine.off(BusEventType.RECEIVE, self._on_message)
        engine.off(BusEventType.AGENT_SEND, self._on_message)
        engine.off(BusEventType.AGENT_RECEIVE, self._on_message)
        engine.off(BusEventType.RESTART_CONVERSATION, self._on_restart)

    def _on_message(self, event: BusEvent, instance: Any) -> None:
        if isinstance(event, (MessageEvent, AgentMessageEvent)):
            self.record(event.data)

    def _on_restart(self, event: BusEvent, instance: Any) -> None:
        log.info("Conversation %s restarted; clearing stored history", self.conversation_id)
        self.clear()


class SQLitePersistence:
    """Single-row JSON store implementing ``PersistencePort``."""

    def __init__(self, conn: sqlite3.Connection, key: str = DEFAULT_CONVERSATION):
        self.conn = conn
        self.key = key
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS persisted_state (
                key TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        self.conn.commit()

    def load(self) -> dict[str, Any] | None:
        row = self.conn.execute("SELECT data FROM persisted_state WHERE key = ?", (self.key,)).fetchone()
        if not row:
            return None
        data = json.loads(row["data"])
        return data if isinstance(data, dict) else None

    def save(self, data: Mapping[str, Any]) -> None:
        self.conn.execute(
            """INSERT INTO persisted_state (key, data, updated_at) VALUES (?, ?, ?)
               ON CONFLICT (key) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at""",
            (self.key, json.dumps(dict(data)), _now()),
        )
        self.conn.commit()
