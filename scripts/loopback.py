#!/usr/bin/env python3
"""Loopback driver for the parley chat engine.

Opens a session against the echo transport (or the HTTP backend configured
through PARLEY_HTTP_URL), sends each message given on the command line or
read from stdin, and prints the assistant's replies to stdout.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Iterable

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from parley.adapters import (
    EchoTransport,
    HTTPTransport,
    SQLiteHistoryStore,
    SQLitePersistence,
    connect_db,
    xmpp_provider_factory,
)
from parley.config import get_chat_config, load_env
from parley.core.events import AgentMessageEvent, BusEventType, MessageEvent
from parley.core.models import MessageResponse
from parley.engine import ChatEngine

log = logging.getLogger("parley.loopback")


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("slixmpp").setLevel(logging.INFO if verbose else logging.WARNING)
    logging.getLogger("aiohttp").setLevel(level)


def _parse_args(argv: Iterable[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Parley chat engine loopback")
    parser.add_argument("messages", nargs="*", help="Messages to send; stdin is read when none are given")
    parser.add_argument("--echo", action="store_true", help="Use the echo transport even if PARLEY_HTTP_URL is set")
    parser.add_argument("--delay", type=float, default=0.05, help="Echo delay between streamed words")
    parser.add_argument("--db", type=Path, default=None, help="sqlite file for history and session state")
    parser.add_argument("--skip-welcome", action="store_true")
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(list(argv))


def _print_response(event: MessageEvent, instance: ChatEngine) -> None:
    message = event.data
    if not isinstance(message, MessageResponse):
        return
    for item in message.items:
        text = item.get("text")
        if text:
            print(f"[assistant] {text}")
        elif item.get("response_type"):
            print(f"[assistant] <{item['response_type']}>")


def _print_agent_message(event: AgentMessageEvent, instance: ChatEngine) -> None:
    if not isinstance(event.data, MessageResponse):
        return
    name = event.agent_profile.nickname if event.agent_profile and event.agent_profile.nickname else "agent"
    for item in event.data.items:
        if item.get("text"):
            print(f"[{name}] {item['text']}")


async def _read_lines() -> list[str]:
    lines = await asyncio.to_thread(sys.stdin.readlines)
    return [line.strip() for line in lines if line.strip()]


async def run(args: argparse.Namespace) -> int:
    config = get_chat_config()
    if args.skip_welcome:
        config = replace(config, skip_welcome=True)

    if config.http is not None and not args.echo:
        transport = HTTPTransport(config.http)
        log.info("Using HTTP transport at %s", config.http.url)
    else:
        transport = EchoTransport(delay_secs=args.delay)
        log.info("Using echo transport")

    conn = history = persistence = None
    if args.db is not None:
        conn = connect_db(args.db)
        history = SQLiteHistoryStore(conn)
        persistence = SQLitePersistence(conn)

    engine = ChatEngine(
        transport=transport,
        config=config,
        history_loader=history,
        agent_provider_factory=xmpp_provider_factory(config.xmpp) if config.xmpp else None,
        persistence=persistence,
    )
    if history is not None:
        history.attach(engine)
    engine.on(BusEventType.RECEIVE, _print_response)
    engine.on(BusEventType.AGENT_RECEIVE, _print_agent_message)

    try:
        await engine.open()
        await engine.wait_idle()

        messages = list(args.messages) or await _read_lines()
        for text in messages:
            print(f"[you] {text}")
            await engine.send(text)
            await engine.wait_idle()
        return 0
    finally:
        await engine.destroy()
        if isinstance(transport, HTTPTransport):
            await transport.close()
        if conn is not None:
            conn.close()


def main(argv: Iterable[str]) -> int:
    args = _parse_args(argv)
    _configure_logging(args.verbose)
    load_env()
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
