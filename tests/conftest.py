"""Shared fixtures: engine factory, recording transport and an idle engine."""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio

from helpers import RecordingTransport, fast_config
from parley.config import ChatConfig
from parley.engine import ChatEngine

_DEFAULT = object()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest_asyncio.fixture
async def make_engine(transport):
    default_transport = transport
    engines: list[ChatEngine] = []

    def factory(*, transport: Any = _DEFAULT, config: ChatConfig | None = None, **kwargs: Any) -> ChatEngine:
        engine = ChatEngine(
            transport=default_transport if transport is _DEFAULT else transport,
            config=config or fast_config(),
            **kwargs,
        )
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        await engine.destroy()


@pytest_asyncio.fixture
async def engine(make_engine):
    """A hydrated engine with no welcome message and no agent provider."""
    engine = make_engine(config=fast_config(skip_welcome=True))
    await engine.lifecycle.hydrate()
    await engine.wait_idle()
    return engine
