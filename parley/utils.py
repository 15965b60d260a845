"""Shared helpers: ids, immutability, timeout races and error boundaries."""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, Awaitable, TypeVar

T = TypeVar("T")

_log = logging.getLogger("parley.utils")


def _parse_bool(value: object, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def new_id() -> str:
    return str(uuid.uuid4())


def deep_freeze(value: Any) -> Any:
    """Return a read-only deep copy of a JSON-like value."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: deep_freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(deep_freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Return a mutable deep copy of a (possibly frozen) JSON-like value."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(v) for v in value]
    return value


def deep_merge(base: Mapping, patch: Mapping) -> dict:
    out = thaw(base)
    for key, value in patch.items():
        current = out.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            out[key] = deep_merge(current, value)
        else:
            out[key] = thaw(value)
    return out


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def discard_late_result(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        _log.debug("Late result after timeout discarded: %s: %s", type(exc).__name__, exc)


async def resolve_or_timeout(aw: Awaitable[T], timeout: float | None) -> T:
    """Wait for ``aw`` for at most ``timeout`` seconds.

    On timeout ``asyncio.TimeoutError`` is raised but the operation itself is
    left running; its eventual outcome is dropped.
    """
    fut = asyncio.ensure_future(aw)
    if not timeout or timeout <= 0:
        return await fut
    try:
        return await asyncio.wait_for(asyncio.shield(fut), timeout)
    except asyncio.TimeoutError:
        fut.add_done_callback(discard_late_result)
        raise


async def guard(
    coro: Awaitable[T],
    *,
    context: str | None = None,
    logger: logging.Logger | None = None,
) -> T | None:
    """Run a coroutine with a single error boundary.

    Cancellation propagates; anything else is logged and swallowed.
    """
    try:
        return await coro
    except asyncio.CancelledError:
        raise
    except Exception:
        log = logger or _log
        if context:
            log.exception("Unhandled error (%s)", context)
        else:
            log.exception("Unhandled error")
        return None


class BackgroundTasks:
    """Fire-and-forget tasks owned by one component.

    Failures are logged through ``guard``; strong references keep the tasks
    alive until they finish, and ``wait_idle`` lets owners (and tests) settle
    everything that is still running.
    """

    def __init__(self, logger: logging.Logger | None = None):
        self._log = logger or _log
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn_guarded(self, coro: Awaitable[Any], *, context: str | None = None) -> asyncio.Task:
        task = asyncio.ensure_future(guard(coro, context=context, logger=self._log))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
