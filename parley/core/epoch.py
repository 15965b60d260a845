"""Restart epochs.

Every restart bumps the session epoch. A continuation captures a token before
it suspends and re-validates it at its single re-entry point: an expired
token means the work belongs to a conversation that no longer exists.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import TypeVar

from parley.errors import EpochExpired

log = logging.getLogger("parley.epoch")

T = TypeVar("T")


class SessionEpoch:
    def __init__(self) -> None:
        self._value = 0

    @property
    def value(self) -> int:
        return self._value

    def bump(self) -> int:
        self._value += 1
        log.debug("Session epoch is now %d", self._value)
        return self._value

    def capture(self) -> EpochToken:
        return EpochToken(self, self._value)


@dataclass(frozen=True)
class EpochToken:
    epoch: SessionEpoch
    value: int

    @property
    def expired(self) -> bool:
        return self.epoch.value != self.value

    def check(self) -> None:
        if self.expired:
            raise EpochExpired(self.value, self.epoch.value)

    async def resume(self, aw: Awaitable[T]) -> T:
        """Await ``aw`` and raise ``EpochExpired`` if a restart happened meanwhile."""
        result = await aw
        self.check()
        return result
