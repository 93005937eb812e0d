from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from pubparts.services.rate_limit_store import RateLimitStore


@dataclass(slots=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0


class RateLimiter:
    """Fixed cooldown per submitter.

    ``check`` only reads; the window starts when ``record`` is called after a
    submission has produced a changeset, so failed attempts never consume it.
    """

    def __init__(
        self,
        store: RateLimitStore,
        *,
        window_ms: int = 60_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.window_ms = window_ms
        self.clock = clock

    async def check(self, identity: str) -> RateLimitDecision:
        last_accepted = await self.store.get_last_accepted(identity)
        if last_accepted is None:
            return RateLimitDecision(allowed=True)

        elapsed_ms = (self.clock() - last_accepted) * 1000.0
        if elapsed_ms < self.window_ms:
            remaining_seconds = math.ceil((self.window_ms - elapsed_ms) / 1000.0)
            return RateLimitDecision(allowed=False, retry_after_seconds=max(1, remaining_seconds))
        return RateLimitDecision(allowed=True)

    async def record(self, identity: str) -> None:
        await self.store.set_last_accepted(identity, self.clock())
