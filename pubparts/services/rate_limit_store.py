from __future__ import annotations

from datetime import datetime, timezone
from functools import lru_cache
from typing import Protocol

import asyncpg  # type: ignore[import-untyped]

from pubparts.core.config import get_settings


class RateLimitStoreError(Exception):
    """Base rate limit store error."""


class RateLimitStoreUnavailableError(RateLimitStoreError):
    """Raised when the backing store cannot be reached."""


class RateLimitStore(Protocol):
    async def get_last_accepted(self, identity: str) -> float | None: ...

    async def set_last_accepted(self, identity: str, accepted_at: float) -> None: ...

    async def close(self) -> None: ...


class InMemoryRateLimitStore:
    """Process-local store for development and tests."""

    def __init__(self) -> None:
        self.entries: dict[str, float] = {}

    async def get_last_accepted(self, identity: str) -> float | None:
        return self.entries.get(identity)

    async def set_last_accepted(self, identity: str, accepted_at: float) -> None:
        self.entries[identity] = accepted_at

    async def close(self) -> None:
        return None


class PostgresRateLimitStore:
    def __init__(self, database_url: str, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_last_accepted(self, identity: str) -> float | None:
        pool = await self._get_pool()
        try:
            value = await pool.fetchval(
                "select last_accepted_at from submission_rate_limits where identity = $1",
                identity,
            )
        except (OSError, asyncpg.PostgresError) as exc:
            raise RateLimitStoreUnavailableError("rate limit store query failed") from exc
        if value is None:
            return None
        return value.timestamp()

    async def set_last_accepted(self, identity: str, accepted_at: float) -> None:
        pool = await self._get_pool()
        try:
            await pool.execute(
                """
                insert into submission_rate_limits (identity, last_accepted_at)
                values ($1, $2)
                on conflict (identity) do update
                  set last_accepted_at = excluded.last_accepted_at
                """,
                identity,
                datetime.fromtimestamp(accepted_at, tz=timezone.utc),
            )
        except (OSError, asyncpg.PostgresError) as exc:
            raise RateLimitStoreUnavailableError("rate limit store write failed") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is not None:
            return self._pool
        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            await self._pool.execute(
                """
                create table if not exists submission_rate_limits (
                  identity text primary key,
                  last_accepted_at timestamptz not null
                )
                """
            )
        except (OSError, asyncpg.PostgresError) as exc:
            self._pool = None
            raise RateLimitStoreUnavailableError("rate limit store unavailable") from exc
        return self._pool


@lru_cache
def get_rate_limit_store() -> RateLimitStore:
    settings = get_settings()
    if not settings.database_url:
        return InMemoryRateLimitStore()
    return PostgresRateLimitStore(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
