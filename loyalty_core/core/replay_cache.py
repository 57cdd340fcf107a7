from __future__ import annotations

import asyncio
import time

import redis.asyncio as redis_async

from loyalty_core.core.config import settings
from loyalty_core.core.logging import get_logger

logger = get_logger(__name__)


class ReplayCache:
    """Append-only TTL set used to reject re-presented nonces.

    Backed by Redis when a URL is configured so every worker shares the same
    view; otherwise entries live in process memory.
    """

    def __init__(self, redis_url: str | None = None, prefix: str = "qr-nonce") -> None:
        self._prefix = prefix
        self._memory_store: dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._redis = None
        if redis_url:
            self._redis = redis_async.from_url(redis_url, encoding="utf-8", decode_responses=True)

    def _key(self, token: str) -> str:
        return f"{self._prefix}:{token}"

    async def add_if_absent(self, token: str, ttl_seconds: int) -> bool:
        """Record ``token``; return False when it is already present."""
        ttl = max(int(ttl_seconds), 1)
        if self._redis is not None:
            try:
                stored = await self._redis.set(self._key(token), "1", ex=ttl, nx=True)
            except Exception:
                logger.exception("Replay cache unavailable", extra={"prefix": self._prefix})
                raise
            return bool(stored)

        now = time.monotonic()
        async with self._lock:
            self._purge(now)
            if token in self._memory_store:
                return False
            self._memory_store[token] = now + ttl
            return True

    async def contains(self, token: str) -> bool:
        if self._redis is not None:
            return bool(await self._redis.exists(self._key(token)))
        async with self._lock:
            expires_at = self._memory_store.get(token)
            return expires_at is not None and expires_at > time.monotonic()

    def _purge(self, now: float) -> None:
        expired = [key for key, expires_at in self._memory_store.items() if expires_at <= now]
        for key in expired:
            self._memory_store.pop(key, None)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()


_replay_cache: ReplayCache | None = None


def get_replay_cache() -> ReplayCache:
    global _replay_cache
    if _replay_cache is None:
        _replay_cache = ReplayCache(redis_url=settings.REDIS_URL)
    return _replay_cache
