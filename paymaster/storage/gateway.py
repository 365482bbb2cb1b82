from __future__ import annotations

import logging

from redis import asyncio as redis
from redis.asyncio.client import Redis

from paymaster.common import log_event

from .memory import MemoryCache
from .redis_ops import RedisStorageOps
from .settings import StorageSettings


class StorageGateway(RedisStorageOps):
    def __init__(self, settings: StorageSettings, logger: logging.Logger) -> None:
        self.settings = settings
        self._logger = logger
        self._redis: Redis | None = None

    async def connect(self) -> None:
        self._redis = redis.from_url(self.settings.redis_url, decode_responses=True)
        await self._redis.ping()
        log_event(
            self._logger,
            level="info",
            event="redis_connected",
            message="Connected to Redis",
        )

    async def healthcheck(self) -> None:
        redis_client = self._require_redis()
        await redis_client.ping()

    async def close(self) -> None:
        if self._redis is not None:
            close = getattr(self._redis, "aclose", None)
            if close:
                await close()
            else:
                await self._redis.close()
            self._redis = None


def build_cache(settings: StorageSettings, logger: logging.Logger) -> StorageGateway | MemoryCache:
    if settings.cache_backend == "redis":
        return StorageGateway(settings, logger)

    log_event(
        logger,
        level="warning",
        event="memory_cache_selected",
        message="Using the in-process cache; duplicate and lockout state is not shared across workers",
    )
    return MemoryCache()
