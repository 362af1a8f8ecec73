"""Resilient Redis access for cached generations."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Callable, List, Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ragway.metrics.observability import get_logger
from ragway.models import CacheEntry, CacheStatus

logger = get_logger("cache")

ConnectionListener = Callable[[bool], None]

_FLUSH_BATCH = 500


class CacheError(RuntimeError):
    """Raised when a cache write or connection attempt fails."""


_CONNECTION_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError, CacheError)


def reconnect_delay(retries: int, base: float, ceiling: float) -> float:
    """Delay before the next connection attempt: ``min(retries * base, ceiling)``."""
    return min(retries * base, ceiling)


class CacheGateway:
    """Redis-backed key-value gateway.

    Lookups (``get``, ``exists``) never raise: any failure is reported as a
    miss. Writes (``set``, ``expire``, ``delete``, ``flush``) raise
    :class:`CacheError` so callers decide how much a lost write matters.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        client: Optional[redis.Redis] = None,
        retry_base: float = 0.1,
        retry_ceiling: float = 5.0,
        max_retries: int = 20,
        socket_timeout: float | None = 2.0,
    ) -> None:
        self._url = url
        self._client = client or redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._retry_base = retry_base
        self._retry_ceiling = retry_ceiling
        self._max_retries = max_retries
        self._connected = False
        self._listeners: List[ConnectionListener] = []
        self._connect_task: asyncio.Task | None = None

    # Connection management -------------------------------------------------

    def add_listener(self, listener: ConnectionListener) -> None:
        """Register a callback invoked with the new state on every transition."""
        self._listeners.append(listener)

    def _set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        logger.info("cache.connected" if connected else "cache.disconnected", url=self._url)
        for listener in list(self._listeners):
            listener(connected)

    async def connect(self) -> None:
        """Ping until connected, backing off between attempts."""
        retries = 0
        while True:
            try:
                await self._client.ping()
            except (RedisError, OSError) as exc:
                self._set_connected(False)
                retries += 1
                if retries > self._max_retries:
                    logger.error("cache.connect_failed", url=self._url, retries=retries - 1, error=str(exc))
                    raise CacheError(f"Redis connection failed after {retries - 1} retries: {exc}") from exc
                delay = reconnect_delay(retries, self._retry_base, self._retry_ceiling)
                logger.warning("cache.reconnecting", retries=retries, delay_seconds=delay, error=str(exc))
                await asyncio.sleep(delay)
                continue
            self._set_connected(True)
            return

    async def _ensure_connection(self) -> None:
        if self._connected:
            return
        try:
            await self._client.ping()
        except (RedisError, OSError) as exc:
            raise CacheError(f"Redis unavailable: {exc}") from exc
        self._set_connected(True)

    def _record_failure(self, operation: str, key: str, exc: BaseException) -> None:
        logger.error("cache.operation_failed", operation=operation, key=key, error=str(exc))
        if isinstance(exc, _CONNECTION_ERRORS):
            self._set_connected(False)

    async def start(self, attempts: int = 50, interval: float = 0.1) -> bool:
        """Connect in the background and wait a bounded time for readiness."""
        if self._connected:
            return True
        self._connect_task = asyncio.create_task(self.connect())
        for _ in range(attempts):
            if self._connected or self._connect_task.done():
                break
            await asyncio.sleep(interval)
        task = self._connect_task
        if not task.done():
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, CacheError):
                pass
        elif not task.cancelled() and task.exception() is not None:
            logger.error("cache.start_failed", error=str(task.exception()))
        self._connect_task = None
        return self._connected

    async def disconnect(self) -> None:
        """Cancel pending connection attempts and close the client."""
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
            try:
                await self._connect_task
            except (asyncio.CancelledError, CacheError):
                pass
        self._connect_task = None
        try:
            await self._client.aclose()
        except (RedisError, OSError) as exc:
            logger.error("cache.disconnect_failed", error=str(exc))
        self._set_connected(False)

    def is_ready(self) -> bool:
        return self._connected

    def status(self) -> CacheStatus:
        return CacheStatus(connected=self._connected, client_state="ready" if self._connected else "not ready")

    # Lookups ---------------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        try:
            await self._ensure_connection()
            return await self._client.get(key)
        except Exception as exc:
            self._record_failure("get", key, exc)
            return None

    async def exists(self, key: str) -> bool:
        try:
            await self._ensure_connection()
            return int(await self._client.exists(key)) > 0
        except Exception as exc:
            self._record_failure("exists", key, exc)
            return False

    # Writes ----------------------------------------------------------------

    async def set(self, key: str, value: str, ttl: int | timedelta | None = None) -> None:
        await self._ensure_connection()
        try:
            if ttl:
                await self._client.setex(key, ttl, value)
            else:
                await self._client.set(key, value)
        except (RedisError, OSError) as exc:
            self._record_failure("set", key, exc)
            raise CacheError(f"Redis SET failed for {key}: {exc}") from exc

    async def store(self, entry: CacheEntry) -> None:
        await self.set(entry.key, entry.value, entry.ttl)

    async def expire(self, key: str, ttl: int | timedelta) -> None:
        await self._ensure_connection()
        try:
            await self._client.expire(key, ttl)
        except (RedisError, OSError) as exc:
            self._record_failure("expire", key, exc)
            raise CacheError(f"Redis EXPIRE failed for {key}: {exc}") from exc

    async def delete(self, key: str) -> None:
        await self._ensure_connection()
        try:
            await self._client.delete(key)
        except (RedisError, OSError) as exc:
            self._record_failure("delete", key, exc)
            raise CacheError(f"Redis DEL failed for {key}: {exc}") from exc

    async def flush(self, pattern: str) -> int:
        """Delete every key matching the glob ``pattern``; returns the count."""
        await self._ensure_connection()
        deleted = 0
        batch: list[str] = []
        try:
            async for key in self._client.scan_iter(match=pattern, count=_FLUSH_BATCH):
                batch.append(key)
                if len(batch) >= _FLUSH_BATCH:
                    deleted += int(await self._client.delete(*batch))
                    batch = []
            if batch:
                deleted += int(await self._client.delete(*batch))
        except (RedisError, OSError) as exc:
            self._record_failure("flush", pattern, exc)
            raise CacheError(f"Cache flush failed for {pattern}: {exc}") from exc
        logger.info("cache.flushed", pattern=pattern, deleted=deleted)
        return deleted

