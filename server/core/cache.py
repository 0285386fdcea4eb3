"""Cache service with Redis (multi-process) or in-memory (single-process) backend.

Holds node result caches and the distributed lock that serializes circuit
breaker state transitions across queue pollers.
"""

import json
import time
import uuid
import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis

from core.config import Settings
from core.logging import get_logger, log_cache_operation

logger = get_logger(__name__)


class CacheService:
    """Async cache service with Redis or memory backend.

    Backend selection:
    - Redis: When REDIS_ENABLED=true and the server answers PING
    - Memory: Otherwise (single process, TTL checked on read and expired
      entries pruned on write)
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.redis: Optional[redis.Redis] = None
        self.memory_cache: Dict[str, Tuple[Any, Optional[float]]] = {}
        self.use_redis = settings.redis_enabled and bool(settings.redis_url)
        self._local_locks: Dict[str, asyncio.Lock] = {}

    async def startup(self):
        """Initialize cache connection."""
        if self.use_redis:
            try:
                self.redis = redis.from_url(
                    self.settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_timeout=5,
                    socket_connect_timeout=5,
                    retry_on_timeout=True
                )
                await self.redis.ping()
                logger.info("Redis cache initialized", url=self.settings.redis_url)

            except Exception as e:
                logger.warning("Redis connection failed, using memory cache", error=str(e))
                self.use_redis = False
                self.redis = None
        else:
            logger.info("Using in-memory cache", redis_enabled=self.settings.redis_enabled)

    async def shutdown(self):
        """Close cache connections."""
        if self.redis:
            await self.redis.aclose()
            logger.info("Redis cache connections closed")

        self.memory_cache.clear()

    def is_redis_available(self) -> bool:
        """Check if Redis is available and connected."""
        return self.use_redis and self.redis is not None

    # ============================================================================
    # Key/value operations
    # ============================================================================

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        try:
            if self.is_redis_available():
                value = await self.redis.get(key)
                log_cache_operation(logger, "get", key, hit=value is not None)
                return json.loads(value) if value is not None else None

            entry = self.memory_cache.get(key)
            if entry is not None:
                value, expires_at = entry
                if expires_at is not None and expires_at <= time.monotonic():
                    del self.memory_cache[key]
                    entry = None
            log_cache_operation(logger, "get", key, hit=entry is not None)
            return entry[0] if entry is not None else None

        except Exception as e:
            logger.error("Cache get failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set value in cache with optional TTL."""
        try:
            ttl = ttl or self.settings.cache_ttl

            if self.is_redis_available():
                await self.redis.setex(key, ttl, json.dumps(value, default=str))
            else:
                now = time.monotonic()
                self._prune_expired(now)
                self.memory_cache[key] = (value, now + ttl)
            log_cache_operation(logger, "set", key, ttl=ttl)
            return True

        except Exception as e:
            logger.error("Cache set failed", key=key, error=str(e))
            return False

    def _prune_expired(self, now: float) -> None:
        """Drop expired memory entries, including keys that are never read again."""
        expired = [k for k, (_, expires_at) in self.memory_cache.items()
                   if expires_at is not None and expires_at <= now]
        for key in expired:
            del self.memory_cache[key]

    async def delete(self, key: str) -> bool:
        """Delete value from cache."""
        try:
            if self.is_redis_available():
                deleted = bool(await self.redis.delete(key))
            else:
                deleted = self.memory_cache.pop(key, None) is not None
            log_cache_operation(logger, "delete", key, deleted=deleted)
            return deleted

        except Exception as e:
            logger.error("Cache delete failed", key=key, error=str(e))
            return False

    async def clear_pattern(self, pattern: str) -> int:
        """Clear keys matching a trailing-wildcard pattern (e.g. 'result:wf-1:*')."""
        try:
            if self.is_redis_available():
                keys = [key async for key in self.redis.scan_iter(match=pattern)]
                deleted = await self.redis.delete(*keys) if keys else 0
            else:
                prefix = pattern.rstrip("*")
                keys = [k for k in self.memory_cache if k.startswith(prefix)]
                for key in keys:
                    del self.memory_cache[key]
                deleted = len(keys)
            log_cache_operation(logger, "clear_pattern", pattern, deleted=deleted)
            return deleted

        except Exception as e:
            logger.error("Cache clear pattern failed", pattern=pattern, error=str(e))
            return 0

    # ============================================================================
    # Distributed locking
    # ============================================================================

    @asynccontextmanager
    async def distributed_lock(self, lock_name: str, timeout: int = 30):
        """Acquire a named lock shared by every process using this cache.

        Redis uses SET NX EX with a token so only the holder releases it.
        Without Redis a per-process asyncio.Lock is used.

        Raises:
            TimeoutError: If the lock cannot be acquired
        """
        lock_key = f"lock:{lock_name}"
        lock_token = str(uuid.uuid4())
        acquired = False

        try:
            if self.is_redis_available():
                deadline = time.monotonic() + timeout
                while not acquired:
                    acquired = bool(await self.redis.set(lock_key, lock_token, ex=timeout, nx=True))
                    if acquired:
                        break
                    if time.monotonic() >= deadline:
                        raise TimeoutError(f"Could not acquire lock: {lock_name}")
                    await asyncio.sleep(0.05)
            else:
                if lock_name not in self._local_locks:
                    self._local_locks[lock_name] = asyncio.Lock()
                await asyncio.wait_for(self._local_locks[lock_name].acquire(), timeout=timeout)
                acquired = True

            logger.debug("Lock acquired", lock_name=lock_name, token=lock_token[:8])
            yield lock_token

        finally:
            if acquired:
                if self.is_redis_available():
                    current = await self.redis.get(lock_key)
                    if current and current == lock_token:
                        await self.redis.delete(lock_key)
                        logger.debug("Lock released", lock_name=lock_name)
                else:
                    self._local_locks[lock_name].release()
