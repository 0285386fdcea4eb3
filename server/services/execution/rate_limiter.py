"""Fixed-window request counters per (workspace, resource type).

Windows reset lazily on the next check once ``now - window_start >= window``.
"""

import time
from typing import Any, Callable, Dict, Optional, Tuple, TYPE_CHECKING

from core.config import Settings
from core.logging import get_logger
from services.exceptions import RateLimitExceededError

if TYPE_CHECKING:
    from core.cache import CacheService
    from core.database import Database
    from models.database import RateLimitRecord

logger = get_logger(__name__)


class RateLimiter:
    def __init__(self, workspace_id: str, resource_type: str,
                 max_requests: int = 60, window_seconds: float = 60.0,
                 window_start: Optional[float] = None, current_count: int = 0):
        self.workspace_id = workspace_id
        self.resource_type = resource_type
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.window_start = window_start
        self.current_count = current_count

    def _window_expired(self, now: float) -> bool:
        return self.window_start is None or now - self.window_start >= self.window_seconds

    def effective_count(self, now: float) -> int:
        return 0 if self._window_expired(now) else self.current_count

    def can_make_request(self, now: Optional[float] = None) -> bool:
        """Pure predicate: never mutates the counter or the window."""
        now = time.time() if now is None else now
        return self.effective_count(now) < self.max_requests

    def record_request(self, now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        if self._window_expired(now):
            self.window_start = now
            self.current_count = 0
        self.current_count += 1

    def retry_after(self, now: Optional[float] = None) -> float:
        """Seconds until the current window ends (0 when a request is allowed)."""
        now = time.time() if now is None else now
        if self.can_make_request(now) or self.window_start is None:
            return 0.0
        return max(0.0, self.window_start + self.window_seconds - now)

    def get_status(self, now: Optional[float] = None) -> Dict[str, Any]:
        now = time.time() if now is None else now
        count = self.effective_count(now)
        return {
            "workspace_id": self.workspace_id,
            "resource_type": self.resource_type,
            "current_count": count,
            "max_requests": self.max_requests,
            "remaining": max(0, self.max_requests - count),
            "window_seconds": self.window_seconds,
            "window_start": self.window_start,
            "retry_after": self.retry_after(now),
        }

    def to_state(self) -> Dict[str, Any]:
        return {
            "window_start": self.window_start if self.window_start is not None else 0.0,
            "window_seconds": self.window_seconds,
            "current_count": self.current_count,
            "max_requests": self.max_requests,
        }

    @classmethod
    def from_record(cls, record: "RateLimitRecord") -> "RateLimiter":
        return cls(
            record.workspace_id,
            record.resource_type,
            max_requests=record.max_requests,
            window_seconds=record.window_seconds,
            window_start=record.window_start,
            current_count=record.current_count,
        )


class RateLimiterRegistry:
    """Database-backed limiters.

    Every check reloads the persisted counter so pollers in different
    processes see each other's requests; increments run under the cache's
    distributed lock.
    """

    def __init__(self, database: "Database", cache: "CacheService", settings: Settings,
                 clock: Callable[[], float] = time.time):
        self.database = database
        self.cache = cache
        self.settings = settings
        self.clock = clock
        self._limits: Dict[Tuple[str, str], Tuple[int, float]] = {}

    def configure(self, workspace_id: str, resource_type: str,
                  max_requests: int, window_seconds: float) -> None:
        """Override the default limit for one workspace resource."""
        self._limits[(workspace_id, resource_type)] = (max_requests, window_seconds)

    async def get(self, workspace_id: str, resource_type: str) -> RateLimiter:
        record = await self.database.get_rate_limit(workspace_id, resource_type)
        if record:
            limiter = RateLimiter.from_record(record)
        else:
            limiter = RateLimiter(
                workspace_id,
                resource_type,
                max_requests=self.settings.rate_limit_requests,
                window_seconds=self.settings.rate_limit_window,
            )
        override = self._limits.get((workspace_id, resource_type))
        if override:
            limiter.max_requests, limiter.window_seconds = override
        return limiter

    async def check(self, workspace_id: str, resource_type: str) -> bool:
        limiter = await self.get(workspace_id, resource_type)
        return limiter.can_make_request(self.clock())

    async def ensure_allowed(self, workspace_id: str, resource_type: str) -> None:
        """Raises RateLimitExceededError when the window is exhausted."""
        now = self.clock()
        limiter = await self.get(workspace_id, resource_type)
        if not limiter.can_make_request(now):
            raise RateLimitExceededError(workspace_id, resource_type, limiter.retry_after(now))

    async def record(self, workspace_id: str, resource_type: str) -> RateLimiter:
        async with self.cache.distributed_lock(f"ratelimit:{workspace_id}:{resource_type}"):
            limiter = await self.get(workspace_id, resource_type)
            limiter.record_request(self.clock())
            await self.database.save_rate_limit(workspace_id, resource_type, **limiter.to_state())
        logger.debug("Rate limit request recorded", workspace_id=workspace_id,
                     resource_type=resource_type, current_count=limiter.current_count)
        return limiter
