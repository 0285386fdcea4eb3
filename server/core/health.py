"""Health check utilities.

Provides uptime tracking and comprehensive health status for /health endpoint.
"""
import time
from typing import Dict, Any, Optional, TYPE_CHECKING

import psutil
from sqlalchemy import text

from core.logging import get_logger

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import Database
    from core.cache import CacheService
    from services.execution import QueueProcessor

logger = get_logger(__name__)

# Module-level startup time tracking
_startup_time: float = 0.0


def set_startup_time() -> None:
    """Record the application startup time. Call once during lifespan startup."""
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    """Get uptime in seconds since startup."""
    return time.time() - _startup_time if _startup_time else 0.0


def get_memory_mb() -> float:
    """Get current process memory usage in MB."""
    return psutil.Process().memory_info().rss / (1024 * 1024)


def get_disk_percent(path: str = ".") -> float:
    """Get disk usage percentage for given path."""
    return psutil.disk_usage(path).percent


def get_cpu_percent() -> float:
    """CPU usage of this process since the previous call."""
    return psutil.Process().cpu_percent(interval=None)


async def check_database(database: "Database") -> bool:
    """Check database connectivity."""
    try:
        async with database.get_session() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Database health check failed", error=str(e))
        return False


async def check_cache(cache: "CacheService") -> bool:
    """Check cache connectivity."""
    test_key = "_health_check"
    await cache.set(test_key, "ok", ttl=10)
    result = await cache.get(test_key)
    await cache.delete(test_key)
    return result == "ok"


async def get_health_status(
    database: "Database",
    cache: "CacheService",
    settings: "Settings",
    processor: Optional["QueueProcessor"] = None,
) -> Dict[str, Any]:
    """Get comprehensive health status for /health endpoint.

    Returns:
        Dict containing status, uptime, resource usage, checks and feature flags.
    """
    db_healthy = await check_database(database)
    cache_healthy = await check_cache(cache)

    overall_status = "healthy" if (db_healthy and cache_healthy) else "degraded"

    return {
        "status": overall_status,
        "uptime_seconds": round(get_uptime(), 1),
        "memory_mb": round(get_memory_mb(), 1),
        "disk_percent": round(get_disk_percent(), 1),
        "cpu_percent": round(get_cpu_percent(), 1),
        "checks": {
            "database": db_healthy,
            "cache": cache_healthy,
        },
        "queue_processor": processor.get_status() if processor else None,
        "features": {
            "redis": cache.is_redis_available(),
            "queue": settings.queue_enabled,
            "rate_limiting": settings.rate_limit_enabled,
            "self_healing": settings.self_healing_enabled,
            "remote_node_executor": bool(settings.node_executor_url),
        },
    }
