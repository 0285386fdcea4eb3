"""Shared fixtures: temp-file SQLite database, in-memory cache, frozen clock."""

import pytest

from core.cache import CacheService
from core.config import Settings
from core.database import Database
from services.compiler import PlanCache, WorkflowCompiler
from services.events import EventBus
from services.execution import (
    CircuitBreakerRegistry,
    DeadLetterStore,
    ExecutionQueue,
    RateLimiterRegistry,
)
from services.healing import SelfHealer

START = 1_700_000_000.0


class FrozenClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path}/engine.db",
        redis_enabled=False,
        log_format="console",
        queue_enabled=False,
    )


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
async def cache(settings):
    service = CacheService(settings)
    await service.startup()
    yield service
    await service.shutdown()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def plan_cache(database):
    return PlanCache(database)


@pytest.fixture
def compiler(plan_cache, event_bus):
    return WorkflowCompiler(plan_cache, event_bus=event_bus)


@pytest.fixture
def circuit_breakers(database, cache, settings, event_bus, clock):
    return CircuitBreakerRegistry(database, cache, settings, event_bus=event_bus, clock=clock)


@pytest.fixture
def rate_limiters(database, cache, settings, clock):
    return RateLimiterRegistry(database, cache, settings, clock=clock)


@pytest.fixture
def dead_letters(database, clock):
    return DeadLetterStore(database, clock=clock)


@pytest.fixture
def queue(database, settings, rate_limiters, circuit_breakers, dead_letters, event_bus, clock):
    return ExecutionQueue(
        database,
        settings,
        rate_limiters,
        circuit_breakers,
        dead_letters,
        event_bus=event_bus,
        clock=clock,
    )


@pytest.fixture
def healer(database, circuit_breakers, plan_cache, settings, event_bus, clock):
    return SelfHealer(database, circuit_breakers, plan_cache, settings,
                      event_bus=event_bus, clock=clock)


def make_node(node_id, node_type="action", **config):
    return {"id": node_id, "type": node_type, "config": config}


@pytest.fixture
def example_nodes():
    """A -> B -> C plus independent D and E."""
    return [
        make_node("A", "trigger"),
        make_node("B", "data", dependencies=["A"]),
        make_node("C", "action", dependencies=["B"]),
        make_node("D", "ai"),
        make_node("E", "action", method="GET"),
    ]
