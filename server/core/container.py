"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cache import CacheService
from services.events import EventBus
from services.compiler import PlanCache, WorkflowCompiler
from services.execution import (
    CircuitBreakerRegistry,
    DeadLetterStore,
    ExecutionQueue,
    PlanRunner,
    QueueProcessor,
    RateLimiterRegistry,
)
from services.healing import SelfHealer
from services.node_executor import HttpNodeExecutor, NodeHandlerRegistry


def _remote_executor(settings: Settings):
    if not settings.node_executor_url:
        return None
    return HttpNodeExecutor(settings.node_executor_url, settings.node_executor_timeout)


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Cache service (uses Redis when enabled, memory otherwise)
    cache = providers.Singleton(
        CacheService,
        settings=settings
    )

    event_bus = providers.Singleton(
        EventBus,
    )

    # Compilation
    plan_cache = providers.Singleton(
        PlanCache,
        database=database
    )

    compiler = providers.Singleton(
        WorkflowCompiler,
        plan_cache=plan_cache,
        event_bus=event_bus
    )

    # Gates
    circuit_breakers = providers.Singleton(
        CircuitBreakerRegistry,
        database=database,
        cache=cache,
        settings=settings,
        event_bus=event_bus
    )

    rate_limiters = providers.Singleton(
        RateLimiterRegistry,
        database=database,
        cache=cache,
        settings=settings
    )

    dead_letters = providers.Singleton(
        DeadLetterStore,
        database=database
    )

    # Node execution (external collaborator)
    node_executor = providers.Singleton(
        NodeHandlerRegistry,
        default_timeout=settings.provided.node_executor_timeout,
        remote=providers.Callable(_remote_executor, settings)
    )

    plan_runner = providers.Singleton(
        PlanRunner,
        database=database,
        compiler=compiler,
        node_executor=node_executor,
        cache=cache,
        settings=settings
    )

    execution_queue = providers.Singleton(
        ExecutionQueue,
        database=database,
        settings=settings,
        rate_limiters=rate_limiters,
        circuit_breakers=circuit_breakers,
        dead_letters=dead_letters,
        executor=plan_runner,
        event_bus=event_bus
    )

    queue_processor = providers.Singleton(
        QueueProcessor,
        queue=execution_queue,
        poll_interval=settings.provided.queue_poll_interval
    )

    self_healer = providers.Singleton(
        SelfHealer,
        database=database,
        circuit_breakers=circuit_breakers,
        plan_cache=plan_cache,
        settings=settings,
        event_bus=event_bus
    )


# Global container instance
container = Container()
