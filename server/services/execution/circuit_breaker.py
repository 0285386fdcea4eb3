"""Per-integration circuit breakers with half-open recovery probing.

State transitions:
    CLOSED --(failure_threshold consecutive failures)--> OPEN
    OPEN --(reset_timeout elapsed, next call)--> HALF_OPEN
    HALF_OPEN --(3 successes)--> CLOSED
    HALF_OPEN --(any failure)--> OPEN
"""

import asyncio
import time
from dataclasses import dataclass, asdict
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TYPE_CHECKING

from constants import HALF_OPEN_SUCCESS_THRESHOLD
from core.config import Settings
from core.logging import get_logger
from services.events import CIRCUIT_CLOSED, CIRCUIT_OPENED
from services.exceptions import CircuitOpenError
from .models import CircuitState

if TYPE_CHECKING:
    from core.cache import CacheService
    from core.database import Database
    from models.database import CircuitBreakerRecord
    from services.events import EventBus

logger = get_logger(__name__)

Clock = Callable[[], float]


@dataclass
class CircuitMetrics:
    """Per-call counters; response time is a running mean, not a history."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    circuit_open_count: int = 0
    average_response_time_ms: float = 0.0

    def record(self, success: bool, duration_ms: float) -> None:
        self.total_requests += 1
        if success:
            self.successful_requests += 1
        else:
            self.failed_requests += 1
        self.average_response_time_ms += (
            (duration_ms - self.average_response_time_ms) / self.total_requests
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CircuitMetrics":
        data = data or {}
        return cls(
            total_requests=data.get("total_requests", 0),
            successful_requests=data.get("successful_requests", 0),
            failed_requests=data.get("failed_requests", 0),
            circuit_open_count=data.get("circuit_open_count", 0),
            average_response_time_ms=data.get("average_response_time_ms", 0.0),
        )


class CircuitBreaker:
    """State object guarding one integration.

    State is mutated through execute() and reset(), or the acquire and
    record steps they are built from. The lock covers the read-then-write
    transitions; the guarded operation runs outside it.
    """

    def __init__(self, integration: str, failure_threshold: int = 5,
                 reset_timeout: float = 60.0, clock: Clock = time.time,
                 half_open_max_calls: int = HALF_OPEN_SUCCESS_THRESHOLD,
                 workspace_id: Optional[str] = None):
        self.integration = integration
        self.workspace_id = workspace_id
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout  # seconds
        self.half_open_max_calls = half_open_max_calls
        self.clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.half_open_success_count = 0
        self.last_failure_at: Optional[float] = None
        self.metrics = CircuitMetrics()

        self._half_open_in_flight = 0
        self._lock = asyncio.Lock()

        # Async callback(breaker, old_state, new_state) fired after transitions
        self.on_transition: Optional[Callable[["CircuitBreaker", CircuitState, CircuitState],
                                              Awaitable[None]]] = None

    # =========================================================================
    # GATE
    # =========================================================================

    def _reset_elapsed(self, now: float) -> bool:
        return self.last_failure_at is None or now - self.last_failure_at > self.reset_timeout

    def retry_after(self, now: Optional[float] = None) -> float:
        if self.state != CircuitState.OPEN or self.last_failure_at is None:
            return 0.0
        now = self.clock() if now is None else now
        return max(0.0, self.last_failure_at + self.reset_timeout - now)

    def allows_request(self, now: Optional[float] = None) -> bool:
        """Side-effect free check of whether a call would be let through."""
        now = self.clock() if now is None else now
        if self.state == CircuitState.CLOSED:
            return True
        if self.state == CircuitState.OPEN:
            return self._reset_elapsed(now)
        return self._half_open_in_flight < self.half_open_max_calls

    async def acquire(self) -> Tuple[Optional[Tuple[CircuitState, CircuitState]], bool]:
        """Admit a call or raise CircuitOpenError.

        Returns:
            (transition or None, whether the call is a half-open trial)
        """
        async with self._lock:
            now = self.clock()
            transition = None

            if self.state == CircuitState.OPEN:
                if not self._reset_elapsed(now):
                    raise CircuitOpenError(self.integration, self.retry_after(now))
                transition = (self.state, CircuitState.HALF_OPEN)
                self.state = CircuitState.HALF_OPEN
                self.half_open_success_count = 0
                self._half_open_in_flight = 0

            if self.state == CircuitState.HALF_OPEN:
                if self._half_open_in_flight >= self.half_open_max_calls:
                    raise CircuitOpenError(self.integration)
                self._half_open_in_flight += 1
                return transition, True

            return transition, False

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def execute(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``operation`` through the breaker.

        Raises:
            CircuitOpenError: When the circuit is open (the operation is not called)
            Exception: Whatever the operation raised, after recording the failure
        """
        transition, trial = await self.acquire()
        await self.notify(transition)

        start = time.time()
        try:
            result = await operation()
        except Exception:
            await self.notify(await self.record_failure((time.time() - start) * 1000, trial))
            raise

        await self.notify(await self.record_success((time.time() - start) * 1000, trial))
        return result

    async def record_success(self, duration_ms: float, trial: bool):
        async with self._lock:
            self.metrics.record(True, duration_ms)
            if trial:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)

            if self.state == CircuitState.HALF_OPEN:
                self.half_open_success_count += 1
                if self.half_open_success_count >= HALF_OPEN_SUCCESS_THRESHOLD:
                    self._close()
                    return CircuitState.HALF_OPEN, CircuitState.CLOSED
            elif self.state == CircuitState.CLOSED:
                self.failure_count = 0
            return None

    async def record_failure(self, duration_ms: float, trial: bool):
        async with self._lock:
            now = self.clock()
            self.metrics.record(False, duration_ms)
            if trial:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)

            self.last_failure_at = now
            if self.state == CircuitState.HALF_OPEN:
                self._open()
                return CircuitState.HALF_OPEN, CircuitState.OPEN

            if self.state == CircuitState.CLOSED:
                self.failure_count += 1
                if self.failure_count >= self.failure_threshold:
                    self._open()
                    return CircuitState.CLOSED, CircuitState.OPEN
            return None

    def _open(self) -> None:
        self.state = CircuitState.OPEN
        self.half_open_success_count = 0
        self.metrics.circuit_open_count += 1
        logger.warning("Circuit opened", integration=self.integration,
                       failure_count=self.failure_count)

    def _close(self) -> None:
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.half_open_success_count = 0
        self._half_open_in_flight = 0
        logger.info("Circuit closed", integration=self.integration)

    async def force_close(self) -> Optional[Tuple[CircuitState, CircuitState]]:
        async with self._lock:
            previous = self.state
            self._close()
            self.last_failure_at = None
        if previous == CircuitState.CLOSED:
            return None
        return previous, CircuitState.CLOSED

    async def reset(self) -> None:
        """Force the breaker closed with counters zeroed."""
        await self.notify(await self.force_close())

    async def notify(self, transition: Optional[Tuple[CircuitState, CircuitState]]) -> None:
        if transition is None or self.on_transition is None:
            return
        await self.on_transition(self, *transition)

    # =========================================================================
    # INSPECTION AND PERSISTENCE
    # =========================================================================

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "integration": self.integration,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "half_open_success_count": self.half_open_success_count,
            "last_failure_at": self.last_failure_at,
            "reset_timeout": self.reset_timeout,
            **self.metrics.to_dict(),
        }

    def to_state(self) -> Dict[str, Any]:
        """Columns of the persisted record."""
        return {
            "status": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "half_open_success_count": self.half_open_success_count,
            "last_failure_at": self.last_failure_at,
            "reset_timeout": self.reset_timeout,
            "metrics": self.metrics.to_dict(),
        }

    def load_state(self, record: "CircuitBreakerRecord") -> None:
        self.state = CircuitState(record.status)
        self.failure_count = record.failure_count
        self.failure_threshold = record.failure_threshold
        self.half_open_success_count = record.half_open_success_count
        self.last_failure_at = record.last_failure_at
        self.reset_timeout = record.reset_timeout
        self.metrics = CircuitMetrics.from_dict(record.metrics)
        # Trial slots are tracked per process and only exist while half-open
        if self.state != CircuitState.HALF_OPEN:
            self._half_open_in_flight = 0


class CircuitBreakerRegistry:
    """Breakers keyed by (workspace_id, integration_type), shared through the database.

    Every read reloads the persisted record, and every transition is a
    reload -> transition -> save cycle under the cache's distributed lock, so
    pollers in different processes see and extend each other's state. Only
    the half-open trial count stays process-local.
    """

    def __init__(self, database: "Database", cache: "CacheService", settings: Settings,
                 event_bus: Optional["EventBus"] = None, clock: Clock = time.time):
        self.database = database
        self.cache = cache
        self.settings = settings
        self.event_bus = event_bus
        self.clock = clock
        self._breakers: Dict[Tuple[str, str], CircuitBreaker] = {}

    async def get(self, workspace_id: str, integration_type: str) -> CircuitBreaker:
        """Breaker with its state refreshed from the persisted record."""
        key = (workspace_id, integration_type)
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(
                integration_type,
                failure_threshold=self.settings.circuit_failure_threshold,
                workspace_id=workspace_id,
                reset_timeout=self.settings.circuit_reset_timeout,
                clock=self.clock,
            )
            breaker.on_transition = self._on_transition
            self._breakers[key] = breaker

        record = await self.database.get_circuit_breaker(workspace_id, integration_type)
        if record:
            breaker.load_state(record)
        return breaker

    def _lock(self, workspace_id: str, integration_type: str):
        return self.cache.distributed_lock(f"circuit:{workspace_id}:{integration_type}")

    async def _save(self, workspace_id: str, breaker: CircuitBreaker) -> None:
        await self.database.save_circuit_breaker(
            workspace_id, breaker.integration, **breaker.to_state()
        )

    async def ensure_allows(self, workspace_id: str, integration_type: str) -> None:
        """Pre-dispatch check against the persisted state.

        Raises:
            CircuitOpenError: If the breaker would reject a call right now
        """
        breaker = await self.get(workspace_id, integration_type)
        if not breaker.allows_request():
            raise CircuitOpenError(integration_type, breaker.retry_after())

    async def execute(self, workspace_id: str, integration_type: str,
                      operation: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``operation`` through the shared breaker.

        The admission and the outcome are each recorded atomically; the
        operation itself runs outside the lock.
        """
        async with self._lock(workspace_id, integration_type):
            breaker = await self.get(workspace_id, integration_type)
            transition, trial = await breaker.acquire()
            if transition:
                await self._save(workspace_id, breaker)
        await breaker.notify(transition)

        start = time.time()
        try:
            result = await operation()
        except Exception:
            await self._record(workspace_id, integration_type, False,
                               (time.time() - start) * 1000, trial)
            raise

        await self._record(workspace_id, integration_type, True,
                           (time.time() - start) * 1000, trial)
        return result

    async def _record(self, workspace_id: str, integration_type: str, success: bool,
                      duration_ms: float, trial: bool) -> None:
        async with self._lock(workspace_id, integration_type):
            breaker = await self.get(workspace_id, integration_type)
            if success:
                transition = await breaker.record_success(duration_ms, trial)
            else:
                transition = await breaker.record_failure(duration_ms, trial)
            await self._save(workspace_id, breaker)
        await breaker.notify(transition)

    async def configure(self, workspace_id: str, integration_type: str,
                        failure_threshold: int, reset_timeout: float,
                        state: CircuitState = CircuitState.HALF_OPEN) -> CircuitBreaker:
        """Upsert breaker settings (used by self-healing)."""
        async with self._lock(workspace_id, integration_type):
            breaker = await self.get(workspace_id, integration_type)
            breaker.failure_threshold = failure_threshold
            breaker.reset_timeout = reset_timeout
            if breaker.state != state:
                breaker.state = state
                breaker.half_open_success_count = 0
                breaker._half_open_in_flight = 0
            await self._save(workspace_id, breaker)
        logger.info("Circuit breaker configured", workspace_id=workspace_id,
                    integration=integration_type, state=state.value,
                    failure_threshold=failure_threshold, reset_timeout=reset_timeout)
        return breaker

    async def reset(self, workspace_id: str, integration_type: str) -> CircuitBreaker:
        async with self._lock(workspace_id, integration_type):
            breaker = await self.get(workspace_id, integration_type)
            transition = await breaker.force_close()
            await self._save(workspace_id, breaker)
        await breaker.notify(transition)
        return breaker

    async def _on_transition(self, breaker: CircuitBreaker, old: CircuitState,
                             new: CircuitState) -> None:
        if not self.event_bus or new == CircuitState.HALF_OPEN:
            return
        name = CIRCUIT_OPENED if new == CircuitState.OPEN else CIRCUIT_CLOSED
        await self.event_bus.publish(name, {
            "workspace_id": breaker.workspace_id,
            "integration": breaker.integration,
            "previous_state": old.value,
            "failure_count": breaker.failure_count,
        })
