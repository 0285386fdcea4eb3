"""Durable priority queue with rate limiting, circuit breaking, retries and DLQ routing.

Each processing cycle polls ready items (``pending`` and due, or ``failed``
with ``next_retry_at <= now``), ordered by priority desc then scheduled_at
asc, and dispatches them one at a time:

    rate limit / circuit check -> atomic claim -> executor -> outcome

Transient gate errors skip the item without penalty. Executor errors are
retried with exponential backoff until the retry budget is spent, then the
item is dead-lettered. Items left in ``processing`` past the lease are
swept back into the same retry path by recover_stale().
"""

import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

from core.config import Settings
from core.logging import get_logger
from models.database import QueueItem
from services.events import (
    QUEUE_ITEM_COMPLETED,
    QUEUE_ITEM_DEAD_LETTERED,
    QUEUE_ITEM_RETRY_SCHEDULED,
    QUEUE_ITEM_SKIPPED,
)
from services.exceptions import CircuitOpenError, RateLimitExceededError, WorkflowEngineError
from .models import ProcessResult, QueuePriority, QueueStatus, RetryPolicy

if TYPE_CHECKING:
    from core.database import Database
    from services.events import EventBus
    from .circuit_breaker import CircuitBreakerRegistry
    from .dlq import DeadLetterStore
    from .rate_limiter import RateLimiterRegistry

logger = get_logger(__name__)

# Async callable that runs one queue item; raising means failure
QueueExecutor = Callable[[QueueItem], Awaitable[Any]]


class ExecutionQueue:
    def __init__(self, database: "Database", settings: Settings,
                 rate_limiters: "RateLimiterRegistry",
                 circuit_breakers: "CircuitBreakerRegistry",
                 dead_letters: "DeadLetterStore",
                 executor: Optional[QueueExecutor] = None,
                 event_bus: Optional["EventBus"] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 clock: Callable[[], float] = time.time):
        self.database = database
        self.settings = settings
        self.rate_limiters = rate_limiters
        self.circuit_breakers = circuit_breakers
        self.dead_letters = dead_letters
        self.executor = executor
        self.event_bus = event_bus
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self.clock = clock

    def set_executor(self, executor: QueueExecutor) -> None:
        self.executor = executor

    # =========================================================================
    # ENQUEUE / POLL
    # =========================================================================

    async def enqueue(self, workflow_id: str, workspace_id: str,
                      execution_data: Optional[Dict[str, Any]] = None,
                      priority: Any = QueuePriority.NORMAL,
                      scheduled_at: Optional[float] = None,
                      max_retries: Optional[int] = None) -> QueueItem:
        """Create a pending item. Items are not eligible before ``scheduled_at``."""
        now = self.clock()
        item = QueueItem(
            workflow_id=workflow_id,
            workspace_id=workspace_id,
            priority=int(QueuePriority.parse(priority)),
            status=QueueStatus.PENDING.value,
            scheduled_at=scheduled_at if scheduled_at is not None else now,
            max_retries=max_retries if max_retries is not None else self.settings.queue_default_max_retries,
            execution_data=dict(execution_data or {}),
            created_at=now,
        )
        item = await self.database.add_queue_item(item)
        logger.info("Queue item enqueued", queue_item_id=item.id, workflow_id=workflow_id,
                    workspace_id=workspace_id, priority=QueuePriority(item.priority).name.lower())
        return item

    async def get(self, item_id: str) -> Optional[QueueItem]:
        return await self.database.get_queue_item(item_id)

    async def poll(self, limit: Optional[int] = None) -> List[QueueItem]:
        return await self.database.fetch_ready_queue_items(
            self.clock(), limit or self.settings.queue_batch_size
        )

    # =========================================================================
    # PROCESSING
    # =========================================================================

    async def process_batch(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """Run one processing cycle.

        Returns:
            {"processed": <dispatched items>, "results": [<per item outcome>]}
        """
        if self.executor is None:
            raise RuntimeError("ExecutionQueue has no executor")

        items = await self.poll(limit)
        results: List[ProcessResult] = []
        for item in items:
            results.append(await self._process_item(item))

        processed = sum(1 for r in results if r.dispatched)
        if items:
            logger.info("Queue batch processed", polled=len(items), processed=processed,
                        skipped=len(items) - processed)
        return {"processed": processed, "results": [r.to_dict() for r in results]}

    async def _process_item(self, item: QueueItem) -> ProcessResult:
        integration = self.settings.circuit_integration_type
        resource = self.settings.rate_limit_resource_type

        try:
            await self.circuit_breakers.ensure_allows(item.workspace_id, integration)
            if self.settings.rate_limit_enabled:
                await self.rate_limiters.ensure_allowed(item.workspace_id, resource)
        except CircuitOpenError as e:
            return await self._skip(item, "circuit_open", retry_after=e.retry_after)
        except RateLimitExceededError as e:
            return await self._skip(item, "rate_limited", retry_after=e.retry_after)

        previous_status = item.status
        claimed_at = self.clock()
        if not await self.database.claim_queue_item(item.id, previous_status, claimed_at):
            logger.debug("Queue item claimed by another poller", queue_item_id=item.id)
            return ProcessResult(item.id, item.workflow_id, "skipped",
                                 retry_count=item.retry_count, reason="already_claimed")

        start = time.time()
        try:
            await self.circuit_breakers.execute(
                item.workspace_id, integration, lambda: self.executor(item)
            )
        except CircuitOpenError as e:
            # Breaker opened between the check and the call; hand the item back untouched
            await self.database.update_queue_item(item.id, status=previous_status, started_at=None)
            return await self._skip(item, "circuit_open", retry_after=e.retry_after)
        except Exception as e:
            return await self._handle_failure(item, e, (time.time() - start) * 1000)

        return await self._handle_success(item, (time.time() - start) * 1000)

    async def recover_stale(self, lease: Optional[float] = None) -> List[ProcessResult]:
        """Hand items stuck in ``processing`` back to the retry path.

        A claim older than the lease belongs to a poller that died or hung;
        the expired attempt is charged against the item's retry budget.
        """
        lease = lease if lease is not None else self.settings.queue_processing_lease
        now = self.clock()
        stale = await self.database.fetch_stale_queue_items(now - lease,
                                                            self.settings.queue_batch_size)
        results: List[ProcessResult] = []
        for item in stale:
            if not await self.database.release_queue_item(item.id, item.started_at):
                continue
            stuck_for = now - item.started_at
            logger.warning("Queue item processing lease expired", queue_item_id=item.id,
                           workflow_id=item.workflow_id, stuck_for=round(stuck_for, 2))
            error = WorkflowEngineError(f"Processing lease expired after {stuck_for:.0f}s")
            results.append(await self._handle_failure(item, error, stuck_for * 1000))

        if results:
            logger.info("Recovered stale queue items", count=len(results))
        return results

    async def _skip(self, item: QueueItem, reason: str, retry_after: float = 0.0) -> ProcessResult:
        logger.info("Queue item skipped", queue_item_id=item.id, reason=reason,
                    retry_after=round(retry_after, 2))
        await self._publish(QUEUE_ITEM_SKIPPED, item, reason=reason)
        return ProcessResult(item.id, item.workflow_id, "skipped",
                             retry_count=item.retry_count, reason=reason)

    async def _handle_success(self, item: QueueItem, duration_ms: float) -> ProcessResult:
        now = self.clock()
        await self.database.update_queue_item(
            item.id,
            status=QueueStatus.COMPLETED.value,
            completed_at=now,
            error_message=None,
            next_retry_at=None,
        )
        if self.settings.rate_limit_enabled:
            await self.rate_limiters.record(item.workspace_id, self.settings.rate_limit_resource_type)

        logger.info("Queue item completed", queue_item_id=item.id, workflow_id=item.workflow_id,
                    duration_ms=round(duration_ms, 2))
        await self._publish(QUEUE_ITEM_COMPLETED, item, duration_ms=duration_ms)
        return ProcessResult(item.id, item.workflow_id, QueueStatus.COMPLETED.value,
                             duration_ms=round(duration_ms, 2), retry_count=item.retry_count)

    async def _handle_failure(self, item: QueueItem, error: Exception,
                              duration_ms: float) -> ProcessResult:
        now = self.clock()
        message = (str(error) or type(error).__name__)[:2000]
        node_id = getattr(error, "node_id", None)

        if self.retry_policy.should_dead_letter(item.retry_count, item.max_retries):
            entry = await self.dead_letters.add(item, message, failure_count=item.retry_count + 1)
            await self.database.update_queue_item(
                item.id,
                status=QueueStatus.DEAD_LETTER.value,
                error_message=message,
                completed_at=now,
                next_retry_at=None,
            )
            await self._publish(QUEUE_ITEM_DEAD_LETTERED, item, error=message,
                                node_id=node_id, dead_letter_id=entry.id)
            return ProcessResult(item.id, item.workflow_id, QueueStatus.DEAD_LETTER.value,
                                 duration_ms=round(duration_ms, 2), error=message,
                                 retry_count=item.retry_count, dead_letter_id=entry.id)

        delay = self.retry_policy.calculate_delay(item.retry_count)
        retry_count = item.retry_count + 1
        next_retry_at = now + delay
        await self.database.update_queue_item(
            item.id,
            status=QueueStatus.FAILED.value,
            retry_count=retry_count,
            next_retry_at=next_retry_at,
            error_message=message,
        )
        logger.warning("Queue item failed, retry scheduled", queue_item_id=item.id,
                       workflow_id=item.workflow_id, retry_count=retry_count,
                       max_retries=item.max_retries, delay=delay, error=message[:100])
        await self._publish(QUEUE_ITEM_RETRY_SCHEDULED, item, error=message, node_id=node_id,
                            retry_count=retry_count, next_retry_at=next_retry_at)
        return ProcessResult(item.id, item.workflow_id, QueueStatus.FAILED.value,
                             duration_ms=round(duration_ms, 2), error=message,
                             retry_count=retry_count, next_retry_at=next_retry_at)

    async def _publish(self, name: str, item: QueueItem, **data) -> None:
        if not self.event_bus:
            return
        await self.event_bus.publish(name, {
            "queue_item_id": item.id,
            "workflow_id": item.workflow_id,
            "workspace_id": item.workspace_id,
            "execution_id": (item.execution_data or {}).get("execution_id", item.id),
            **data,
        })
