"""Execution queue routes: enqueue, manual processing and gate status."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Dict, Any, Optional, Union

from core.container import container
from core.database import Database
from core.logging import get_logger
from services.events import EventBus
from services.execution import (
    CircuitBreakerRegistry,
    ExecutionQueue,
    QueuePriority,
    QueueProcessor,
    RateLimiterRegistry,
)

logger = get_logger(__name__)
router = APIRouter(prefix="/api/queue", tags=["queue"])


class EnqueueRequest(BaseModel):
    workflow_id: str
    workspace_id: str
    execution_data: Dict[str, Any] = {}
    priority: Union[str, int] = "normal"
    scheduled_at: Optional[float] = None
    max_retries: Optional[int] = None


@router.post("/enqueue")
async def enqueue(
    request: EnqueueRequest,
    queue: ExecutionQueue = Depends(lambda: container.execution_queue())
):
    try:
        priority = QueuePriority.parse(request.priority)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    item = await queue.enqueue(
        request.workflow_id,
        request.workspace_id,
        execution_data=request.execution_data,
        priority=priority,
        scheduled_at=request.scheduled_at,
        max_retries=request.max_retries,
    )
    return {"success": True, "item": item.model_dump()}


@router.post("/process")
async def process_queue(
    limit: Optional[int] = None,
    queue: ExecutionQueue = Depends(lambda: container.execution_queue())
):
    """Run one processing cycle immediately."""
    result = await queue.process_batch(limit)
    return {"success": True, **result}


@router.get("/items")
async def list_items(
    workspace_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
    database: Database = Depends(lambda: container.database())
):
    items = await database.list_queue_items(
        workspace_id=workspace_id, status=status, limit=limit
    )
    return {"success": True, "items": [i.model_dump() for i in items]}


@router.get("/items/{item_id}")
async def get_item(
    item_id: str,
    queue: ExecutionQueue = Depends(lambda: container.execution_queue())
):
    item = await queue.get(item_id)
    if not item:
        raise HTTPException(status_code=404, detail=f"Queue item not found: {item_id}")
    return {"success": True, "item": item.model_dump()}


@router.get("/circuit-breakers/{workspace_id}/{integration_type}")
async def circuit_breaker_status(
    workspace_id: str,
    integration_type: str,
    breakers: CircuitBreakerRegistry = Depends(lambda: container.circuit_breakers())
):
    breaker = await breakers.get(workspace_id, integration_type)
    return {"success": True, "circuit_breaker": breaker.get_metrics()}


@router.post("/circuit-breakers/{workspace_id}/{integration_type}/reset")
async def reset_circuit_breaker(
    workspace_id: str,
    integration_type: str,
    breakers: CircuitBreakerRegistry = Depends(lambda: container.circuit_breakers())
):
    breaker = await breakers.reset(workspace_id, integration_type)
    logger.info("Circuit breaker reset via API", workspace_id=workspace_id,
                integration=integration_type)
    return {"success": True, "circuit_breaker": breaker.get_metrics()}


@router.get("/rate-limits/{workspace_id}/{resource_type}")
async def rate_limit_status(
    workspace_id: str,
    resource_type: str,
    rate_limiters: RateLimiterRegistry = Depends(lambda: container.rate_limiters())
):
    limiter = await rate_limiters.get(workspace_id, resource_type)
    return {"success": True, "rate_limit": limiter.get_status(rate_limiters.clock())}


@router.get("/processor")
async def processor_status(
    processor: QueueProcessor = Depends(lambda: container.queue_processor())
):
    return {"success": True, "processor": processor.get_status()}


@router.get("/events")
async def recent_events(
    name: Optional[str] = None,
    limit: int = 100,
    event_bus: EventBus = Depends(lambda: container.event_bus())
):
    """Most recent pipeline events, oldest first."""
    return {"success": True, "events": [e.to_dict() for e in event_bus.history(name, limit)]}
