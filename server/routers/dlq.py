"""Dead letter queue routes."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Optional

from core.container import container
from core.logging import get_logger
from services.execution import DeadLetterStore

logger = get_logger(__name__)
router = APIRouter(prefix="/api/dlq", tags=["dlq"])


class ResolveRequest(BaseModel):
    notes: Optional[str] = None
    resolved_by: Optional[str] = None


class InvestigateRequest(BaseModel):
    notes: Optional[str] = None


class ReplayRequest(BaseModel):
    resolved_by: Optional[str] = None


def _not_found(entry_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Dead letter entry not found: {entry_id}")


@router.get("")
async def list_entries(
    workspace_id: Optional[str] = None,
    workflow_id: Optional[str] = None,
    unresolved_only: bool = False,
    limit: int = 100,
    dead_letters: DeadLetterStore = Depends(lambda: container.dead_letters())
):
    entries = await dead_letters.list_entries(
        workspace_id=workspace_id,
        workflow_id=workflow_id,
        unresolved_only=unresolved_only,
        limit=limit,
    )
    return {"success": True, "entries": [e.model_dump() for e in entries]}


@router.get("/{entry_id}")
async def get_entry(
    entry_id: str,
    dead_letters: DeadLetterStore = Depends(lambda: container.dead_letters())
):
    entry = await dead_letters.get(entry_id)
    if not entry:
        raise _not_found(entry_id)
    return {"success": True, "entry": entry.model_dump()}


@router.post("/{entry_id}/investigate")
async def investigate_entry(
    entry_id: str,
    request: InvestigateRequest,
    dead_letters: DeadLetterStore = Depends(lambda: container.dead_letters())
):
    entry = await dead_letters.mark_investigated(entry_id, notes=request.notes)
    if not entry:
        raise _not_found(entry_id)
    return {"success": True, "entry": entry.model_dump()}


@router.post("/{entry_id}/resolve")
async def resolve_entry(
    entry_id: str,
    request: ResolveRequest,
    dead_letters: DeadLetterStore = Depends(lambda: container.dead_letters())
):
    entry = await dead_letters.resolve(entry_id, notes=request.notes,
                                       resolved_by=request.resolved_by)
    if not entry:
        raise _not_found(entry_id)
    return {"success": True, "entry": entry.model_dump()}


@router.post("/{entry_id}/replay")
async def replay_entry(
    entry_id: str,
    request: ReplayRequest,
    dead_letters: DeadLetterStore = Depends(lambda: container.dead_letters())
):
    """Enqueue a fresh queue item from a dead-lettered one."""
    item = await dead_letters.replay(entry_id, container.execution_queue(),
                                     resolved_by=request.resolved_by)
    if not item:
        raise _not_found(entry_id)
    return {"success": True, "item": item.model_dump()}
