"""Self-healing routes."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Optional

from core.container import container
from core.database import Database
from core.logging import get_logger
from services.healing import SelfHealer

logger = get_logger(__name__)
router = APIRouter(prefix="/api/healing", tags=["healing"])


class HealRequest(BaseModel):
    workflow_id: str
    error: str
    execution_id: Optional[str] = None
    node_id: Optional[str] = None
    workspace_id: Optional[str] = None


@router.post("/heal")
async def heal(
    request: HealRequest,
    healer: SelfHealer = Depends(lambda: container.self_healer())
):
    """Classify an error and apply the matching remediation.

    A remediation that cannot be applied is reported with success=false.
    """
    result = await healer.heal(
        request.workflow_id,
        request.execution_id,
        request.error,
        node_id=request.node_id,
        workspace_id=request.workspace_id,
    )
    return result.to_dict()


@router.get("/logs/{workflow_id}")
async def healing_logs(
    workflow_id: str,
    limit: int = 50,
    database: Database = Depends(lambda: container.database())
):
    logs = await database.list_healing_logs(workflow_id, limit=limit)
    return {"success": True, "logs": [log.model_dump() for log in logs]}


@router.get("/optimizations/{workflow_id}")
async def learned_optimizations(
    workflow_id: str,
    database: Database = Depends(lambda: container.database())
):
    optimizations = await database.list_learned_optimizations(workflow_id)
    return {"success": True, "optimizations": [o.model_dump() for o in optimizations]}
