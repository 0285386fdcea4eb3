"""Workflow definition and compilation routes."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Dict, Any, List, Optional

from core.cache import CacheService
from core.container import container
from core.database import Database
from core.logging import get_logger
from services.compiler import PlanCache, WorkflowCompiler

logger = get_logger(__name__)
router = APIRouter(prefix="/api/workflows", tags=["workflows"])


class WorkflowSaveRequest(BaseModel):
    workflow_id: str
    workspace_id: str
    name: str = ""
    description: Optional[str] = None
    nodes: List[Dict[str, Any]] = []
    edges: List[Dict[str, Any]] = []


class CompileRequest(BaseModel):
    model_config = {"populate_by_name": True}

    optimization_level: str = Field(default="basic", alias="optimizationLevel")
    # Compile an unsaved definition instead of the stored one
    nodes: Optional[List[Dict[str, Any]]] = None
    edges: Optional[List[Dict[str, Any]]] = None


@router.post("")
async def save_workflow(
    request: WorkflowSaveRequest,
    database: Database = Depends(lambda: container.database())
):
    """Create or replace a workflow definition."""
    workflow = await database.save_workflow(
        request.workflow_id,
        request.workspace_id,
        request.nodes,
        edges=request.edges,
        name=request.name,
        description=request.description,
    )
    return {"success": True, "workflow": workflow.model_dump()}


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    database: Database = Depends(lambda: container.database())
):
    workflow = await database.get_workflow(workflow_id)
    if not workflow:
        raise HTTPException(status_code=404, detail=f"Workflow not found: {workflow_id}")
    return {"success": True, "workflow": workflow.model_dump()}


@router.post("/{workflow_id}/compile")
async def compile_workflow(
    workflow_id: str,
    request: CompileRequest,
    database: Database = Depends(lambda: container.database()),
    compiler: WorkflowCompiler = Depends(lambda: container.compiler())
):
    """Compile a workflow into an execution plan.

    CompilationError propagates to the app-level handler (HTTP 400).
    """
    nodes, edges = request.nodes, request.edges
    if nodes is None:
        workflow = await database.get_workflow(workflow_id)
        if not workflow:
            raise HTTPException(status_code=404, detail=f"Workflow not found: {workflow_id}")
        nodes, edges = workflow.nodes, workflow.edges

    result = await compiler.compile(
        workflow_id, nodes, edges, optimization_level=request.optimization_level
    )
    return {"success": True, **result.to_dict()}


@router.delete("/{workflow_id}/plans")
async def invalidate_plans(
    workflow_id: str,
    plan_cache: PlanCache = Depends(lambda: container.plan_cache()),
    cache: CacheService = Depends(lambda: container.cache())
):
    """Drop every cached plan and node result of a workflow."""
    removed = await plan_cache.invalidate(workflow_id)
    results = await cache.clear_pattern(f"result:{workflow_id}:*")
    return {"success": True, "removed": removed, "results_removed": results}
