"""Self-healing: classify a failure, pick a strategy, patch the workflow, record the outcome.

Pipeline:
    classify_error -> select_strategy -> apply -> HealingLog (+ LearnedOptimization)

Healing never swallows the triggering error: a failed remediation is logged
with success=False and the original error is returned to the caller.
"""

import copy
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from constants import (
    DEFAULT_IMPROVEMENT_PERCENT,
    FALLBACK_ELIGIBLE_TYPES,
    MAX_EXECUTION_TIME_SECONDS,
    STRATEGY_IMPROVEMENT_PERCENT,
)
from core.config import Settings
from core.logging import get_logger
from models.database import HealingLog, LearnedOptimization
from services.events import (
    HEALING_COMPLETED,
    QUEUE_ITEM_DEAD_LETTERED,
    QUEUE_ITEM_RETRY_SCHEDULED,
    Event,
)
from services.exceptions import HealingApplicationError
from services.execution.models import CircuitState
from .classifier import (
    FailureType,
    HealingStrategy,
    StrategySelection,
    classify_error,
    error_signature,
    select_strategy,
)
from .strategies import (
    apply_circuit_breaker_config,
    apply_fallback_nodes,
    apply_retry_policy,
    apply_timeout_increase,
    resolve_targets,
)

if TYPE_CHECKING:
    from core.database import Database
    from services.compiler import PlanCache
    from services.events import EventBus
    from services.execution import CircuitBreakerRegistry

logger = get_logger(__name__)


@dataclass
class HealingResult:
    success: bool
    failure_type: FailureType
    strategy: StrategySelection
    healing_action: str
    recovery_time_ms: float
    original_error: str
    changed_nodes: List[str] = field(default_factory=list)
    healing_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": self.success,
            "healingAction": self.healing_action,
            "recoveryTimeMs": self.recovery_time_ms,
            "strategy": self.strategy.to_dict(),
            "failureType": self.failure_type.value,
            "originalError": self.original_error,
            "changedNodes": self.changed_nodes,
        }
        if self.healing_error:
            data["healingError"] = self.healing_error
        return data


class SelfHealer:
    def __init__(self, database: "Database", circuit_breakers: "CircuitBreakerRegistry",
                 plan_cache: "PlanCache", settings: Settings,
                 event_bus: Optional["EventBus"] = None,
                 clock: Callable[[], float] = time.time):
        self.database = database
        self.circuit_breakers = circuit_breakers
        self.plan_cache = plan_cache
        self.settings = settings
        self.event_bus = event_bus
        self.clock = clock
        self._unsubscribers: List[Callable[[], None]] = []

    # =========================================================================
    # EVENT WIRING
    # =========================================================================

    def attach(self, event_bus: "EventBus") -> None:
        """Heal on every queue failure event."""
        self.event_bus = event_bus
        for name in (QUEUE_ITEM_RETRY_SCHEDULED, QUEUE_ITEM_DEAD_LETTERED):
            self._unsubscribers.append(event_bus.subscribe(name, self._on_failure_event))
        logger.info("Self-healer subscribed to queue failures")

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    async def _on_failure_event(self, event: Event) -> None:
        data = event.data
        await self.heal(
            data["workflow_id"],
            data.get("execution_id"),
            data.get("error", ""),
            node_id=data.get("node_id"),
            workspace_id=data.get("workspace_id"),
        )

    # =========================================================================
    # HEAL
    # =========================================================================

    async def heal(self, workflow_id: str, execution_id: Optional[str], error: Any,
                   node_id: Optional[str] = None,
                   workspace_id: Optional[str] = None) -> HealingResult:
        """Classify ``error`` and apply the matching remediation to the workflow."""
        original_error = str(error)
        failure_type = classify_error(original_error)
        selection = select_strategy(failure_type)

        attempted_at = self.clock()
        start = time.time()
        changed: List[str] = []
        healing_error: Optional[str] = None

        try:
            healing_action, changed, workspace_id = await self._apply(
                selection, workflow_id, workspace_id, node_id
            )
            success = True
        except Exception as e:
            if not isinstance(e, HealingApplicationError):
                e = HealingApplicationError(selection.strategy.value, str(e))
            healing_error = str(e)
            healing_action = f"{selection.strategy.value} failed"
            success = False
            logger.error("Healing attempt failed", workflow_id=workflow_id,
                         strategy=selection.strategy.value, error=healing_error)

        recovery_time_ms = round((time.time() - start) * 1000, 2)
        completed_at = self.clock()

        await self.database.add_healing_log(HealingLog(
            workflow_id=workflow_id,
            workspace_id=workspace_id,
            execution_id=execution_id,
            failure_type=failure_type.value,
            original_error=original_error[:2000],
            healing_action=healing_action[:255],
            healing_strategy=selection.to_dict(),
            success=success,
            attempted_at=attempted_at,
            completed_at=completed_at,
            recovery_time_ms=recovery_time_ms,
            learned_pattern={
                "error_signature": error_signature(original_error),
                "solution": selection.strategy.value,
                "context": {
                    "failure_type": failure_type.value,
                    "parameters": selection.parameters,
                    "node_id": node_id,
                    "changed_nodes": changed,
                },
            },
        ))

        if success:
            await self.database.add_learned_optimization(LearnedOptimization(
                workflow_id=workflow_id,
                workspace_id=workspace_id,
                optimization_type="self_healing",
                optimization_data={
                    "strategy": selection.to_dict(),
                    "failure_type": failure_type.value,
                    "error_signature": error_signature(original_error),
                },
                performance_improvement_percent=STRATEGY_IMPROVEMENT_PERCENT.get(
                    selection.strategy.value, DEFAULT_IMPROVEMENT_PERCENT
                ),
                applied=True,
                learned_at=completed_at,
                applied_at=completed_at,
            ))

        result = HealingResult(
            success=success,
            failure_type=failure_type,
            strategy=selection,
            healing_action=healing_action,
            recovery_time_ms=recovery_time_ms,
            original_error=original_error,
            changed_nodes=changed,
            healing_error=healing_error,
        )

        logger.info("Healing attempt recorded", workflow_id=workflow_id,
                    failure_type=failure_type.value, strategy=selection.strategy.value,
                    success=success, changed_nodes=len(changed))

        if self.event_bus:
            await self.event_bus.publish(HEALING_COMPLETED, {
                "workflow_id": workflow_id,
                "execution_id": execution_id,
                **result.to_dict(),
            })
        return result

    async def _apply(self, selection: StrategySelection, workflow_id: str,
                     workspace_id: Optional[str], node_id: Optional[str]):
        """Returns (healing_action, changed node ids, workspace_id)."""
        strategy = selection.strategy
        params = selection.parameters

        workflow = await self.database.get_workflow(workflow_id)
        if workflow is None:
            raise HealingApplicationError(strategy.value, f"Workflow not found: {workflow_id}")
        workspace_id = workspace_id or workflow.workspace_id

        nodes = copy.deepcopy(workflow.nodes or [])

        if strategy == HealingStrategy.RETRY_WITH_BACKOFF:
            changed = apply_retry_policy(nodes, params, resolve_targets(nodes, node_id))
            action = f"Applied exponential retry policy to {len(changed)} node(s)"

        elif strategy == HealingStrategy.INCREASE_TIMEOUT:
            changed = apply_timeout_increase(nodes, params, resolve_targets(nodes, node_id))
            await self.database.save_workspace_limit(workspace_id, MAX_EXECUTION_TIME_SECONDS)
            action = (f"Increased timeout on {len(changed)} node(s), workspace limit "
                      f"{MAX_EXECUTION_TIME_SECONDS}s")

        elif strategy == HealingStrategy.CIRCUIT_BREAKER:
            changed = apply_circuit_breaker_config(nodes, params, resolve_targets(nodes, node_id))
            await self.circuit_breakers.configure(
                workspace_id,
                self.settings.circuit_integration_type,
                failure_threshold=params["threshold"],
                reset_timeout=float(params["timeout"]),
                state=CircuitState.HALF_OPEN,
            )
            action = f"Configured circuit breaker for {len(changed)} node(s)"

        elif strategy == HealingStrategy.FALLBACK_NODE:
            targets = resolve_targets(nodes, node_id, eligible_types=FALLBACK_ELIGIBLE_TYPES)
            changed = apply_fallback_nodes(nodes, params, targets)
            action = f"Added {len(changed)} fallback node(s)"

        else:
            raise HealingApplicationError(strategy.value, "Unsupported strategy")

        if changed:
            await self.database.update_workflow_nodes(workflow_id, nodes)
            await self.plan_cache.invalidate(workflow_id)
        return action, changed, workspace_id
