"""Pydantic models for workflow nodes with discriminated unions.

Every node type carries its own config schema instead of an open map, so
missing or mistyped fields surface at compile time rather than at execution.
The discriminator field 'type' routes to the correct model in O(1).
"""

from typing import Literal, Union, Annotated, Optional, Dict, Any, List
from pydantic import AliasChoices, BaseModel, Field, TypeAdapter

from constants import KNOWN_NODE_TYPES, READ_ONLY_METHODS, TRANSFORM_TYPES


# =============================================================================
# SHARED CONFIG BLOCKS
# =============================================================================

class RetryConfig(BaseModel):
    """Per-node retry policy injected by authors or by self-healing."""
    model_config = {"populate_by_name": True}

    enabled: bool = True
    max_retries: int = Field(default=3, alias="maxRetries", ge=0, le=20)
    backoff_type: Literal["fixed", "linear", "exponential"] = Field(default="exponential", alias="backoffType")
    initial_delay: int = Field(default=1000, alias="initialDelay", ge=0)  # ms
    max_delay: Optional[int] = Field(default=None, alias="maxDelay", ge=0)  # ms


class CircuitBreakerConfig(BaseModel):
    """Per-node circuit breaker override."""
    model_config = {"populate_by_name": True}

    threshold: int = Field(default=5, ge=1)
    timeout: float = Field(default=60.0, ge=1.0)  # seconds


# =============================================================================
# NODE CONFIG MODELS
# =============================================================================

class BaseNodeConfig(BaseModel):
    """Fields shared by all node types."""
    model_config = {"extra": "allow", "populate_by_name": True}

    dependencies: List[str] = Field(default_factory=list)
    timeout: Optional[float] = Field(default=None, gt=0)  # seconds, enforced by the node executor
    retry: Optional[RetryConfig] = None
    circuit_breaker: Optional[CircuitBreakerConfig] = Field(default=None, alias="circuitBreaker")
    cacheable: Optional[bool] = None  # explicit override of the type predicate


class TriggerConfig(BaseNodeConfig):
    trigger_type: Literal["manual", "webhook", "schedule"] = Field(default="manual", alias="triggerType")
    cron: Optional[str] = None


class ActionConfig(BaseNodeConfig):
    method: Optional[Literal["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]] = None
    url: Optional[str] = None
    read_only: bool = Field(default=False, alias="readOnly")


class ConnectorConfig(ActionConfig):
    integration: str = ""


class ConditionConfig(BaseNodeConfig):
    expression: str = ""


class DataConfig(BaseNodeConfig):
    operation: str = ""


class AIConfig(BaseNodeConfig):
    model: str = ""
    prompt: str = ""


class ErrorHandlerConfig(BaseNodeConfig):
    fallback_for: Optional[str] = Field(default=None, alias="fallbackFor")
    fallback_type: Literal["default_values", "skip", "static"] = Field(default="default_values", alias="fallbackType")


class ValidatorConfig(BaseNodeConfig):
    rules: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# NODE MODELS
# =============================================================================

class BaseNode(BaseModel):
    """A workflow node. Unknown node types validate against this model."""
    model_config = {"populate_by_name": True}

    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    config: BaseNodeConfig = Field(default_factory=BaseNodeConfig)

    @property
    def dependencies(self) -> List[str]:
        return self.config.dependencies

    @property
    def is_cacheable(self) -> bool:
        """Explicit predicate: pure transforms and read-only actions."""
        if self.config.cacheable is not None:
            return self.config.cacheable
        if self.type in TRANSFORM_TYPES:
            return True
        method = getattr(self.config, "method", None)
        if method in READ_ONLY_METHODS:
            return True
        return bool(getattr(self.config, "read_only", False))

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready dict (camelCase aliases, no unset optionals)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TriggerNode(BaseNode):
    type: Literal["trigger"]
    config: TriggerConfig = Field(default_factory=TriggerConfig)


class ActionNode(BaseNode):
    type: Literal["action"]
    config: ActionConfig = Field(default_factory=ActionConfig)


class ConnectorNode(BaseNode):
    type: Literal["connector"]
    config: ConnectorConfig = Field(default_factory=ConnectorConfig)


class ConditionNode(BaseNode):
    type: Literal["condition"]
    config: ConditionConfig = Field(default_factory=ConditionConfig)


class DataNode(BaseNode):
    type: Literal["data"]
    config: DataConfig = Field(default_factory=DataConfig)


class AINode(BaseNode):
    type: Literal["ai"]
    config: AIConfig = Field(default_factory=AIConfig)


class ErrorHandlerNode(BaseNode):
    type: Literal["error_handler"]
    config: ErrorHandlerConfig = Field(default_factory=ErrorHandlerConfig)


class ValidatorNode(BaseNode):
    type: Literal["validator"]
    config: ValidatorConfig = Field(default_factory=ValidatorConfig)


KnownNode = Annotated[
    Union[
        TriggerNode, ActionNode, ConnectorNode, ConditionNode,
        DataNode, AINode, ErrorHandlerNode, ValidatorNode,
    ],
    Field(discriminator="type")
]


class Edge(BaseModel):
    """Directed edge: `target` runs after `source`."""
    model_config = {"populate_by_name": True}

    source: str = Field(..., validation_alias=AliasChoices("from", "source"), serialization_alias="from")
    target: str = Field(..., validation_alias=AliasChoices("to", "target"), serialization_alias="to")

    def to_dict(self) -> Dict[str, str]:
        return self.model_dump(by_alias=True)


# =============================================================================
# VALIDATION HELPERS
# =============================================================================

_known_node_adapter = TypeAdapter(KnownNode)


def parse_node(data: Dict[str, Any]) -> BaseNode:
    """Validate a raw node dict into its typed model.

    Known types go through the discriminated union; unknown types fall back
    to BaseNode so new node kinds can be added without a schema change.

    Raises:
        ValidationError: If validation fails
    """
    if isinstance(data, BaseNode):
        return data
    if data.get("type") in KNOWN_NODE_TYPES:
        return _known_node_adapter.validate_python(data)
    return BaseNode.model_validate(data)


def parse_nodes(items: List[Any]) -> List[BaseNode]:
    return [parse_node(item) for item in items]


def parse_edges(items: Optional[List[Any]]) -> List[Edge]:
    return [e if isinstance(e, Edge) else Edge.model_validate(e) for e in (items or [])]
