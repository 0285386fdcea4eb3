"""Node Executor - single node execution with handler dispatch.

Uses a registry pattern for handler dispatch without if-else chains. Node
types without a local handler go to the remote executor when one is
configured. Every call enforces the node's ``config.timeout``.

Handler signature:
    async def handler(node: BaseNode, inputs: Dict, context: Dict) -> Any
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from core.logging import get_logger
from models.nodes import BaseNode
from services.exceptions import NodeExecutionError

logger = get_logger(__name__)

NodeHandler = Callable[[BaseNode, Dict[str, Any], Dict[str, Any]], Awaitable[Any]]


async def handle_trigger(node: BaseNode, inputs: Dict[str, Any], context: Dict[str, Any]) -> Any:
    """Trigger nodes pass the queue item's execution data through."""
    return context.get("execution_data", {})


async def handle_fallback(node: BaseNode, inputs: Dict[str, Any], context: Dict[str, Any]) -> Any:
    """Error handler nodes substitute a neutral output for a failed node."""
    return {
        "fallback": True,
        "fallback_type": getattr(node.config, "fallback_type", "default_values"),
        "source_node": getattr(node.config, "fallback_for", None),
        "error": context.get("error"),
        "values": {},
    }


class HttpNodeExecutor:
    """Posts nodes to a remote executor service.

    Request:  POST {url} {"node": ..., "inputs": ..., "context": ...}
    Response: {"success": bool, "result": any, "error": str}
    """

    def __init__(self, url: str, default_timeout: float = 30.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.default_timeout = default_timeout
        self._client = client

    async def __call__(self, node: BaseNode, inputs: Dict[str, Any], context: Dict[str, Any]) -> Any:
        timeout = node.config.timeout or self.default_timeout
        payload = {
            "node": node.to_dict(),
            "inputs": inputs,
            "context": {k: v for k, v in context.items() if k != "error"},
        }

        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, timeout=timeout)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise NodeExecutionError(f"Node {node.id} timeout after {timeout}s",
                                     node_id=node.id, cause=e) from e
        except httpx.HTTPStatusError as e:
            raise NodeExecutionError(
                f"Node executor returned {e.response.status_code} for node {node.id}",
                node_id=node.id, cause=e,
            ) from e
        except httpx.RequestError as e:
            raise NodeExecutionError(f"Node executor connection error: {e}",
                                     node_id=node.id, cause=e) from e

        try:
            body = response.json()
        except ValueError:
            return response.text

        if isinstance(body, dict) and body.get("success") is False:
            raise NodeExecutionError(body.get("error") or f"Node {node.id} failed", node_id=node.id)
        if isinstance(body, dict) and "result" in body:
            return body["result"]
        return body


class NodeHandlerRegistry:
    """Executes individual workflow nodes using registry-based dispatch."""

    def __init__(self, default_timeout: float = 30.0, remote: Optional[NodeHandler] = None):
        self.default_timeout = default_timeout
        self.remote = remote
        self._handlers: Dict[str, NodeHandler] = self._build_handler_registry()

    def _build_handler_registry(self) -> Dict[str, NodeHandler]:
        return {
            "trigger": handle_trigger,
            "error_handler": handle_fallback,
        }

    def register(self, node_type: str, handler: NodeHandler) -> None:
        self._handlers[node_type] = handler

    def has_handler(self, node_type: str) -> bool:
        return node_type in self._handlers or self.remote is not None

    async def __call__(self, node: BaseNode, inputs: Dict[str, Any], context: Dict[str, Any]) -> Any:
        """Execute one node.

        Raises:
            NodeExecutionError: Missing handler, timeout or handler failure
        """
        handler = self._handlers.get(node.type) or self.remote
        if handler is None:
            raise NodeExecutionError(f"No handler registered for node type: {node.type}",
                                     node_id=node.id)

        timeout = node.config.timeout or self.default_timeout
        start_time = time.time()
        try:
            result = await asyncio.wait_for(handler(node, inputs, context), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise NodeExecutionError(f"Node {node.id} timeout after {timeout}s",
                                     node_id=node.id, cause=e) from e
        except NodeExecutionError:
            raise
        except Exception as e:
            logger.error("Node execution error", node_id=node.id, node_type=node.type, error=str(e))
            raise NodeExecutionError(str(e) or type(e).__name__, node_id=node.id, cause=e) from e

        logger.debug("Node executed", node_id=node.id, node_type=node.type,
                     execution_time_ms=round((time.time() - start_time) * 1000, 2))
        return result
