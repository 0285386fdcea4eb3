"""In-memory dependency graph built from a stored workflow definition."""

import hashlib
import json
from collections import deque
from typing import Any, Dict, Iterator, List, Optional, Set

from pydantic import ValidationError

from core.logging import get_logger
from models.nodes import BaseNode, Edge, parse_nodes, parse_edges
from services.exceptions import InvalidGraphError

logger = get_logger(__name__)


class WorkflowGraph:
    """Typed nodes plus a dependency map.

    A node depends on every id in its ``config.dependencies`` and on the
    source of every edge that targets it. All iteration follows the input
    order of ``nodes`` so results are deterministic.
    """

    def __init__(self, nodes: List[BaseNode], edges: Optional[List[Edge]] = None):
        self.nodes = nodes
        self.edges = edges or []
        self.node_map: Dict[str, BaseNode] = {}
        self.dependencies: Dict[str, List[str]] = {}
        self.dependents: Dict[str, List[str]] = {}

        for node in nodes:
            if node.id in self.node_map:
                raise InvalidGraphError(
                    f"Duplicate node id: {node.id}", details={"node_id": node.id}
                )
            self.node_map[node.id] = node

        incoming: Dict[str, List[str]] = {node.id: [] for node in nodes}
        for edge in self.edges:
            for endpoint in (edge.source, edge.target):
                if endpoint not in self.node_map:
                    raise InvalidGraphError(
                        f"Edge references unknown node: {endpoint}",
                        details={"edge": edge.to_dict()},
                    )
            incoming[edge.target].append(edge.source)

        for node in nodes:
            deps: List[str] = []
            for dep in list(node.dependencies) + incoming[node.id]:
                if dep not in self.node_map:
                    raise InvalidGraphError(
                        f"Node {node.id} depends on unknown node: {dep}",
                        details={"node_id": node.id, "dependency": dep},
                    )
                if dep not in deps:
                    deps.append(dep)
            self.dependencies[node.id] = deps
            self.dependents[node.id] = []

        for node in nodes:
            for dep in self.dependencies[node.id]:
                self.dependents[dep].append(node.id)

    @classmethod
    def from_definition(cls, nodes: List[Any], edges: Optional[List[Any]] = None) -> "WorkflowGraph":
        """Validate raw node/edge dicts and build the graph.

        Raises:
            InvalidGraphError: On schema errors, duplicate ids or dangling references
        """
        try:
            parsed_nodes = parse_nodes(nodes)
            parsed_edges = parse_edges(edges)
        except ValidationError as e:
            raise InvalidGraphError(
                "Invalid workflow definition",
                details={"errors": e.errors(include_url=False, include_context=False,
                                            include_input=False)},
            ) from e
        return cls(parsed_nodes, parsed_edges)

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[BaseNode]:
        return iter(self.nodes)

    # =========================================================================
    # CONTENT HASH
    # =========================================================================

    def version_hash(self) -> str:
        """SHA-256 of the canonical node set (sorted by id) and edge set."""
        payload = {
            "nodes": [n.to_dict() for n in sorted(self.nodes, key=lambda n: n.id)],
            "edges": sorted([e.source, e.target] for e in self.edges),
        }
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()

    # =========================================================================
    # DAG ANALYSIS
    # =========================================================================

    def find_cycles(self) -> List[List[str]]:
        """Depth-first search with a recursion stack.

        Every back edge yields one cycle, reported as a closed path in
        execution direction (e.g. ``["A", "B", "A"]``).
        """
        cycles: List[List[str]] = []
        visited: Set[str] = set()

        for start in self.node_map:
            if start in visited:
                continue

            visited.add(start)
            path = [start]
            on_stack = {start}
            stack = [iter(self.dependents[start])]

            while stack:
                advanced = False
                for successor in stack[-1]:
                    if successor in on_stack:
                        cycles.append(path[path.index(successor):] + [successor])
                    elif successor not in visited:
                        visited.add(successor)
                        path.append(successor)
                        on_stack.add(successor)
                        stack.append(iter(self.dependents[successor]))
                        advanced = True
                        break
                if not advanced:
                    stack.pop()
                    on_stack.discard(path.pop())

        if cycles:
            logger.debug("Cycles detected", cycle_count=len(cycles))
        return cycles

    def topological_order(self) -> List[str]:
        """Kahn's algorithm; ready nodes leave the queue in input order.

        Nodes on a cycle never reach in-degree zero and are left out.
        """
        in_degree = {node_id: len(deps) for node_id, deps in self.dependencies.items()}
        ready = deque(node_id for node_id in self.node_map if in_degree[node_id] == 0)
        order: List[str] = []

        while ready:
            node_id = ready.popleft()
            order.append(node_id)
            for successor in self.dependents[node_id]:
                in_degree[successor] -= 1
                if in_degree[successor] == 0:
                    ready.append(successor)

        return order

    def execution_stages(self) -> List[List[str]]:
        """Group nodes into layers whose dependencies are all in earlier layers.

        Nodes in the same layer have no dependencies on each other and can
        execute in parallel.
        """
        placed: Set[str] = set()
        remaining = list(self.node_map)
        stages: List[List[str]] = []

        while remaining:
            stage = [
                node_id for node_id in remaining
                if all(dep in placed for dep in self.dependencies[node_id])
            ]
            if not stage:
                # Only reachable on a cyclic graph
                break
            stages.append(stage)
            placed.update(stage)
            remaining = [node_id for node_id in remaining if node_id not in placed]

        return stages
