"""Resource graph.

Builds a directed acyclic graph from declared resources. An edge A -> B means
"A depends on B": B has to exist before A is created and A has to be gone
before B is destroyed.
"""

import logging
import re
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set

from infraplan.errors import DependencyCycleError, DuplicateResourceError, UnresolvedReferenceError
from infraplan.models.resource import Resource

logger = logging.getLogger(__name__)


@dataclass
class GraphNode:
    """A resource plus its edges in both directions.

    Attributes:
        resource: The declared resource
        dependencies: Addresses this node depends on
        dependents: Addresses that depend on this node
        depth: Length of the longest dependency chain below this node
    """
    resource: Resource
    dependencies: Set[str] = field(default_factory=set)
    dependents: Set[str] = field(default_factory=set)
    depth: int = 0

    @property
    def address(self) -> str:
        return self.resource.address

    def __repr__(self) -> str:
        return f"GraphNode({self.address}, depth={self.depth})"


def find_cycle(adjacency: Dict[str, Sequence[str]]) -> Optional[List[str]]:
    """Return one cycle as a closed path (first == last), or None.

    Iterative DFS with white/grey/black colouring; nodes and edges are
    visited in sorted order so the reported cycle is stable.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    colour = {n: WHITE for n in adjacency}

    for start in sorted(adjacency):
        if colour[start] != WHITE:
            continue
        path = [start]
        colour[start] = GREY
        stack = [iter(sorted(adjacency[start]))]
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                colour[path.pop()] = BLACK
                stack.pop()
                continue
            if nxt not in colour:
                continue
            if colour[nxt] == GREY:
                return path[path.index(nxt):] + [nxt]
            if colour[nxt] == WHITE:
                colour[nxt] = GREY
                path.append(nxt)
                stack.append(iter(sorted(adjacency[nxt])))
    return None


def topological_sort(adjacency: Dict[str, Iterable[str]]) -> List[str]:
    """Order nodes so every node comes after the nodes it points to.

    Kahn's algorithm; among ready nodes the smallest name goes first. Edges
    to nodes outside ``adjacency`` are ignored. Nodes caught in a cycle are
    left out, so callers that need a full order must check find_cycle first.
    """
    deps = {n: {d for d in targets if d in adjacency and d != n} for n, targets in adjacency.items()}
    dependents: Dict[str, List[str]] = defaultdict(list)
    for n, targets in deps.items():
        for d in targets:
            dependents[d].append(n)

    remaining = {n: len(targets) for n, targets in deps.items()}
    ready = sorted(n for n, count in remaining.items() if count == 0)
    ordered: List[str] = []
    while ready:
        node = ready.pop(0)
        ordered.append(node)
        released = []
        for dependent in dependents[node]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                released.append(dependent)
        if released:
            ready = sorted(ready + released)
    return ordered


class ResourceGraph:
    """Dependency graph over declared resources.

    - topological_order(): dependencies before dependents
    - levels(): batches of mutually independent resources
    - reverse_order(): dependents before dependencies (destroy)
    """

    def __init__(self) -> None:
        self._nodes: Dict[str, GraphNode] = {}

    @classmethod
    def build(cls, resources: List[Resource]) -> "ResourceGraph":
        """Build and validate the graph.

        Raises:
            DuplicateResourceError: two resources share namespace, type and name
            UnresolvedReferenceError: a reference or depends_on names an undeclared resource
            DependencyCycleError: the references form a cycle
        """
        graph = cls()

        seen: Dict[tuple, Resource] = {}
        for r in resources:
            if r.identity in seen:
                raise DuplicateResourceError(r.address, [seen[r.identity].source_file, r.source_file])
            seen[r.identity] = r
            graph._nodes[r.address] = GraphNode(resource=r)

        for r in resources:
            node = graph._nodes[r.address]
            for ref in r.references:
                if ref.address not in graph._nodes:
                    raise UnresolvedReferenceError(r.address, ref.address, ref.source_attribute)
            for dep in r.depends_on:
                if dep not in graph._nodes:
                    raise UnresolvedReferenceError(r.address, dep, "depends_on")
            for dep in r.dependencies():
                node.dependencies.add(dep)
                graph._nodes[dep].dependents.add(r.address)

        cycle = find_cycle({a: n.dependencies for a, n in graph._nodes.items()})
        if cycle:
            raise DependencyCycleError(cycle)

        graph._compute_depths()
        logger.debug("Built graph with %d nodes and %d edges", len(graph), len(graph.edges()))
        return graph

    def _compute_depths(self) -> None:
        for address in self.topological_order():
            node = self._nodes[address]
            node.depth = max((self._nodes[d].depth + 1 for d in node.dependencies), default=0)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, address: str) -> bool:
        return address in self._nodes

    @property
    def addresses(self) -> List[str]:
        return sorted(self._nodes)

    @property
    def resources(self) -> List[Resource]:
        return [self._nodes[a].resource for a in self.topological_order()]

    def get(self, address: str) -> Resource:
        """Get a resource by address.

        Raises:
            KeyError: If the address is not in the graph
        """
        return self._nodes[address].resource

    def dependencies(self, address: str) -> List[str]:
        return sorted(self._nodes[address].dependencies)

    def dependents(self, address: str) -> List[str]:
        return sorted(self._nodes[address].dependents)

    def transitive_dependents(self, address: str) -> List[str]:
        """Everything that depends on ``address``, directly or not."""
        found: Set[str] = set()
        queue = deque(self._nodes[address].dependents)
        while queue:
            a = queue.popleft()
            if a in found:
                continue
            found.add(a)
            queue.extend(self._nodes[a].dependents)
        return sorted(found)

    def edges(self) -> List[tuple]:
        return sorted((a, d) for a, n in self._nodes.items() for d in n.dependencies)

    def topological_order(self) -> List[str]:
        return topological_sort({a: n.dependencies for a, n in self._nodes.items()})

    def reverse_order(self) -> List[str]:
        return list(reversed(self.topological_order()))

    def levels(self) -> List[List[str]]:
        """Group addresses by depth; each level only depends on earlier ones."""
        by_depth: Dict[int, List[str]] = defaultdict(list)
        for a, n in self._nodes.items():
            by_depth[n.depth].append(a)
        return [sorted(by_depth[d]) for d in sorted(by_depth)]

    # ------------------------------------------------------------------ rendering

    def to_dict(self) -> dict:
        return {
            "nodes": [
                {
                    "address": a,
                    "resource_type": self._nodes[a].resource.resource_type,
                    "provider": self._nodes[a].resource.provider,
                    "depth": self._nodes[a].depth,
                    "dependencies": self.dependencies(a),
                }
                for a in self.topological_order()
            ],
            "edges": [{"from": a, "to": d} for a, d in self.edges()],
            "levels": self.levels(),
        }

    def to_mermaid(self, styles: Optional[Dict[str, str]] = None) -> str:
        lines = ["flowchart LR"]
        for a in self.topological_order():
            lines.append(f"    {sanitize_node_id(a)}[{a}]")
        for a, d in self.edges():
            lines.append(f"    {sanitize_node_id(a)} --> {sanitize_node_id(d)}")
        for a, style in sorted((styles or {}).items()):
            if a in self._nodes and style:
                lines.append(f"    style {sanitize_node_id(a)} {style}")
        return "\n".join(lines)

    def to_dot(self) -> str:
        lines = ["digraph infraplan {", "    rankdir=LR;"]
        for a in self.topological_order():
            lines.append(f'    "{a}";')
        for a, d in self.edges():
            lines.append(f'    "{a}" -> "{d}";')
        lines.append("}")
        return "\n".join(lines)


def sanitize_node_id(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", name)
