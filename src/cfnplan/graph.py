"""Resource dependency graph built from template references."""

import heapq
import json
from collections import deque
from typing import Dict, Iterable, List, Optional, Set, Tuple

from cfnplan.errors import CyclicDependencyError
from cfnplan.references import template_references
from cfnplan.schema import Template


class DependencyGraph:
    """
    Directed graph where an edge ``a -> b`` means resource ``a`` depends on ``b``.

    Node order is the declaration order of the template; every ordering the
    graph produces breaks ties by that order so plans are reproducible.
    """

    def __init__(self, nodes: Iterable[str], edges: Iterable[Tuple[str, str]]):
        self._nodes: List[str] = list(dict.fromkeys(nodes))
        self._position = {name: index for index, name in enumerate(self._nodes)}
        self._dependencies: Dict[str, Set[str]] = {name: set() for name in self._nodes}
        self._dependents: Dict[str, Set[str]] = {name: set() for name in self._nodes}
        for source, target in edges:
            # edges to parameters or to resources outside the graph are not dependencies
            if source in self._position and target in self._position:
                self._dependencies[source].add(target)
                self._dependents[target].add(source)

    @classmethod
    def from_template(
        cls, template: Template, active: Optional[Iterable[str]] = None
    ) -> "DependencyGraph":
        if active is None:
            nodes = list(template.resources)
        else:
            selected = set(active)
            nodes = [name for name in template.resources if name in selected]
        edges = [
            (reference.source, reference.target)
            for reference in template_references(template)
            if reference.section == "Resources"
        ]
        return cls(nodes, edges)

    @property
    def nodes(self) -> List[str]:
        return list(self._nodes)

    def __contains__(self, name: object) -> bool:
        return name in self._position

    def __len__(self) -> int:
        return len(self._nodes)

    def edges(self) -> List[Tuple[str, str]]:
        return [
            (source, target)
            for source in self._nodes
            for target in self._ordered(self._dependencies[source])
        ]

    def dependencies(self, name: str) -> List[str]:
        return self._ordered(self._dependencies[name])

    def dependents(self, name: str) -> List[str]:
        return self._ordered(self._dependents[name])

    def transitive_dependents(self, name: str) -> List[str]:
        """Everything that directly or indirectly depends on ``name``."""
        seen: Set[str] = set()
        queue = deque([name])
        while queue:
            current = queue.popleft()
            for dependent in self._dependents[current]:
                if dependent not in seen and dependent != name:
                    seen.add(dependent)
                    queue.append(dependent)
        return self._ordered(seen)

    def find_cycles(self) -> List[List[str]]:
        """
        Find dependency cycles.

        One cycle is reported for every back edge of a depth-first walk in
        declaration order, so cycles sharing a resource are all listed. Each
        cycle is returned as a closed path (``[a, b, a]``), rotated so it
        starts at its earliest declared member, and reported once.
        """
        cycles: List[List[str]] = []
        reported: Set[Tuple[str, ...]] = set()
        done: Set[str] = set()

        for start in self._nodes:
            if start in done:
                continue
            # iterative so long dependency chains do not hit the recursion limit
            path: List[str] = [start]
            on_path: Dict[str, int] = {start: 0}
            stack = [iter(self.dependencies(start))]
            while stack:
                neighbor = next(stack[-1], None)
                if neighbor is None:
                    stack.pop()
                    node = path.pop()
                    del on_path[node]
                    done.add(node)
                elif neighbor in on_path:
                    members = path[on_path[neighbor] :]
                    first = min(
                        range(len(members)),
                        key=lambda i: self._position[members[i]],
                    )
                    normalised = tuple(members[first:] + members[:first])
                    if normalised not in reported:
                        reported.add(normalised)
                        cycles.append(list(normalised) + [normalised[0]])
                elif neighbor not in done:
                    on_path[neighbor] = len(path)
                    path.append(neighbor)
                    stack.append(iter(self.dependencies(neighbor)))
        return cycles

    def topological_order(self) -> List[str]:
        """Return resources so that every resource comes after its dependencies."""
        remaining = {name: len(deps) for name, deps in self._dependencies.items()}
        ready = [
            self._position[name] for name, count in remaining.items() if count == 0
        ]
        heapq.heapify(ready)
        order: List[str] = []

        while ready:
            name = self._nodes[heapq.heappop(ready)]
            order.append(name)
            for dependent in self._dependents[name]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, self._position[dependent])

        if len(order) != len(self._nodes):
            raise CyclicDependencyError(self.find_cycles())
        return order

    def waves(self) -> List[List[str]]:
        """Group resources into levels that can be provisioned in parallel."""
        level: Dict[str, int] = {}
        for name in self.topological_order():
            level[name] = 1 + max(
                (level[dependency] for dependency in self._dependencies[name]),
                default=-1,
            )
        depth = max(level.values(), default=-1) + 1
        waves: List[List[str]] = [[] for _ in range(depth)]
        for name in self._nodes:
            waves[level[name]].append(name)
        return waves

    def to_dot(self, name: str = "template") -> str:
        """Render the graph in Graphviz dot syntax, arrows pointing at dependencies."""
        lines = [f"digraph {json.dumps(name)} {{", "  rankdir=BT;"]
        for node in self._nodes:
            lines.append(f"  {json.dumps(node)};")
        for source, target in self.edges():
            lines.append(f"  {json.dumps(source)} -> {json.dumps(target)};")
        lines.append("}")
        return "\n".join(lines) + "\n"

    def _ordered(self, names: Iterable[str]) -> List[str]:
        return sorted(names, key=self._position.__getitem__)
