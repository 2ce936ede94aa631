"""Resource graph: named resources plus the dependency relation between them."""

import heapq

from rollout.errors import CyclicDependencyError, DanglingReferenceError, DuplicateNameError
from rollout.graph.resources import Resource


class ResourceGraph:
    """Directed acyclic graph of resources keyed by logical name.

    The graph is pure data. Ordering helpers break ties lexicographically so
    the same graph always yields the same order.
    """

    def __init__(self, resources: list[Resource] | None = None) -> None:
        self._resources: dict[str, Resource] = {}
        for resource in resources or []:
            self.add_resource(resource)

    def add_resource(self, resource: Resource) -> None:
        """Add a resource; raise DuplicateNameError if the name is taken."""
        if resource.name in self._resources:
            raise DuplicateNameError(resource.name)
        self._resources[resource.name] = resource

    def get(self, name: str) -> Resource:
        return self._resources[name]

    def __contains__(self, name: object) -> bool:
        return name in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    def names(self) -> list[str]:
        return sorted(self._resources)

    def resources(self) -> list[Resource]:
        return [self._resources[n] for n in self.names()]

    def dependents(self, name: str) -> set[str]:
        """Names of resources that depend directly on ``name``."""
        return {r.name for r in self._resources.values() if name in r.depends_on}

    def validate(self) -> None:
        """Check that every dependency exists and that there are no cycles."""
        for resource in self.resources():
            for dep in sorted(resource.depends_on):
                if dep not in self._resources:
                    raise DanglingReferenceError(resource.name, dep)
        cycle = self._find_cycle()
        if cycle:
            raise CyclicDependencyError(cycle)

    def _find_cycle(self) -> list[str] | None:
        white, grey, black = 0, 1, 2
        color = dict.fromkeys(self._resources, white)
        stack: list[str] = []

        def visit(name: str) -> list[str] | None:
            color[name] = grey
            stack.append(name)
            for dep in sorted(self._resources[name].depends_on):
                if color[dep] == grey:
                    return stack[stack.index(dep):] + [dep]
                if color[dep] == white:
                    found = visit(dep)
                    if found:
                        return found
            stack.pop()
            color[name] = black
            return None

        for name in self.names():
            if color[name] == white:
                found = visit(name)
                if found:
                    return found
        return None

    def topological_levels(self) -> list[list[str]]:
        """Group resources into levels; every dependency sits in an earlier level.

        Resources in one level have no edges between them and may be applied in
        parallel. Each level is sorted by name.
        """
        self.validate()
        indegree = {name: len(r.depends_on) for name, r in self._resources.items()}
        dependents: dict[str, list[str]] = {name: [] for name in self._resources}
        for name, resource in self._resources.items():
            for dep in resource.depends_on:
                dependents[dep].append(name)

        levels: list[list[str]] = []
        ready = sorted(name for name, deg in indegree.items() if deg == 0)
        while ready:
            levels.append(ready)
            nxt: list[str] = []
            for name in ready:
                for child in dependents[name]:
                    indegree[child] -= 1
                    if indegree[child] == 0:
                        nxt.append(child)
            ready = sorted(nxt)
        return levels

    def topological_order(self) -> list[str]:
        """Deterministic order: among resources whose dependencies are met, the smallest name goes first."""
        self.validate()
        indegree = {name: len(r.depends_on) for name, r in self._resources.items()}
        heap = [name for name, deg in indegree.items() if deg == 0]
        heapq.heapify(heap)
        order: list[str] = []
        while heap:
            name = heapq.heappop(heap)
            order.append(name)
            for child in sorted(self.dependents(name)):
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(heap, child)
        return order
