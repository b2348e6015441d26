"""Resource dependency ordering and validation.

Resources declare what they need via `dependsOn` in the stack spec:

```yaml
resources:
  - name: cluster
    kind: cluster
    stableName: aks-lp-dev
    dependsOn: [network]
  - name: ingress
    kind: ingressController
    stableName: ingress-nginx
    dependsOn: [cluster]
```

The graph provides:
1. Cycle and unknown-dependency detection at spec load time
2. Deterministic deploy order (dependencies first) and destroy order
3. The hosting cluster of every platform resource, used by teardown
   verification
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .resources import ResourceKind

logger = logging.getLogger(__name__)


class DependencyError(Exception):
    """Raised when dependency validation fails."""

    pass


class CyclicDependencyError(DependencyError):
    """Raised when a dependency cycle is detected."""

    pass


class UnknownDependencyError(DependencyError):
    """Raised when a resource depends on a name that is not declared."""

    pass


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    name: str
    kind: ResourceKind | None = None
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DependencyGraph:
    """Directed acyclic graph of resource dependencies."""

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    def add_node(
        self,
        name: str,
        depends_on: list[str] | None = None,
        kind: ResourceKind | None = None,
    ) -> None:
        """Add a node to the dependency graph.

        Args:
            name: Logical resource name.
            depends_on: Logical names this resource depends on.
            kind: Resource kind, used for hosting lookups.
        """
        if name in self.nodes:
            node = self.nodes[name]
            if depends_on:
                node.depends_on = depends_on
            if kind is not None:
                node.kind = kind
        else:
            self.nodes[name] = DependencyNode(name=name, kind=kind, depends_on=depends_on or [])

        # Ensure all dependencies have nodes (even if not yet defined)
        for dep in depends_on or []:
            if dep not in self.nodes:
                self.nodes[dep] = DependencyNode(name=dep)

    def validate(self) -> None:
        """Validate the graph for undeclared dependencies and cycles.

        Raises:
            UnknownDependencyError: If a dependency was never declared.
            CyclicDependencyError: If a cycle is detected.
        """
        undeclared = sorted(n.name for n in self.nodes.values() if n.kind is None)
        if undeclared:
            raise UnknownDependencyError(f"Undeclared dependencies: {undeclared}")

        # Kahn's algorithm for cycle detection
        in_degree: dict[str, int] = {node: 0 for node in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep in in_degree:
                    in_degree[dep] += 1

        queue = [node for node, degree in in_degree.items() if degree == 0]
        processed = 0

        while queue:
            current = queue.pop(0)
            processed += 1

            for dep in self.nodes[current].depends_on:
                if dep in in_degree:
                    in_degree[dep] -= 1
                    if in_degree[dep] == 0:
                        queue.append(dep)

        if processed != len(self.nodes):
            cycle_nodes = sorted(node for node, degree in in_degree.items() if degree > 0)
            raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_nodes}")

    def topological_sort(self) -> list[str]:
        """Return names in deploy order (dependencies first).

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()

        dependents: dict[str, list[str]] = {node: [] for node in self.nodes}
        in_degree: dict[str, int] = {node: 0 for node in self.nodes}

        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep in dependents:
                    dependents[dep].append(node.name)
                    in_degree[node.name] += 1

        result: list[str] = []
        queue = [node for node, degree in in_degree.items() if degree == 0]

        while queue:
            # Sort for deterministic ordering among nodes with same in_degree
            queue.sort()
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result

    def destroy_order(self) -> list[str]:
        """Return names in teardown order (dependents first)."""
        return list(reversed(self.topological_sort()))

    def get_ready(self, satisfied: set[str]) -> list[str]:
        """Get resources whose dependencies are all satisfied.

        Args:
            satisfied: Names already Ready.
        """
        ready = []
        for node in self.nodes.values():
            if node.name in satisfied:
                continue
            if all(dep in satisfied for dep in node.depends_on):
                ready.append(node.name)
        return sorted(ready)

    def transitive_dependencies(self, name: str) -> set[str]:
        """All direct and indirect dependencies of a resource."""
        seen: set[str] = set()
        stack = list(self.nodes[name].depends_on)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.nodes[current].depends_on)
        return seen

    def hosting_clusters(self) -> dict[str, str]:
        """Map each platform resource to the cluster it (transitively) depends on.

        Platform resources with no cluster among their dependencies are left
        out; they run on whatever cluster the kube context points at.
        """
        hosted: dict[str, str] = {}
        for node in self.nodes.values():
            if node.kind is None or not node.kind.is_platform:
                continue
            clusters = sorted(
                dep
                for dep in self.transitive_dependencies(node.name)
                if self.nodes[dep].kind == ResourceKind.CLUSTER
            )
            if len(clusters) > 1:
                logger.warning(
                    "Platform resource depends on several clusters, using the first",
                    extra={"resource": node.name, "clusters": clusters},
                )
            if clusters:
                hosted[node.name] = clusters[0]
        return hosted
