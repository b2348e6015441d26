"""Tests for dependency ordering."""

import pytest

from stackop.dependency import (
    CyclicDependencyError,
    DependencyGraph,
    UnknownDependencyError,
)
from stackop.resources import ResourceKind


def stack_graph() -> DependencyGraph:
    graph = DependencyGraph()
    graph.add_node("network", kind=ResourceKind.NETWORK)
    graph.add_node("cluster", ["network"], kind=ResourceKind.CLUSTER)
    graph.add_node("cache", ["network"], kind=ResourceKind.CACHE)
    graph.add_node("namespace", ["cluster"], kind=ResourceKind.NAMESPACE)
    graph.add_node("ingress", ["namespace"], kind=ResourceKind.INGRESS_CONTROLLER)
    graph.add_node("app", ["namespace", "cache"], kind=ResourceKind.RELEASE)
    return graph


class TestDependencyGraph:
    """Tests for DependencyGraph."""

    def test_topological_sort(self) -> None:
        """Dependencies come before their dependents."""
        order = stack_graph().topological_sort()

        assert order.index("network") < order.index("cluster")
        assert order.index("network") < order.index("cache")
        assert order.index("cluster") < order.index("namespace")
        assert order.index("namespace") < order.index("app")
        assert order.index("cache") < order.index("app")

    def test_topological_sort_is_deterministic(self) -> None:
        assert stack_graph().topological_sort() == [
            "network",
            "cache",
            "cluster",
            "namespace",
            "app",
            "ingress",
        ]

    def test_destroy_order_is_reversed(self) -> None:
        graph = stack_graph()

        assert graph.destroy_order() == list(reversed(graph.topological_sort()))

    def test_cycle_detected(self) -> None:
        """Test that circular dependencies are rejected."""
        graph = DependencyGraph()
        graph.add_node("a", ["b"], kind=ResourceKind.NETWORK)
        graph.add_node("b", ["c"], kind=ResourceKind.NETWORK)
        graph.add_node("c", ["a"], kind=ResourceKind.NETWORK)

        with pytest.raises(CyclicDependencyError) as exc_info:
            graph.validate()

        assert "a" in str(exc_info.value)

    def test_unknown_dependency(self) -> None:
        graph = DependencyGraph()
        graph.add_node("cluster", ["network"], kind=ResourceKind.CLUSTER)

        with pytest.raises(UnknownDependencyError, match="network"):
            graph.validate()

    def test_get_ready(self) -> None:
        graph = stack_graph()

        assert graph.get_ready(set()) == ["network"]
        assert graph.get_ready({"network"}) == ["cache", "cluster"]
        assert graph.get_ready({"network", "cluster"}) == ["cache", "namespace"]

    def test_transitive_dependencies(self) -> None:
        assert stack_graph().transitive_dependencies("app") == {
            "namespace",
            "cluster",
            "network",
            "cache",
        }

    def test_hosting_clusters(self) -> None:
        """Platform resources map to the cluster they run on."""
        assert stack_graph().hosting_clusters() == {
            "namespace": "cluster",
            "ingress": "cluster",
            "app": "cluster",
        }

    def test_platform_resource_without_cluster_is_not_hosted(self) -> None:
        graph = DependencyGraph()
        graph.add_node("namespace", kind=ResourceKind.NAMESPACE)

        assert graph.hosting_clusters() == {}
