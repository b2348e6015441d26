"""Tests for the managed resource record and its lifecycle."""

import pytest
from fakes import standard_spec

from stackop.resources import (
    LifecycleError,
    LifecycleState,
    ManagedResource,
    ResolutionAction,
    ResolutionDecision,
    ResourceKind,
)


def fresh() -> ManagedResource:
    return ManagedResource("redis", ResourceKind.CACHE, "redis-demo")


class TestLifecycle:
    """Tests for ManagedResource transitions."""

    def test_happy_path(self) -> None:
        resource = fresh()
        resource.apply_decision(
            ResolutionDecision(ResolutionAction.CREATE_DISAMBIGUATED, "not found", "redis-demo")
        )
        resource.transition(LifecycleState.PROVISIONING)
        resource.transition(LifecycleState.READY, "ready")
        resource.transition(LifecycleState.DESTROYING)
        resource.transition(LifecycleState.DESTROYED)

        assert resource.lifecycle_state == LifecycleState.DESTROYED
        assert resource.current_name == "redis-demo"

    def test_ready_requires_resolution(self) -> None:
        with pytest.raises(LifecycleError, match="Unresolved -> Ready"):
            fresh().transition(LifecycleState.READY)

    def test_destroyed_is_terminal(self) -> None:
        resource = fresh()
        resource.transition(LifecycleState.DESTROYING)
        resource.transition(LifecycleState.DESTROYED)

        with pytest.raises(LifecycleError):
            resource.transition(LifecycleState.DESTROYING)

    def test_reason_kept_when_not_given(self) -> None:
        resource = fresh()
        resource.transition(LifecycleState.FAILED, "quota")
        resource.transition(LifecycleState.DESTROYING)

        assert resource.reason == "quota"

    def test_name_cannot_be_reassigned(self) -> None:
        """The name in effect is fixed once resolution assigned it."""
        resource = fresh()
        resource.assign_name("redis-demo")
        resource.assign_name("redis-demo")

        with pytest.raises(LifecycleError, match="refusing to reassign"):
            resource.assign_name("redis-demo-x1")

    def test_skip_decision_assigns_no_name(self) -> None:
        resource = fresh()
        resource.apply_decision(ResolutionDecision(ResolutionAction.SKIP, "state indeterminate"))

        assert resource.current_name is None
        assert resource.lifecycle_state == LifecycleState.RESOLVED
        assert resource.reason == "state indeterminate"

    def test_from_definition(self) -> None:
        resource = ManagedResource.from_definition(standard_spec().resource("app"))

        assert resource.logical_name == "app"
        assert resource.kind == ResourceKind.RELEASE
        assert resource.depends_on == ["ns", "redis"]
        assert resource.definition is not None


class TestResourceKind:
    def test_platform_kinds(self) -> None:
        assert ResourceKind.NAMESPACE.is_platform
        assert ResourceKind.RELEASE.is_platform
        assert not ResourceKind.CLUSTER.is_platform
