"""Orchestration report: the structured result of one run.

The report always has one entry per declared resource, in spec order, and
always carries the same keys whether a deploy succeeded, a teardown ran
through every tier, or nothing could be done at all.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .resources import LifecycleState, ManagedResource
from .teardown import TeardownReport


class Operation(str, Enum):
    DEPLOY = "deploy"
    PLAN = "plan"
    DESTROY = "destroy"


@dataclass(frozen=True)
class ResourceReportEntry:
    """Final state of one resource."""

    name: str
    kind: str
    stable_name: str
    current_name: str | None
    origin: str | None
    lifecycle_state: str
    action: str | None
    reason: str
    optional: bool = False

    @classmethod
    def from_resource(cls, resource: ManagedResource) -> ResourceReportEntry:
        return cls(
            name=resource.logical_name,
            kind=resource.kind.value,
            stable_name=resource.stable_name,
            current_name=resource.current_name,
            origin=resource.origin.value if resource.origin else None,
            lifecycle_state=resource.lifecycle_state.value,
            action=resource.decision.action.value if resource.decision else None,
            reason=resource.reason,
            optional=resource.optional,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "stable_name": self.stable_name,
            "current_name": self.current_name,
            "origin": self.origin,
            "lifecycle_state": self.lifecycle_state,
            "action": self.action,
            "reason": self.reason,
        }


@dataclass
class OrchestrationReport:
    """Result of a deploy, plan or destroy run."""

    operation: Operation
    stack: str
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    entries: list[ResourceReportEntry] = field(default_factory=list)
    teardown: TeardownReport | None = None

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def succeeded(self) -> bool:
        """Whether the run achieved its goal for every required resource."""
        if self.operation == Operation.DESTROY:
            return self.teardown is not None and self.teardown.complete

        required = [e for e in self.entries if not e.optional]
        if self.operation == Operation.PLAN:
            return all(e.lifecycle_state != LifecycleState.FAILED.value for e in required)
        return all(e.lifecycle_state == LifecycleState.READY.value for e in required)

    def finish(self, resources: list[ManagedResource]) -> OrchestrationReport:
        self.entries = [ResourceReportEntry.from_resource(r) for r in resources]
        self.finished_at = datetime.now(UTC)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "operation": self.operation.value,
            "stack": self.stack,
            "started_at": self.started_at.isoformat().replace("+00:00", "Z"),
            "finished_at": (
                self.finished_at.isoformat().replace("+00:00", "Z") if self.finished_at else None
            ),
            "succeeded": self.succeeded,
            "resources": [e.to_dict() for e in self.entries],
            "teardown": self.teardown.to_dict() if self.teardown is not None else None,
        }

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True)

    def to_text(self) -> str:
        """Human-readable table for terminals."""
        lines = [
            f"{self.operation.value} {self.stack} (run {self.run_id}): "
            f"{'succeeded' if self.succeeded else 'FAILED'}",
        ]
        for e in self.entries:
            lines.append(
                f"  {e.name:<20} {e.kind:<18} {e.lifecycle_state:<12} "
                f"{(e.action or '-'):<20} {e.current_name or '-':<32} {e.reason}"
            )
        if self.teardown is not None:
            for tier in self.teardown.tier_results:
                lines.append(f"  tier {tier.name:<16} {tier.status.value:<10} {tier.detail}")
                for command in tier.result.guidance if tier.result else []:
                    lines.append(f"    $ {command}")
            lines.append(f"  effective tier: {self.teardown.effective_tier or '-'}")
            for r in self.teardown.remaining:
                lines.append(f"  remaining: {r.logical_name} ({r.kind.value}) {r.reason}")
        return "\n".join(lines)
