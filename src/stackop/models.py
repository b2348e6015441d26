"""Pydantic models for stack definition files.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Reference binding: `${name}` placeholders in properties and chart values
   are replaced with the name actually in effect for that resource
"""

from __future__ import annotations

import re
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import (
    DEFAULT_RESOURCE_TIMEOUT_SECONDS,
    MAX_RESOURCE_TIMEOUT_SECONDS,
    MIN_RESOURCE_TIMEOUT_SECONDS,
)
from .dependency import DependencyError, DependencyGraph
from .resources import HELM_KINDS, MAX_NAME_LENGTHS, ResourceKind

LOGICAL_NAME_PATTERN = r"^[a-z][a-z0-9-]{0,62}$"
DNS_LABEL_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"
ARM_NAME_PATTERN = r"^[a-zA-Z0-9]([a-zA-Z0-9-_.]*[a-zA-Z0-9])?$"

REFERENCE_PATTERN = re.compile(r"\$\{([a-z][a-z0-9-]*)\}")


def find_references(value: Any) -> set[str]:
    """Collect `${name}` placeholders from nested dicts, lists and strings."""
    if isinstance(value, str):
        return set(REFERENCE_PATTERN.findall(value))
    if isinstance(value, dict):
        found: set[str] = set()
        for item in value.values():
            found |= find_references(item)
        return found
    if isinstance(value, list):
        found = set()
        for item in value:
            found |= find_references(item)
        return found
    return set()


def bind_references(value: Any, names: dict[str, str]) -> Any:
    """Replace `${name}` placeholders with names in effect."""
    if isinstance(value, str):
        return REFERENCE_PATTERN.sub(lambda m: names.get(m.group(1), m.group(0)), value)
    if isinstance(value, dict):
        return {k: bind_references(v, names) for k, v in value.items()}
    if isinstance(value, list):
        return [bind_references(v, names) for v in value]
    return value


class ChartConfig(BaseModel):
    """Helm chart coordinates for ingress controller and release kinds."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    chart: Annotated[str, Field(min_length=1)]
    repository: str | None = None
    version: str | None = None
    namespace: Annotated[str, Field(min_length=1, max_length=63)] = "default"
    values: dict[str, Any] = Field(default_factory=dict)

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        if not REFERENCE_PATTERN.fullmatch(v) and not re.match(DNS_LABEL_PATTERN, v):
            raise ValueError(f"namespace must be a DNS label or a ${{reference}}: {v}")
        return v

    @field_validator("repository")
    @classmethod
    def validate_repository(cls, v: str | None) -> str | None:
        if v is not None and not v.startswith(("https://", "oci://")):
            raise ValueError("repository must be an https:// or oci:// URL")
        return v


class ResourceDefinition(BaseModel):
    """One logical resource in the stack."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(pattern=LOGICAL_NAME_PATTERN)]
    kind: ResourceKind
    stable_name: Annotated[str, Field(min_length=1, alias="stableName")]
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    optional: bool = False
    timeout_seconds: Annotated[
        int,
        Field(
            ge=MIN_RESOURCE_TIMEOUT_SECONDS,
            le=MAX_RESOURCE_TIMEOUT_SECONDS,
            alias="timeoutSeconds",
        ),
    ] = DEFAULT_RESOURCE_TIMEOUT_SECONDS

    # Cloud kinds: passed through into the ARM resource body
    api_version: str | None = Field(None, alias="apiVersion")
    location: str | None = None
    sku: dict[str, Any] | None = None
    identity: dict[str, Any] | None = None
    properties: dict[str, Any] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)

    # Helm kinds
    chart: ChartConfig | None = None

    @model_validator(mode="after")
    def validate_kind_fields(self) -> ResourceDefinition:
        max_length = MAX_NAME_LENGTHS[self.kind]
        if len(self.stable_name) > max_length:
            raise ValueError(
                f"stableName exceeds {max_length} characters for kind {self.kind.value}"
            )

        pattern = DNS_LABEL_PATTERN if self.kind.is_platform else ARM_NAME_PATTERN
        if not re.match(pattern, self.stable_name):
            raise ValueError(f"stableName is not valid for kind {self.kind.value}: {pattern}")

        if self.kind in HELM_KINDS and self.chart is None:
            raise ValueError(f"chart is required for kind {self.kind.value}")
        if self.kind not in HELM_KINDS and self.chart is not None:
            raise ValueError(f"chart is only allowed for helm kinds, not {self.kind.value}")

        if self.name in self.depends_on:
            raise ValueError(f"resource '{self.name}' cannot depend on itself")

        undeclared = self.references() - set(self.depends_on)
        if undeclared:
            raise ValueError(f"references must also be listed in dependsOn: {sorted(undeclared)}")
        return self

    def references(self) -> set[str]:
        """Logical names referenced via `${name}` placeholders."""
        refs = find_references(self.properties)
        if self.chart is not None:
            refs |= find_references(self.chart.values)
            refs |= find_references(self.chart.namespace)
        return refs

    def bind(self, names: dict[str, str]) -> ResourceDefinition:
        """Return a copy with placeholders replaced by names in effect."""
        update: dict[str, Any] = {"properties": bind_references(self.properties, names)}
        if self.chart is not None:
            update["chart"] = self.chart.model_copy(
                update={
                    "namespace": bind_references(self.chart.namespace, names),
                    "values": bind_references(self.chart.values, names),
                }
            )
        return self.model_copy(update=update)


class StackSpec(BaseModel):
    """A complete stack: defaults plus its resources."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    description: str | None = None
    location: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)
    resources: Annotated[list[ResourceDefinition], Field(min_length=1)]

    @field_validator("resources")
    @classmethod
    def validate_unique(cls, v: list[ResourceDefinition]) -> list[ResourceDefinition]:
        names = [r.name for r in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate resource names: {duplicates}")

        keys = [(r.kind, r.stable_name) for r in v]
        clashes = sorted({f"{k.value}/{s}" for k, s in keys if keys.count((k, s)) > 1})
        if clashes:
            raise ValueError(f"duplicate stableName within a kind: {clashes}")
        return v

    @model_validator(mode="after")
    def validate_graph(self) -> StackSpec:
        try:
            self.graph().validate()
        except DependencyError as e:
            raise ValueError(str(e)) from e
        return self

    def graph(self) -> DependencyGraph:
        graph = DependencyGraph()
        for resource in self.resources:
            graph.add_node(resource.name, list(resource.depends_on), kind=resource.kind)
        return graph

    def resource(self, name: str) -> ResourceDefinition:
        for resource in self.resources:
            if resource.name == name:
                return resource
        raise KeyError(name)
