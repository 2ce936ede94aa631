"""Resolved-state snapshot: what the provisioner has actually created."""

from dataclasses import dataclass, field
from typing import Any

from rollout.graph.resources import Resource, ResourceKind


@dataclass(frozen=True)
class ResolvedResource:
    """A provisioned resource with its provider identifier and outputs."""

    name: str
    kind: ResourceKind
    identifier: str
    outputs: dict[str, Any] = field(default_factory=dict)
    config: dict[str, Any] = field(default_factory=dict)
    depends_on: frozenset[str] = frozenset()
    retired_from: str | None = None

    @property
    def retired(self) -> bool:
        """Superseded by a replacement and waiting to be deleted."""
        return self.retired_from is not None

    @classmethod
    def from_resource(cls, resource: Resource, identifier: str, outputs: dict[str, Any]) -> "ResolvedResource":
        return cls(
            name=resource.name,
            kind=resource.kind,
            identifier=identifier,
            outputs=dict(outputs),
            config=resource.config.to_dict(),
            depends_on=resource.depends_on,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "identifier": self.identifier,
            "outputs": self.outputs,
            "config": self.config,
            "depends_on": sorted(self.depends_on),
            "retired_from": self.retired_from,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResolvedResource":
        return cls(
            name=data["name"],
            kind=ResourceKind(data["kind"]),
            identifier=data["identifier"],
            outputs=dict(data.get("outputs") or {}),
            config=dict(data.get("config") or {}),
            depends_on=frozenset(data.get("depends_on") or ()),
            retired_from=data.get("retired_from"),
        )


class ResolvedState:
    """Immutable mapping of resource name to ResolvedResource.

    Every provisioner call takes a state and returns a new one; nothing is
    shared between calls.
    """

    def __init__(self, resources: dict[str, ResolvedResource] | None = None) -> None:
        self._resources = dict(resources or {})

    def get(self, name: str) -> ResolvedResource | None:
        return self._resources.get(name)

    def __getitem__(self, name: str) -> ResolvedResource:
        return self._resources[name]

    def __contains__(self, name: object) -> bool:
        return name in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ResolvedState) and self._resources == other._resources

    def names(self) -> list[str]:
        return sorted(self._resources)

    def items(self) -> list[tuple[str, ResolvedResource]]:
        return [(n, self._resources[n]) for n in self.names()]

    def with_resource(self, resolved: ResolvedResource) -> "ResolvedState":
        resources = dict(self._resources)
        resources[resolved.name] = resolved
        return ResolvedState(resources)

    def without(self, name: str) -> "ResolvedState":
        resources = dict(self._resources)
        resources.pop(name, None)
        return ResolvedState(resources)

    def dependents(self, name: str) -> set[str]:
        """Names of live (not retired) resources that depend directly on ``name``."""
        return {n for n, r in self._resources.items() if name in r.depends_on and not r.retired}

    def retired(self) -> list[ResolvedResource]:
        return [r for _, r in self.items() if r.retired]

    def to_dict(self) -> dict[str, Any]:
        return {"resources": [r.to_dict() for _, r in self.items()]}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ResolvedState":
        resources = [ResolvedResource.from_dict(r) for r in (data or {}).get("resources") or []]
        return cls({r.name: r for r in resources})
