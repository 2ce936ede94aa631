"""Provisioning context: the step's resource, its resolved dependencies, and exported values."""

from dataclasses import dataclass, field
from typing import Any

from rollout.errors import ConfigurationError
from rollout.graph.resources import Resource, ResourceKind
from rollout.provisioner.state import ResolvedResource


@dataclass
class ProvisionContext:
    """Context passed to providers: the resource (None on delete) plus already-resolved upstream resources."""

    name: str
    resource: Resource | None = None
    dependencies: dict[str, ResolvedResource] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)
    replacing: ResolvedResource | None = None
    _exports: dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> ResolvedResource | Any:
        """Resolved dependency by logical name; return default if missing."""
        return self.dependencies.get(name, default)

    def require(self, name: str) -> ResolvedResource:
        """Resolved dependency by logical name; raise ConfigurationError listing available names if missing."""
        if name not in self.dependencies:
            available = ", ".join(sorted(self.dependencies)) or "(none)"
            raise ConfigurationError(
                f"{self.name}: missing resolved dependency {name!r}. Available: {available}"
            )
        return self.dependencies[name]

    def require_kind(self, kind: ResourceKind) -> ResolvedResource:
        """The single resolved dependency of ``kind``."""
        matches = [r for _, r in sorted(self.dependencies.items()) if r.kind == kind]
        if len(matches) != 1:
            available = ", ".join(f"{n} ({r.kind.value})" for n, r in sorted(self.dependencies.items())) or "(none)"
            raise ConfigurationError(
                f"{self.name}: expected exactly one {kind.value} dependency. Available: {available}"
            )
        return matches[0]

    def output(self, name: str, key: str) -> Any:
        """Output ``key`` of dependency ``name``."""
        resolved = self.require(name)
        if key not in resolved.outputs:
            raise ConfigurationError(f"{self.name}: dependency {name!r} has no output {key!r}")
        return resolved.outputs[key]

    def export(self, key: str, value: Any) -> None:
        """Record a value for operators (printed by the CLI after apply)."""
        self._exports[key] = value

    @property
    def exports(self) -> dict[str, Any]:
        return dict(self._exports)
