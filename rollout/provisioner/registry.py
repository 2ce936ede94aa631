"""Provider registry: one provider class per resource kind, per backend."""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from rollout.errors import ConfigurationError
from rollout.graph.resources import Resource, ResourceKind
from rollout.provisioner.context import ProvisionContext
from rollout.provisioner.state import ResolvedResource


@dataclass
class ProviderResult:
    """What a provider hands back: the cloud identifier plus outputs for dependents."""

    identifier: str
    outputs: dict[str, Any] = field(default_factory=dict)


class ResourceProvider(Protocol):
    """Protocol for per-kind providers. ``create`` must adopt an existing resource of the same name."""

    def create(self, resource: Resource, ctx: ProvisionContext) -> ProviderResult:
        ...

    def update(self, resource: Resource, previous: ResolvedResource, ctx: ProvisionContext) -> ProviderResult:
        ...

    def delete(self, resolved: ResolvedResource, ctx: ProvisionContext) -> None:
        ...


class IdentityProvider(Protocol):
    """Issues an execution identity holding ``permissions``; returns an opaque reference."""

    def issue(self, name: str, permissions: list[str] | tuple[str, ...]) -> str:
        ...


class ProviderRegistry:
    """Named set of provider classes keyed by kind."""

    def __init__(self, backend: str) -> None:
        self.backend = backend
        self._classes: dict[ResourceKind, type] = {}

    def register(self, kind: ResourceKind) -> Callable[[type], type]:
        """Decorator to register a provider class for ``kind``."""

        def decorator(cls: type) -> type:
            self._classes[kind] = cls
            return cls

        return decorator

    def kinds(self) -> list[ResourceKind]:
        return sorted(self._classes, key=lambda k: k.value)

    def build(self, *args: Any, **kwargs: Any) -> dict[ResourceKind, ResourceProvider]:
        """Instantiate every registered provider with the same constructor arguments."""
        missing = [k.value for k in ResourceKind if k not in self._classes]
        if missing:
            raise ConfigurationError(f"{self.backend} backend has no provider for: {', '.join(missing)}")
        return {kind: cls(*args, **kwargs) for kind, cls in self._classes.items()}
