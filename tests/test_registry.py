"""Tests for the provider registry."""

import pytest

from rollout.errors import ConfigurationError
from rollout.graph.resources import ResourceKind
from rollout.provisioner.registry import ProviderRegistry
from rollout.providers.memory import MEMORY, InMemoryCloud, MemoryNetwork


def test_register_adds_provider_class() -> None:
    """A class decorated with @register is built for its kind."""
    registry = ProviderRegistry("test")

    @registry.register(ResourceKind.NETWORK)
    class Network:
        def __init__(self, value: int) -> None:
            self.value = value

    assert registry.kinds() == [ResourceKind.NETWORK]
    assert Network.__name__ == "Network"


def test_build_requires_every_kind() -> None:
    """A backend missing providers cannot be built."""
    registry = ProviderRegistry("partial")
    registry.register(ResourceKind.NETWORK)(MemoryNetwork)
    with pytest.raises(ConfigurationError, match="partial backend has no provider for"):
        registry.build(InMemoryCloud())


def test_memory_backend_covers_every_kind() -> None:
    """The memory backend provides every resource kind with a shared cloud."""
    cloud = InMemoryCloud()
    providers = MEMORY.build(cloud)
    assert set(providers) == set(ResourceKind)
    assert all(p.cloud is cloud for p in providers.values())
