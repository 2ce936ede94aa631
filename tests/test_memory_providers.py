"""Tests for the in-memory cloud backend."""

import pytest

from rollout.errors import ProviderError
from rollout.graph.resources import ResourceKind
from rollout.providers.memory import CloudRecord, InMemoryCloud


def test_injected_failure_fires_once() -> None:
    """An injected failure raises on the next matching call only."""
    cloud = InMemoryCloud()
    cloud.fail("create", "vpc")
    with pytest.raises(ProviderError, match="injected create failure"):
        cloud.call("create", "vpc")
    cloud.call("create", "vpc")
    assert cloud.calls_for("create") == ["vpc", "vpc"]


def test_find_matches_kind_name_and_config() -> None:
    """Adoption lookups respect the excluded identifier and an optional config match."""
    cloud = InMemoryCloud()
    first = cloud.allocate("taskdef", CloudRecord(ResourceKind.TASK_TEMPLATE, "task-template", {"image_tag": "a"}))
    assert cloud.find(ResourceKind.TASK_TEMPLATE, "task-template") == first
    assert cloud.find(ResourceKind.TASK_TEMPLATE, "task-template", exclude=first) is None
    assert cloud.find(ResourceKind.TASK_TEMPLATE, "task-template", config={"image_tag": "b"}) is None
    assert cloud.find(ResourceKind.CLUSTER, "task-template") is None


def test_remove_is_idempotent() -> None:
    """Removing an identifier that is already gone is not an error."""
    cloud = InMemoryCloud()
    identifier = cloud.allocate("vpc", CloudRecord(ResourceKind.NETWORK, "vpc", {}))
    cloud.remove(identifier)
    cloud.remove(identifier)
    assert cloud.names() == []
