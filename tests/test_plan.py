"""Tests for planning: diffing a resource graph against resolved state."""

from rollout.config import EngineConfig
from rollout.graph.model import ResourceGraph
from rollout.graph.stack import (
    CLUSTER,
    LISTENER,
    LOAD_BALANCER,
    NETWORK,
    PRIVATE_SUBNET,
    REGISTRY,
    SERVICE,
    TARGET_GROUP,
    TASK_TEMPLATE,
    build_service_graph,
)
from rollout.provisioner import Action, Provisioner, ResolvedResource, ResolvedState
from rollout.providers.memory import MEMORY, InMemoryCloud


def _make_config(**sections) -> EngineConfig:
    data = {
        "apiVersion": "rollout.engine/v1",
        "kind": "Service",
        "metadata": {"name": "web"},
        "spec": {"region": "us-west-2", **sections},
    }
    return EngineConfig.from_dict(data)


def _applied(graph: ResourceGraph):
    provisioner = Provisioner(MEMORY.build(InMemoryCloud()))
    return provisioner, provisioner.apply(provisioner.plan(graph, ResolvedState()), ResolvedState())


def test_empty_state_creates_everything() -> None:
    """Every resource is created when nothing is provisioned."""
    graph = build_service_graph(_make_config(), "abc1234")
    plan = Provisioner(MEMORY.build(InMemoryCloud())).plan(graph, ResolvedState())
    assert all(s.action == Action.CREATE for s in plan.steps)
    assert plan.order == graph.topological_order()
    assert plan.summary()["create"] == len(graph)


def test_unchanged_graph_is_noop() -> None:
    """Planning the applied graph again yields no changes."""
    graph = build_service_graph(_make_config(), "abc1234")
    provisioner, state = _applied(graph)
    plan = provisioner.plan(graph, state)
    assert plan.is_empty()
    assert plan.orphans == []


def test_new_image_tag_replaces_template_and_updates_service() -> None:
    """A new tag replaces the task template; the service is updated to point at it."""
    config = _make_config()
    provisioner, state = _applied(build_service_graph(config, "abc1234"))
    plan = provisioner.plan(build_service_graph(config, "def5678"), state)

    assert plan.step(TASK_TEMPLATE).action == Action.REPLACE
    assert "image_tag" in plan.step(TASK_TEMPLATE).reason
    assert plan.step(SERVICE).action == Action.UPDATE
    assert plan.step(SERVICE).reason == "dependency task-template is replaced"
    assert [s.name for s in plan.changes] == [TASK_TEMPLATE, SERVICE]


def test_mutable_change_is_update() -> None:
    """Changing a mutable field updates in place."""
    provisioner, state = _applied(build_service_graph(_make_config(), "abc1234"))
    plan = provisioner.plan(build_service_graph(_make_config(registry={"keepLast": 3}), "abc1234"), state)
    assert plan.step(REGISTRY).action == Action.UPDATE
    assert plan.step(REGISTRY).reason == "fields changed: keep_last"
    assert [s.name for s in plan.changes] == [REGISTRY]


def test_network_replacement_cascades() -> None:
    """Replacing the network replaces what is bound to it and updates the rest."""
    provisioner, state = _applied(build_service_graph(_make_config(), "abc1234"))
    graph = build_service_graph(_make_config(network={"cidr": "10.0.0.0/16"}), "abc1234")
    plan = provisioner.plan(graph, state)

    assert plan.step(NETWORK).action == Action.REPLACE
    assert plan.step(PRIVATE_SUBNET).action == Action.REPLACE
    assert plan.step(TARGET_GROUP).action == Action.REPLACE
    assert plan.step(LOAD_BALANCER).action == Action.REPLACE
    assert plan.step(LISTENER).action == Action.REPLACE
    assert plan.step(SERVICE).action == Action.UPDATE
    assert plan.step(CLUSTER).action == Action.NOOP
    assert plan.step(REGISTRY).action == Action.NOOP


def test_orphans_are_reported_but_retired_entries_are_not() -> None:
    """State entries the graph no longer names are orphans, unless they are retired."""
    graph = build_service_graph(_make_config(), "abc1234")
    provisioner, state = _applied(graph)
    old = state[TASK_TEMPLATE]
    state = state.with_resource(ResolvedResource(name="legacy-bucket", kind=old.kind, identifier="x"))
    state = state.with_resource(
        ResolvedResource(name="task-template~old", kind=old.kind, identifier="y", retired_from=TASK_TEMPLATE)
    )
    plan = provisioner.plan(graph, state)
    assert plan.orphans == ["legacy-bucket"]
