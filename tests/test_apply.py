"""Tests for applying plans: parallel levels, replacement, partial failure, pruning."""

from pathlib import Path

import pytest

from rollout.config import EngineConfig
from rollout.errors import ConfigurationError, PartialApplyError, ProviderError
from rollout.graph.stack import LOAD_BALANCER, SERVICE, TASK_TEMPLATE, build_service_graph
from rollout.provisioner import Action, Provisioner, ResolvedState
from rollout.providers.memory import MEMORY, InMemoryCloud

FIXTURES = Path(__file__).resolve().parent.parent / "fixtures"


def _make_provisioner(cloud: InMemoryCloud, **kwargs) -> Provisioner:
    return Provisioner(MEMORY.build(cloud), **kwargs)


def _graph(tag: str = "abc1234"):
    return build_service_graph(EngineConfig.from_file(FIXTURES / "minimal.yaml"), tag)


def test_apply_creates_every_resource() -> None:
    """Apply provisions the whole graph and records each step."""
    cloud = InMemoryCloud()
    provisioner = _make_provisioner(cloud)
    snapshots: list[ResolvedState] = []
    graph = _graph()

    state = provisioner.apply(provisioner.plan(graph, ResolvedState()), ResolvedState(), on_step=snapshots.append)

    assert state.names() == graph.names()
    assert len(snapshots) == len(graph)
    assert len(snapshots[-1]) == len(graph)
    assert len(cloud.records) == len(graph)
    assert provisioner.exports["url"] == "http://hello-alb.elb.internal"


def test_dependencies_are_resolved_before_dependents() -> None:
    """Every create call happens after the creates of its dependencies."""
    cloud = InMemoryCloud()
    provisioner = _make_provisioner(cloud, max_workers=8)
    graph = _graph()
    provisioner.apply(provisioner.plan(graph, ResolvedState()), ResolvedState())

    created = cloud.calls_for("create")
    for resource in graph.resources():
        for dep in resource.depends_on:
            assert created.index(dep) < created.index(resource.name)


def test_service_outputs_wire_dependencies() -> None:
    """The service sees the outputs of the template, target group and subnets."""
    provisioner = _make_provisioner(InMemoryCloud())
    state = provisioner.apply(provisioner.plan(_graph(), ResolvedState()), ResolvedState())
    outputs = state[SERVICE].outputs
    assert outputs["task_template_arn"] == state[TASK_TEMPLATE].identifier
    assert len(outputs["subnet_ids"]) == 3
    assert len(outputs["security_group_ids"]) == 1
    assert state[TASK_TEMPLATE].outputs["image"] == "registry.internal/hello-repo:abc1234"


def test_replacement_creates_before_deleting() -> None:
    """The new template exists before the old one is deleted, and the old one is gone afterwards."""
    cloud = InMemoryCloud()
    provisioner = _make_provisioner(cloud)
    state = provisioner.apply(provisioner.plan(_graph(), ResolvedState()), ResolvedState())
    old_id = state[TASK_TEMPLATE].identifier

    new_state = provisioner.apply(provisioner.plan(_graph("def5678"), state), state)

    assert new_state[TASK_TEMPLATE].identifier != old_id
    assert old_id not in cloud.records
    assert new_state.retired() == []
    retired_name = f"{TASK_TEMPLATE}~{old_id}"
    assert cloud.calls_for("delete") == [retired_name]
    assert cloud.calls.index(("create", TASK_TEMPLATE)) < cloud.calls.index(("delete", retired_name))


def test_retired_entries_kept_until_prune() -> None:
    """With prune_retired off the superseded template survives until prune."""
    cloud = InMemoryCloud()
    provisioner = _make_provisioner(cloud)
    state = provisioner.apply(provisioner.plan(_graph(), ResolvedState()), ResolvedState())
    old_id = state[TASK_TEMPLATE].identifier

    kept = provisioner.apply(provisioner.plan(_graph("def5678"), state), state, prune_retired=False)
    retired = kept.retired()
    assert [r.identifier for r in retired] == [old_id]
    assert retired[0].retired_from == TASK_TEMPLATE
    assert old_id in cloud.records

    pruned = provisioner.prune(_graph("def5678"), kept)
    assert pruned.retired() == []
    assert old_id not in cloud.records


def test_prune_keeps_listed_identifiers() -> None:
    """A retired entry whose identifier is in keep is neither deleted nor dropped from state."""
    cloud = InMemoryCloud()
    provisioner = _make_provisioner(cloud)
    state = provisioner.apply(provisioner.plan(_graph(), ResolvedState()), ResolvedState())
    old_id = state[TASK_TEMPLATE].identifier

    kept = provisioner.apply(provisioner.plan(_graph("def5678"), state), state, keep={old_id})

    assert [r.identifier for r in kept.retired()] == [old_id]
    assert old_id in cloud.records
    assert cloud.calls_for("delete") == []


def test_going_back_to_a_retired_template_drops_its_entry() -> None:
    """Re-applying the superseded config adopts the retired template; only the failed one is deleted."""
    cloud = InMemoryCloud()
    provisioner = _make_provisioner(cloud)
    state = provisioner.apply(provisioner.plan(_graph(), ResolvedState()), ResolvedState())
    old_id = state[TASK_TEMPLATE].identifier
    forward = provisioner.apply(provisioner.plan(_graph("def5678"), state), state, prune_retired=False)
    new_id = forward[TASK_TEMPLATE].identifier

    back = provisioner.apply(provisioner.plan(_graph(), forward), forward)

    assert back[TASK_TEMPLATE].identifier == old_id
    assert back.retired() == []
    assert cloud.calls_for("delete") == [f"{TASK_TEMPLATE}~{new_id}"]
    assert old_id in cloud.records
    assert new_id not in cloud.records


def test_failed_step_raises_partial_apply_with_completed_state() -> None:
    """A provider failure stops the apply; the error state holds every finished step."""
    cloud = InMemoryCloud()
    cloud.fail("create", SERVICE)
    provisioner = _make_provisioner(cloud)
    graph = _graph()

    with pytest.raises(PartialApplyError) as exc_info:
        provisioner.apply(provisioner.plan(graph, ResolvedState()), ResolvedState())

    error = exc_info.value
    assert error.failed_step == SERVICE
    assert isinstance(error.cause, ProviderError)
    assert SERVICE not in error.state
    assert len(error.state) == len(graph) - 1
    assert error.completed == [n for n in graph.topological_order() if n != SERVICE]


def test_apply_resumes_after_partial_failure() -> None:
    """Re-planning from the partial state only creates what is missing."""
    cloud = InMemoryCloud()
    cloud.fail("create", LOAD_BALANCER)
    provisioner = _make_provisioner(cloud)
    graph = _graph()

    with pytest.raises(PartialApplyError) as exc_info:
        provisioner.apply(provisioner.plan(graph, ResolvedState()), ResolvedState())

    partial = exc_info.value.state
    plan = provisioner.plan(graph, partial)
    assert LOAD_BALANCER in [s.name for s in plan.changes]
    assert all(s.action == Action.CREATE for s in plan.changes)
    state = provisioner.apply(plan, partial)
    assert state.names() == graph.names()
    assert len(cloud.records) == len(graph)


def test_create_adopts_existing_resource_of_same_name() -> None:
    """A create for a resource that already exists in the cloud adopts it."""
    cloud = InMemoryCloud()
    provisioner = _make_provisioner(cloud)
    graph = _graph()
    first = provisioner.apply(provisioner.plan(graph, ResolvedState()), ResolvedState())

    second = provisioner.apply(provisioner.plan(graph, ResolvedState()), ResolvedState())

    assert second[LOAD_BALANCER].identifier == first[LOAD_BALANCER].identifier
    assert len(cloud.records) == len(graph)


def test_max_workers_must_be_positive() -> None:
    """A provisioner needs at least one worker."""
    with pytest.raises(ConfigurationError):
        _make_provisioner(InMemoryCloud(), max_workers=0)


def test_missing_provider_is_configuration_error() -> None:
    """Applying a kind with no provider fails the step."""
    providers = MEMORY.build(InMemoryCloud())
    del providers[next(iter(providers))]
    provisioner = Provisioner(providers)
    with pytest.raises(PartialApplyError) as exc_info:
        provisioner.apply(provisioner.plan(_graph(), ResolvedState()), ResolvedState())
    assert isinstance(exc_info.value.cause, ConfigurationError)
