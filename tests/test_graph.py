"""Tests for the resource graph: validation, levels and deterministic ordering."""

import pytest

from rollout.errors import (
    ConfigurationError,
    CyclicDependencyError,
    DanglingReferenceError,
    DuplicateNameError,
)
from rollout.graph import Resource, ResourceGraph, ResourceKind, make_resource
from rollout.graph.resources import (
    ClusterConfig,
    HealthCheckConfig,
    IngressRule,
    NetworkConfig,
    RegistryConfig,
    SubnetConfig,
    TaskTemplateConfig,
)


def _cluster(name: str, depends_on: set[str] | None = None) -> Resource:
    return make_resource(name, ClusterConfig(name=name), depends_on)


def test_duplicate_name_rejected() -> None:
    """Adding the same name twice raises DuplicateNameError."""
    graph = ResourceGraph([_cluster("a")])
    with pytest.raises(DuplicateNameError):
        graph.add_resource(_cluster("a"))


def test_dangling_reference() -> None:
    """A dependency that is not in the graph is reported with both names."""
    graph = ResourceGraph([_cluster("a", {"missing"})])
    with pytest.raises(DanglingReferenceError) as exc_info:
        graph.validate()
    assert exc_info.value.resource == "a"
    assert exc_info.value.missing == "missing"


def test_cycle_detected() -> None:
    """A cycle is reported as the path that closes it."""
    graph = ResourceGraph([_cluster("a", {"c"}), _cluster("b", {"a"}), _cluster("c", {"b"})])
    with pytest.raises(CyclicDependencyError) as exc_info:
        graph.topological_order()
    assert exc_info.value.cycle[0] == exc_info.value.cycle[-1]
    assert set(exc_info.value.cycle) == {"a", "b", "c"}


def test_self_dependency_rejected() -> None:
    """A resource that depends on itself is a cycle of one."""
    with pytest.raises(CyclicDependencyError) as exc_info:
        _cluster("a", {"a"})
    assert exc_info.value.cycle == ["a", "a"]


def test_topological_order_breaks_ties_by_name() -> None:
    """Independent resources come out in name order; dependencies always first."""
    graph = ResourceGraph(
        [_cluster("zeta"), _cluster("alpha", {"zeta"}), _cluster("mid"), _cluster("beta", {"mid", "zeta"})]
    )
    order = graph.topological_order()
    assert order == ["mid", "zeta", "alpha", "beta"]
    assert order == graph.topological_order()


def test_topological_levels() -> None:
    """Levels hold resources whose dependencies are all in earlier levels."""
    graph = ResourceGraph([_cluster("a"), _cluster("b"), _cluster("c", {"a"}), _cluster("d", {"b", "c"})])
    assert graph.topological_levels() == [["a", "b"], ["c"], ["d"]]


def test_dependents() -> None:
    """dependents lists direct dependents only."""
    graph = ResourceGraph([_cluster("a"), _cluster("b", {"a"}), _cluster("c", {"b"})])
    assert graph.dependents("a") == {"b"}


def test_make_resource_adds_config_references() -> None:
    """References named in the config become dependencies."""
    subnet = make_resource("subnets", SubnetConfig(network="vpc"))
    assert subnet.depends_on == frozenset({"vpc"})
    assert subnet.kind == ResourceKind.SUBNET


def test_resource_must_depend_on_its_references() -> None:
    """A config reference missing from depends_on is rejected."""
    with pytest.raises(ConfigurationError, match="without depending on it"):
        Resource(name="subnets", kind=ResourceKind.SUBNET, config=SubnetConfig(network="vpc"))


def test_resource_kind_must_match_config() -> None:
    """The config type must belong to the declared kind."""
    with pytest.raises(ConfigurationError, match="needs NetworkConfig"):
        Resource(name="vpc", kind=ResourceKind.NETWORK, config=ClusterConfig(name="c"))


def test_invalid_cidr() -> None:
    """Network CIDRs are parsed when the config is built."""
    with pytest.raises(ConfigurationError, match="invalid cidr"):
        NetworkConfig(cidr="300.0.0.0/16")


def test_ingress_rule_needs_exactly_one_source() -> None:
    """An ingress rule takes a CIDR or a source rule, not both."""
    with pytest.raises(ConfigurationError):
        IngressRule(port=80, cidr="0.0.0.0/0", source="sg-elb")
    with pytest.raises(ConfigurationError):
        IngressRule(port=80)


def test_health_check_timeout_shorter_than_interval() -> None:
    """Health check timeout must stay below the interval."""
    with pytest.raises(ConfigurationError, match="shorter than the interval"):
        HealthCheckConfig(interval_seconds=5, timeout_seconds=5)


def test_changed_fields() -> None:
    """changed_fields compares against the persisted dict form."""
    config = RegistryConfig(name="web-repo", keep_last=5)
    previous = RegistryConfig(name="web-repo").to_dict()
    assert config.changed_fields(previous) == {"keep_last"}


def test_task_template_every_field_is_immutable() -> None:
    """A new image tag is a new template revision."""
    config = TaskTemplateConfig(family="web", registry="repository", image_tag="abc1234", container_name="web")
    previous = TaskTemplateConfig(
        family="web", registry="repository", image_tag="def5678", container_name="web"
    ).to_dict()
    assert config.changed_fields(previous) <= TaskTemplateConfig.IMMUTABLE
    assert config.changed_fields(previous) == {"image_tag"}
