"""Tests for background runs: one active run per service, wait and cancel."""

import threading

import pytest

from rollout.deploy.controller import DeploymentController
from rollout.deploy.models import Outcome, ServiceSpec, TaskTemplate
from rollout.errors import DeploymentCancelled, DeploymentInProgressError

from tests.conftest import FakeCluster, FakeLoadBalancer


def _make_spec(version: str, service_name: str = "web") -> ServiceSpec:
    return ServiceSpec(
        service_name=service_name,
        cluster="cluster-1",
        template=TaskTemplate(version=version, image=f"registry.test/{service_name}:{version}"),
        desired_count=2,
    )


def _gated_sleep(clock, gate: threading.Event):
    def sleep(seconds: float) -> None:
        assert gate.wait(10)
        clock.sleep(seconds)

    return sleep


def test_second_run_for_same_service_is_rejected(cluster, load_balancer, clock) -> None:
    """While a run is active, starting another for the same service raises."""
    gate = threading.Event()
    controller = DeploymentController(cluster, load_balancer, clock=clock, sleep=_gated_sleep(clock, gate))

    run = controller.start(_make_spec("v1"))
    with pytest.raises(DeploymentInProgressError) as exc_info:
        controller.start(_make_spec("v2"), previous=_make_spec("v1"))
    assert exc_info.value.run_id == run.id
    assert controller.active_run("web") is run

    gate.set()
    finished = controller.wait(run.id, timeout=10)
    assert finished.outcome == Outcome.SUCCEEDED
    assert controller.active_run("web") is None


def test_runs_for_different_services_proceed_independently(load_balancer, clock) -> None:
    """Distinct services each get their own supervisor."""
    gate = threading.Event()
    web, api = FakeCluster(), FakeCluster()
    web_controller = DeploymentController(web, load_balancer, clock=clock, sleep=_gated_sleep(clock, gate))
    api_controller = DeploymentController(api, FakeLoadBalancer(), clock=clock, sleep=_gated_sleep(clock, gate))

    web_run = web_controller.start(_make_spec("v1"))
    api_run = api_controller.start(_make_spec("v1", service_name="api"))
    gate.set()

    assert web_controller.wait(web_run.id, timeout=10).outcome == Outcome.SUCCEEDED
    assert api_controller.wait(api_run.id, timeout=10).outcome == Outcome.SUCCEEDED
    assert web.running_versions() == ["v1", "v1"]
    assert api.running_versions() == ["v1", "v1"]


def test_wait_times_out_while_run_is_blocked(cluster, load_balancer, clock) -> None:
    """wait raises TimeoutError if the run has not finished in time."""
    gate = threading.Event()
    controller = DeploymentController(cluster, load_balancer, clock=clock, sleep=_gated_sleep(clock, gate))
    run = controller.start(_make_spec("v1"))

    with pytest.raises(TimeoutError):
        controller.wait(run.id, timeout=0.05)
    gate.set()
    controller.wait(run.id, timeout=10)


def test_cancel_background_run(cluster, load_balancer, clock) -> None:
    """A cancelled background run rolls back and wait raises DeploymentCancelled."""
    cluster.seed("v1", 2)
    gate = threading.Event()
    controller = DeploymentController(cluster, load_balancer, clock=clock, sleep=_gated_sleep(clock, gate))

    run = controller.start(_make_spec("v2"), previous=_make_spec("v1"))
    assert controller.cancel("web") is True
    gate.set()

    with pytest.raises(DeploymentCancelled):
        controller.wait(run.id, timeout=10)
    assert cluster.running_versions() == ["v1", "v1"]
    assert controller.get_run(run.id).outcome == Outcome.ROLLED_BACK
