"""Tests for the error hierarchy."""

import pytest

from rollout.errors import (
    CircuitBreakerTripped,
    ConfigurationError,
    CyclicDependencyError,
    DeploymentCancelled,
    DeploymentInProgressError,
    DeploymentTimeout,
    PartialApplyError,
    RolloutError,
)


@pytest.mark.parametrize("error_type", [DeploymentTimeout, DeploymentCancelled])
def test_timeouts_and_cancellation_are_breaker_trips(error_type) -> None:
    """Callers catching CircuitBreakerTripped also see timeouts and cancellations."""
    error = error_type("rolled back", run="r", last_stable="spec")
    assert isinstance(error, CircuitBreakerTripped)
    assert error.last_stable == "spec"


def test_configuration_errors_share_base() -> None:
    """Graph validation errors are configuration errors."""
    error = CyclicDependencyError(["a", "b", "a"])
    assert isinstance(error, ConfigurationError)
    assert isinstance(error, RolloutError)


def test_partial_apply_message_lists_completed_steps() -> None:
    """The message names the failed step and what finished before it."""
    error = PartialApplyError("service", ["vpc", "cluster"], state=None, cause=RuntimeError("boom"))
    assert "'service' failed: boom" in str(error)
    assert "vpc, cluster" in str(error)


def test_in_progress_names_run() -> None:
    """The active run id is part of the message when known."""
    assert "(run run-1)" in str(DeploymentInProgressError("web", "run-1"))
    assert str(DeploymentInProgressError("web")) == "deployment already in progress for 'web'"
