"""Tests for transient retries and the health prober."""

from unittest.mock import MagicMock

import pytest

from rollout.deploy.health import HealthProber, retry_transient
from rollout.deploy.models import HealthCheckPolicy
from rollout.deploy.runtime import HealthStatus, InstanceHandle
from rollout.errors import ProviderError, TransientError


def test_retry_returns_first_success() -> None:
    """A call that succeeds after a transient error returns its value."""
    fn = MagicMock(side_effect=[TransientError("throttled"), "ok"])
    sleeps: list[float] = []
    assert retry_transient(fn, "call", retries=3, backoff=1.0, sleep=sleeps.append) == "ok"
    assert fn.call_count == 2
    assert sleeps == [1.0]


def test_retry_backs_off_linearly_then_raises() -> None:
    """After retries+1 attempts the last TransientError propagates."""
    fn = MagicMock(side_effect=TransientError("throttled"))
    sleeps: list[float] = []
    with pytest.raises(TransientError):
        retry_transient(fn, "call", retries=2, backoff=1.0, sleep=sleeps.append)
    assert fn.call_count == 3
    assert sleeps == [1.0, 2.0]


def test_retry_does_not_retry_other_errors() -> None:
    """Non-transient errors propagate on the first attempt."""
    fn = MagicMock(side_effect=ProviderError("access denied"))
    sleep = MagicMock()
    with pytest.raises(ProviderError):
        retry_transient(fn, "call", retries=3, backoff=1.0, sleep=sleep)
    assert fn.call_count == 1
    sleep.assert_not_called()


def test_prober_returns_status() -> None:
    """The prober passes through the load balancer's answer."""
    lb = MagicMock()
    lb.get_health.return_value = HealthStatus.FAILING
    prober = HealthProber(lb, HealthCheckPolicy(), sleep=MagicMock())
    handle = InstanceHandle("i-1", "v1", "10.0.0.1")
    assert prober.probe(handle) == HealthStatus.FAILING
    lb.get_health.assert_called_once_with(handle)


def test_prober_yields_none_when_retries_run_out() -> None:
    """A probe that only ever fails transiently is not a result."""
    lb = MagicMock()
    lb.get_health.side_effect = TransientError("connection reset")
    prober = HealthProber(lb, HealthCheckPolicy(transient_retries=2), sleep=MagicMock())
    assert prober.probe(InstanceHandle("i-1", "v1")) is None
    assert lb.get_health.call_count == 3
