"""Health probing with bounded retries on transient load-balancer errors."""

import logging
from typing import Callable, TypeVar

from rollout.deploy.models import HealthCheckPolicy
from rollout.deploy.runtime import HealthStatus, InstanceHandle, LoadBalancer
from rollout.errors import TransientError

LOG = logging.getLogger(__name__)

T = TypeVar("T")


def retry_transient(
    fn: Callable[[], T],
    what: str,
    retries: int,
    backoff: float,
    sleep: Callable[[float], None],
) -> T:
    """Call ``fn``, retrying TransientError up to ``retries`` more times with linear backoff.

    The last TransientError propagates once attempts run out. Other errors propagate at once.
    """
    attempts = retries + 1
    for attempt in range(attempts):
        try:
            return fn()
        except TransientError as e:
            if attempt == attempts - 1:
                LOG.warning("%s failed after %d attempts: %s", what, attempts, e)
                raise
            LOG.debug("%s: transient error on attempt %d: %s", what, attempt + 1, e)
            sleep(backoff * (attempt + 1))
    raise AssertionError("unreachable")


class HealthProber:
    """Reads one health result per instance per round.

    A probe that keeps failing transiently yields ``None``, which leaves the instance's streaks untouched.
    """

    def __init__(
        self, load_balancer: LoadBalancer, policy: HealthCheckPolicy, sleep: Callable[[float], None]
    ) -> None:
        self.load_balancer = load_balancer
        self.policy = policy
        self.sleep = sleep

    def probe(self, handle: InstanceHandle) -> HealthStatus | None:
        try:
            return retry_transient(
                lambda: self.load_balancer.get_health(handle),
                f"health check of {handle.instance_id}",
                self.policy.transient_retries,
                self.policy.retry_backoff_seconds,
                self.sleep,
            )
        except TransientError:
            return None
