"""Error taxonomy shared by the graph model, provisioner, publisher and deployment controller."""

from typing import Any


class RolloutError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(RolloutError):
    """Invalid graph, resource config, engine.yaml or service spec."""


class DuplicateNameError(ConfigurationError):
    """A resource name was added to a graph twice."""

    def __init__(self, name: str) -> None:
        super().__init__(f"duplicate resource name: {name!r}")
        self.name = name


class DanglingReferenceError(ConfigurationError):
    """A resource depends on a name that is not in the graph."""

    def __init__(self, resource: str, missing: str) -> None:
        super().__init__(f"resource {resource!r} depends on unknown resource {missing!r}")
        self.resource = resource
        self.missing = missing


class CyclicDependencyError(ConfigurationError):
    """The dependency relation contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__("dependency cycle: " + " -> ".join(cycle))
        self.cycle = cycle


class DependentsRemainError(RolloutError):
    """Destroy was asked to remove a resource that other live resources still need."""

    def __init__(self, resource: str, dependents: list[str]) -> None:
        super().__init__(
            f"cannot destroy {resource!r}: still required by {', '.join(dependents)} (use force to cascade)"
        )
        self.resource = resource
        self.dependents = dependents


class ProviderError(RolloutError):
    """A cloud provider call failed while creating, updating or deleting a resource."""


class PartialApplyError(RolloutError):
    """Apply or destroy halted part way; ``state`` reflects every step that completed."""

    def __init__(self, failed_step: str, completed: list[str], state: Any, cause: BaseException) -> None:
        done = ", ".join(completed) or "(none)"
        super().__init__(f"step {failed_step!r} failed: {cause}. Completed steps: {done}")
        self.failed_step = failed_step
        self.completed = completed
        self.state = state
        self.cause = cause


class PublishError(RolloutError):
    """Building, pushing or verifying an image failed; no tag was left behind."""


class DeploymentInProgressError(RolloutError):
    """Another deployment run is already active for the service."""

    def __init__(self, service_name: str, run_id: str | None = None) -> None:
        detail = f" (run {run_id})" if run_id else ""
        super().__init__(f"deployment already in progress for {service_name!r}{detail}")
        self.service_name = service_name
        self.run_id = run_id


class DeploymentFailed(RolloutError):
    """The run ended in the failed state; instances were left where the run stopped."""

    def __init__(self, message: str, run: Any = None) -> None:
        super().__init__(message)
        self.run = run


class CircuitBreakerTripped(RolloutError):
    """The new version failed health gating and the service was rolled back."""

    def __init__(self, message: str, run: Any = None, last_stable: Any = None) -> None:
        super().__init__(message)
        self.run = run
        self.last_stable = last_stable


class DeploymentTimeout(CircuitBreakerTripped):
    """A batch or the whole run ran out of time; handled as a breaker trip."""


class DeploymentCancelled(CircuitBreakerTripped):
    """The run was cancelled by the caller and rolled back."""


class TransientError(RolloutError):
    """A retryable collaborator failure (throttling, connection reset)."""
