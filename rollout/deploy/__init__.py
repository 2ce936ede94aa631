"""Rolling deployment controller and its collaborator ports."""

from rollout.deploy.capacity import CapacityBounds, capacity_bounds
from rollout.deploy.controller import DeploymentController, validate_spec
from rollout.deploy.models import (
    DeploymentPolicy,
    DeploymentRun,
    HealthCheckPolicy,
    InstanceState,
    Outcome,
    RollbackPolicy,
    RunState,
    ServiceSpec,
    TaskTemplate,
    TripReason,
)
from rollout.deploy.runtime import HealthStatus, InstanceHandle

__all__ = [
    "CapacityBounds",
    "DeploymentController",
    "DeploymentPolicy",
    "DeploymentRun",
    "HealthCheckPolicy",
    "HealthStatus",
    "InstanceHandle",
    "InstanceState",
    "Outcome",
    "RollbackPolicy",
    "RunState",
    "ServiceSpec",
    "TaskTemplate",
    "TripReason",
    "capacity_bounds",
    "validate_spec",
]
