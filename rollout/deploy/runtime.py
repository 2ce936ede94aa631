"""Ports the deployment controller drives: the cluster runtime and the load balancer."""

from dataclasses import dataclass
from enum import Enum
from typing import Protocol


class HealthStatus(str, Enum):
    PASSING = "passing"
    FAILING = "failing"


@dataclass(frozen=True)
class InstanceHandle:
    """A running task as the cluster runtime knows it."""

    instance_id: str
    template_version: str
    address: str = ""


class ClusterRuntime(Protocol):
    """Launches and stops instances of a task template. Retryable failures raise TransientError."""

    def launch_instance(self, template: "TaskTemplateLike") -> InstanceHandle:
        ...

    def stop_instance(self, handle: InstanceHandle) -> None:
        ...

    def list_instances(self, service_id: str) -> list[InstanceHandle]:
        ...


class LoadBalancer(Protocol):
    """Target registration and health. Retryable failures raise TransientError."""

    def register_target(self, handle: InstanceHandle) -> None:
        ...

    def deregister_target(self, handle: InstanceHandle) -> None:
        ...

    def get_health(self, handle: InstanceHandle) -> HealthStatus:
        ...


class TaskTemplateLike(Protocol):
    version: str
    image: str
