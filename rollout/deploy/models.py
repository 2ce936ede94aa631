"""Service spec, instances and the deployment run state machine."""

from dataclasses import dataclass, field
from enum import Enum
import secrets
import threading
from typing import Any

from rollout.deploy.runtime import InstanceHandle


class InstanceState(str, Enum):
    LAUNCHING = "launching"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DRAINING = "draining"
    STOPPED = "stopped"


class RunState(str, Enum):
    INITIALIZING = "initializing"
    SCALING = "scaling"
    DRAINING = "draining"
    STEADY_STATE = "steady_state"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


TERMINAL_STATES = frozenset({RunState.STEADY_STATE, RunState.ROLLED_BACK, RunState.FAILED})


class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class TripReason(str, Enum):
    CIRCUIT_BREAKER = "circuit_breaker"
    BATCH_TIMEOUT = "batch_timeout"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True)
class TaskTemplate:
    """Immutable, versioned description of one instance."""

    version: str
    image: str
    cpu: int = 1024
    memory: int = 2048
    container_port: int = 80
    execution_identity: str | None = None


@dataclass(frozen=True)
class RollbackPolicy:
    enabled: bool = True
    threshold: int = 2


@dataclass(frozen=True)
class DeploymentPolicy:
    batch_size: int = 1
    batch_timeout_seconds: float = 600
    timeout_seconds: float = 3600
    drain_grace_seconds: float = 60


@dataclass(frozen=True)
class HealthCheckPolicy:
    interval_seconds: float = 60
    healthy_threshold: int = 2
    unhealthy_threshold: int = 3
    transient_retries: int = 3
    retry_backoff_seconds: float = 1.0


@dataclass(frozen=True)
class ServiceSpec:
    service_name: str
    cluster: str
    template: TaskTemplate
    desired_count: int = 3
    min_healthy_percent: int = 50
    max_healthy_percent: int = 200
    rollback: RollbackPolicy = field(default_factory=RollbackPolicy)
    deployment: DeploymentPolicy = field(default_factory=DeploymentPolicy)
    health: HealthCheckPolicy = field(default_factory=HealthCheckPolicy)

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_name": self.service_name,
            "cluster": self.cluster,
            "template": vars(self.template).copy(),
            "desired_count": self.desired_count,
            "min_healthy_percent": self.min_healthy_percent,
            "max_healthy_percent": self.max_healthy_percent,
            "rollback": vars(self.rollback).copy(),
            "deployment": vars(self.deployment).copy(),
            "health": vars(self.health).copy(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ServiceSpec":
        return cls(
            service_name=data["service_name"],
            cluster=data["cluster"],
            template=TaskTemplate(**data["template"]),
            desired_count=data.get("desired_count", 3),
            min_healthy_percent=data.get("min_healthy_percent", 50),
            max_healthy_percent=data.get("max_healthy_percent", 200),
            rollback=RollbackPolicy(**data.get("rollback", {})),
            deployment=DeploymentPolicy(**data.get("deployment", {})),
            health=HealthCheckPolicy(**data.get("health", {})),
        )


@dataclass
class Instance:
    handle: InstanceHandle
    state: InstanceState
    launched_at: float
    registered: bool = False
    pass_streak: int = 0
    fail_streak: int = 0
    drain_started_at: float | None = None
    batch: int | None = None

    @property
    def instance_id(self) -> str:
        return self.handle.instance_id

    @property
    def version(self) -> str:
        return self.handle.template_version

    @property
    def running(self) -> bool:
        return self.state != InstanceState.STOPPED

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "version": self.version,
            "address": self.handle.address,
            "state": self.state.value,
            "registered": self.registered,
            "batch": self.batch,
        }


@dataclass
class RunEvent:
    at: float
    instance_id: str | None
    from_state: str | None
    to_state: str
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "at": self.at,
            "instance_id": self.instance_id,
            "from": self.from_state,
            "to": self.to_state,
            "message": self.message,
        }


@dataclass
class Batch:
    number: int
    template_version: str
    started_at: float
    deadline: float
    instance_ids: list[str] = field(default_factory=list)
    completed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "template_version": self.template_version,
            "started_at": self.started_at,
            "deadline": self.deadline,
            "instance_ids": list(self.instance_ids),
            "completed": self.completed,
        }


def new_run_id() -> str:
    return f"run-{secrets.token_hex(4)}"


@dataclass
class DeploymentRun:
    """One attempt to move a service from ``old_version`` to ``new_version``."""

    service_name: str
    old_version: str | None
    new_version: str
    started_at: float
    id: str = field(default_factory=new_run_id)
    state: RunState = RunState.INITIALIZING
    outcome: Outcome | None = None
    finished_at: float | None = None
    instances: dict[str, Instance] = field(default_factory=dict)
    log: list[RunEvent] = field(default_factory=list)
    batches: list[Batch] = field(default_factory=list)
    unhealthy_count: int = 0
    trip_reason: TripReason | None = None
    error: str | None = None
    last_stable: ServiceSpec | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def running(self) -> list[Instance]:
        return [i for i in self.instances.values() if i.running]

    def events_for(self, instance_id: str) -> list[RunEvent]:
        return [e for e in self.log if e.instance_id == instance_id]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "service_name": self.service_name,
            "old_version": self.old_version,
            "new_version": self.new_version,
            "state": self.state.value,
            "outcome": self.outcome.value if self.outcome else None,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "unhealthy_count": self.unhealthy_count,
            "trip_reason": self.trip_reason.value if self.trip_reason else None,
            "error": self.error,
            "instances": [i.to_dict() for i in self.instances.values()],
            "batches": [b.to_dict() for b in self.batches],
            "log": [e.to_dict() for e in self.log],
        }
