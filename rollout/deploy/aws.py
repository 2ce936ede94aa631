"""ECS tasks and an ELBv2 target group as the controller's cluster runtime and load balancer."""

from collections.abc import Iterator
from contextlib import contextmanager
import logging
import time
from typing import Any, Callable

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from rollout.deploy.runtime import HealthStatus, InstanceHandle, TaskTemplateLike
from rollout.errors import ProviderError, TransientError

LOG = logging.getLogger(__name__)

TRANSIENT_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalFailure",
    "ServerException",
})

# ECS limits startedBy to 36 characters.
STARTED_BY_LIMIT = 36


@contextmanager
def classify_errors(action: str) -> Iterator[None]:
    """Throttling and connection failures become TransientError, anything else ProviderError."""
    try:
        yield
    except ClientError as e:
        code = e.response.get("Error", {}).get("Code", "")
        if code in TRANSIENT_CODES:
            raise TransientError(f"{action}: {code}") from e
        raise ProviderError(f"{action}: {e.response.get('Error', {}).get('Message', e)}") from e
    except (EndpointConnectionError, ConnectionClosedError, ReadTimeoutError) as e:
        raise TransientError(f"{action}: {e}") from e
    except BotoCoreError as e:
        raise ProviderError(f"{action}: {e}") from e


def _task_address(task: dict[str, Any]) -> str:
    for attachment in task.get("attachments", []):
        if attachment.get("type") != "ElasticNetworkInterface":
            continue
        for detail in attachment.get("details", []):
            if detail.get("name") == "privateIPv4Address":
                return detail["value"]
    return ""


def _handle(task: dict[str, Any]) -> InstanceHandle:
    return InstanceHandle(
        instance_id=task["taskArn"],
        template_version=task["taskDefinitionArn"],
        address=_task_address(task),
    )


class EcsClusterRuntime:
    """Runs Fargate tasks for one service, grouped under ``startedBy``."""

    def __init__(
        self,
        ecs: Any,
        cluster: str,
        subnet_ids: list[str],
        security_group_ids: list[str],
        assign_public_ip: bool = False,
        enable_execute_command: bool = False,
        service_name: str = "",
        sleep: Callable[[float], None] = time.sleep,
        address_attempts: int = 30,
        address_interval: float = 2.0,
    ) -> None:
        self.ecs = ecs
        self.cluster = cluster
        self.subnet_ids = subnet_ids
        self.security_group_ids = security_group_ids
        self.assign_public_ip = assign_public_ip
        self.enable_execute_command = enable_execute_command
        self.service_name = service_name
        self.sleep = sleep
        self.address_attempts = address_attempts
        self.address_interval = address_interval

    @classmethod
    def from_outputs(cls, ecs: Any, outputs: dict[str, Any], **kwargs: Any) -> "EcsClusterRuntime":
        """Build from the resolved outputs of the service resource."""
        return cls(
            ecs,
            cluster=outputs["cluster_arn"],
            subnet_ids=list(outputs["subnet_ids"]),
            security_group_ids=list(outputs["security_group_ids"]),
            assign_public_ip=outputs.get("assign_public_ip", False),
            enable_execute_command=outputs.get("enable_execute_command", False),
            service_name=outputs["name"],
            **kwargs,
        )

    @staticmethod
    def started_by(service_id: str) -> str:
        return service_id[:STARTED_BY_LIMIT]

    def launch_instance(self, template: TaskTemplateLike) -> InstanceHandle:
        with classify_errors(f"run task {template.version}"):
            response = self.ecs.run_task(
                cluster=self.cluster,
                taskDefinition=template.version,
                launchType="FARGATE",
                count=1,
                startedBy=self.started_by(self.service_name),
                group=f"service:{self.service_name}",
                enableExecuteCommand=self.enable_execute_command,
                networkConfiguration={
                    "awsvpcConfiguration": {
                        "subnets": self.subnet_ids,
                        "securityGroups": self.security_group_ids,
                        "assignPublicIp": "ENABLED" if self.assign_public_ip else "DISABLED",
                    }
                },
            )
        failures = response.get("failures", [])
        if failures or not response.get("tasks"):
            reason = "; ".join(f.get("reason", "unknown") for f in failures) or "no task started"
            # capacity shortfalls clear up on their own
            if "RESOURCE" in reason or "capacity" in reason.lower():
                raise TransientError(f"run task {template.version}: {reason}")
            raise ProviderError(f"run task {template.version}: {reason}")
        task = response["tasks"][0]
        LOG.info("started task %s (%s)", task["taskArn"], template.version)
        return self._wait_for_address(task)

    def _wait_for_address(self, task: dict[str, Any]) -> InstanceHandle:
        """Fargate assigns the ENI address shortly after run_task returns."""
        for _ in range(self.address_attempts):
            if _task_address(task):
                return _handle(task)
            self.sleep(self.address_interval)
            with classify_errors(f"describe task {task['taskArn']}"):
                described = self.ecs.describe_tasks(cluster=self.cluster, tasks=[task["taskArn"]])["tasks"]
            if described:
                task = described[0]
        if _task_address(task):
            return _handle(task)
        raise TransientError(f"task {task['taskArn']} has no network address yet")

    def stop_instance(self, handle: InstanceHandle) -> None:
        with classify_errors(f"stop task {handle.instance_id}"):
            self.ecs.stop_task(cluster=self.cluster, task=handle.instance_id, reason="replaced by rollout")
        LOG.info("stopped task %s", handle.instance_id)

    def list_instances(self, service_id: str) -> list[InstanceHandle]:
        arns: list[str] = []
        with classify_errors(f"list tasks of {service_id}"):
            paginator = self.ecs.get_paginator("list_tasks")
            for page in paginator.paginate(
                cluster=self.cluster, startedBy=self.started_by(service_id), desiredStatus="RUNNING"
            ):
                arns.extend(page.get("taskArns", []))
        handles = []
        for start in range(0, len(arns), 100):
            with classify_errors(f"describe tasks of {service_id}"):
                tasks = self.ecs.describe_tasks(cluster=self.cluster, tasks=arns[start:start + 100])["tasks"]
            handles.extend(_handle(t) for t in tasks if t.get("lastStatus") != "STOPPED")
        return handles


class ElbTargetGroup:
    """Registers task addresses with an IP target group and reads their health."""

    def __init__(self, elbv2: Any, target_group_arn: str, port: int) -> None:
        self.elbv2 = elbv2
        self.target_group_arn = target_group_arn
        self.port = port

    @classmethod
    def from_outputs(cls, elbv2: Any, outputs: dict[str, Any]) -> "ElbTargetGroup":
        return cls(elbv2, outputs["target_group_arn"], outputs["container_port"])

    def _target(self, handle: InstanceHandle) -> list[dict[str, Any]]:
        if not handle.address:
            raise ProviderError(f"instance {handle.instance_id} has no address to register")
        return [{"Id": handle.address, "Port": self.port}]

    def register_target(self, handle: InstanceHandle) -> None:
        with classify_errors(f"register {handle.instance_id}"):
            self.elbv2.register_targets(TargetGroupArn=self.target_group_arn, Targets=self._target(handle))

    def deregister_target(self, handle: InstanceHandle) -> None:
        with classify_errors(f"deregister {handle.instance_id}"):
            self.elbv2.deregister_targets(TargetGroupArn=self.target_group_arn, Targets=self._target(handle))

    def get_health(self, handle: InstanceHandle) -> HealthStatus:
        with classify_errors(f"health of {handle.instance_id}"):
            descriptions = self.elbv2.describe_target_health(
                TargetGroupArn=self.target_group_arn, Targets=self._target(handle)
            )["TargetHealthDescriptions"]
        state = descriptions[0]["TargetHealth"]["State"] if descriptions else "unavailable"
        if state == "healthy":
            return HealthStatus.PASSING
        if state == "initial":
            # the target group has not finished its first checks
            raise TransientError(f"{handle.instance_id}: health check pending")
        return HealthStatus.FAILING
