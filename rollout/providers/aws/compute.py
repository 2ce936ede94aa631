"""ECS cluster, Fargate task definitions and the externally controlled service."""

import logging
from typing import Any

from botocore.exceptions import ClientError

from rollout.graph.resources import Resource, ResourceKind, ServiceConfig, TaskTemplateConfig
from rollout.provisioner.context import ProvisionContext
from rollout.provisioner.registry import IdentityProvider, ProviderResult
from rollout.provisioner.state import ResolvedResource
from rollout.providers.aws.base import AWS, AwsProvider, ecs_tag_list, error_code, resource_tags, translate_errors
from rollout.providers.aws.iam import IamIdentityProvider

LOG = logging.getLogger(__name__)


def _insights(enabled: bool) -> list[dict[str, str]]:
    return [{"name": "containerInsights", "value": "enabled" if enabled else "disabled"}]


@AWS.register(ResourceKind.CLUSTER)
class ClusterProvider(AwsProvider):
    def create(self, resource: Resource, ctx: ProvisionContext) -> ProviderResult:
        cfg = resource.config
        # create_cluster returns the existing cluster when the name is taken
        with translate_errors(f"create cluster {cfg.name}"):
            cluster = self.clients.ecs.create_cluster(
                clusterName=cfg.name,
                settings=_insights(cfg.container_insights),
                tags=ecs_tag_list(resource_tags(resource.name, ctx)),
            )["cluster"]
        return ProviderResult(cluster["clusterArn"], {"arn": cluster["clusterArn"], "name": cfg.name})

    def update(self, resource: Resource, previous: ResolvedResource, ctx: ProvisionContext) -> ProviderResult:
        with translate_errors(f"update cluster {resource.config.name}"):
            self.clients.ecs.update_cluster_settings(
                cluster=previous.identifier, settings=_insights(resource.config.container_insights)
            )
        return ProviderResult(previous.identifier, dict(previous.outputs))

    def delete(self, resolved: ResolvedResource, ctx: ProvisionContext) -> None:
        with translate_errors(f"delete cluster {resolved.identifier}"):
            self.clients.ecs.delete_cluster(cluster=resolved.identifier)


def make_container_definitions(cfg: TaskTemplateConfig, image: str, region: str) -> list[dict[str, Any]]:
    """Single essential container with one TCP port and awslogs logging."""
    return [
        {
            "name": cfg.container_name,
            "image": image,
            "essential": True,
            "portMappings": [{"containerPort": cfg.container_port, "protocol": "tcp"}],
            "logConfiguration": {
                "logDriver": "awslogs",
                "options": {
                    "awslogs-create-group": "true",
                    "awslogs-region": region,
                    "awslogs-group": f"/ecs/{cfg.family}",
                    "awslogs-stream-prefix": cfg.log_stream_prefix or cfg.family,
                },
            },
        }
    ]


@AWS.register(ResourceKind.TASK_TEMPLATE)
class TaskDefinitionProvider(AwsProvider):
    """Task definitions are versioned; every change registers a new revision."""

    def _identity(self, ctx: ProvisionContext) -> IdentityProvider:
        return self.clients.identity or IamIdentityProvider(self.clients.iam, ctx.tags)

    def _latest(self, family: str) -> dict[str, Any] | None:
        try:
            return self.clients.ecs.describe_task_definition(taskDefinition=family)["taskDefinition"]
        except ClientError as e:
            if error_code(e) in ("ClientException", "InvalidParameterException"):
                return None
            raise

    @staticmethod
    def _outputs(td: dict[str, Any], cfg: TaskTemplateConfig, image: str) -> dict[str, Any]:
        return {
            "arn": td["taskDefinitionArn"],
            "family": cfg.family,
            "revision": td["revision"],
            "image": image,
            "cpu": cfg.cpu,
            "memory": cfg.memory,
            "container_name": cfg.container_name,
            "container_port": cfg.container_port,
            "execution_identity": td.get("executionRoleArn"),
        }

    def create(self, resource: Resource, ctx: ProvisionContext) -> ProviderResult:
        cfg = resource.config
        ecs = self.clients.ecs
        image = f"{ctx.output(cfg.registry, 'repository_uri')}:{cfg.image_tag}"
        containers = make_container_definitions(cfg, image, self.clients.region)

        with translate_errors(f"register task definition {cfg.family}"):
            latest = self._latest(cfg.family)
            replacing = ctx.replacing.identifier if ctx.replacing else None
            if (
                latest is not None
                and latest.get("status") == "ACTIVE"
                and latest["taskDefinitionArn"] != replacing
                and latest.get("containerDefinitions", [{}])[0].get("image") == image
                and str(latest.get("cpu")) == str(cfg.cpu)
                and str(latest.get("memory")) == str(cfg.memory)
            ):
                return ProviderResult(latest["taskDefinitionArn"], self._outputs(latest, cfg, image))

            execution = cfg.execution_identity or self._identity(ctx).issue(cfg.family, cfg.execution_permissions)
            td = ecs.register_task_definition(
                family=cfg.family,
                networkMode="awsvpc",
                requiresCompatibilities=["FARGATE"],
                cpu=str(cfg.cpu),
                memory=str(cfg.memory),
                runtimePlatform={"cpuArchitecture": cfg.cpu_architecture, "operatingSystemFamily": cfg.os_family},
                executionRoleArn=execution,
                containerDefinitions=containers,
                tags=ecs_tag_list(resource_tags(resource.name, ctx)),
            )["taskDefinition"]
        LOG.info("registered %s with image %s", td["taskDefinitionArn"], image)
        return ProviderResult(td["taskDefinitionArn"], self._outputs(td, cfg, image))

    def delete(self, resolved: ResolvedResource, ctx: ProvisionContext) -> None:
        with translate_errors(f"deregister task definition {resolved.identifier}"):
            self.clients.ecs.deregister_task_definition(taskDefinition=resolved.identifier)


@AWS.register(ResourceKind.SERVICE)
class ServiceProvider(AwsProvider):
    """ECS service with the EXTERNAL deployment controller.

    ECS never launches or replaces tasks for it; the rolling deployment
    controller does, using the network and load balancer details in the
    outputs.
    """

    def _outputs(self, service_arn: str, cfg: ServiceConfig, ctx: ProvisionContext) -> dict[str, Any]:
        return {
            "arn": service_arn,
            "name": cfg.name,
            "cluster_arn": ctx.output(cfg.cluster, "arn"),
            "task_template_arn": ctx.output(cfg.task_template, "arn"),
            "target_group_arn": ctx.output(cfg.target_group, "arn"),
            "subnet_ids": ctx.output(cfg.subnet, "subnet_ids"),
            "security_group_ids": [ctx.output(r, "group_id") for r in cfg.security_rules],
            "container_name": ctx.output(cfg.task_template, "container_name"),
            "container_port": ctx.output(cfg.task_template, "container_port"),
            "desired_count": cfg.desired_count,
            "assign_public_ip": cfg.assign_public_ip,
            "enable_execute_command": cfg.enable_execute_command,
        }

    def create(self, resource: Resource, ctx: ProvisionContext) -> ProviderResult:
        cfg = resource.config
        ecs = self.clients.ecs
        cluster_arn = ctx.output(cfg.cluster, "arn")
        with translate_errors(f"create service {cfg.name}"):
            found = ecs.describe_services(cluster=cluster_arn, services=[cfg.name]).get("services", [])
            active = [s for s in found if s.get("status") == "ACTIVE"]
            if active:
                arn = active[0]["serviceArn"]
            else:
                arn = ecs.create_service(
                    cluster=cluster_arn,
                    serviceName=cfg.name,
                    desiredCount=cfg.desired_count,
                    deploymentController={"type": "EXTERNAL"},
                    schedulingStrategy="REPLICA",
                    tags=ecs_tag_list(resource_tags(resource.name, ctx)),
                )["service"]["serviceArn"]
                LOG.info("created service %s", arn)
        return ProviderResult(arn, self._outputs(arn, cfg, ctx))

    def update(self, resource: Resource, previous: ResolvedResource, ctx: ProvisionContext) -> ProviderResult:
        cfg = resource.config
        with translate_errors(f"update service {cfg.name}"):
            self.clients.ecs.update_service(
                cluster=ctx.output(cfg.cluster, "arn"), service=cfg.name, desiredCount=cfg.desired_count
            )
        return ProviderResult(previous.identifier, self._outputs(previous.identifier, cfg, ctx))

    def delete(self, resolved: ResolvedResource, ctx: ProvisionContext) -> None:
        cluster = resolved.outputs["cluster_arn"]
        name = resolved.outputs["name"]
        with translate_errors(f"delete service {name}"):
            self.clients.ecs.update_service(cluster=cluster, service=name, desiredCount=0)
            self.clients.ecs.delete_service(cluster=cluster, service=name, force=True)
