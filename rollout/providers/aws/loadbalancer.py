"""Application load balancer, target group and listener."""

import logging
from typing import Any

from botocore.exceptions import ClientError

from rollout.graph.resources import ListenerConfig, Resource, ResourceKind, TargetGroupConfig
from rollout.provisioner.context import ProvisionContext
from rollout.provisioner.registry import ProviderResult
from rollout.provisioner.state import ResolvedResource
from rollout.providers.aws.base import (
    AWS,
    AwsProvider,
    error_code,
    replacement_name,
    resource_tags,
    tag_list,
    translate_errors,
)

LOG = logging.getLogger(__name__)

# ELBv2 load balancer and target group names
NAME_LIMIT = 32


@AWS.register(ResourceKind.LOAD_BALANCER)
class LoadBalancerProvider(AwsProvider):
    def _find(self, name: str) -> dict[str, Any] | None:
        try:
            found = self.clients.elbv2.describe_load_balancers(Names=[name])["LoadBalancers"]
        except ClientError as e:
            if error_code(e) == "LoadBalancerNotFound":
                return None
            raise
        return found[0] if found else None

    def _security_groups(self, resource: Resource, ctx: ProvisionContext) -> list[str]:
        return [ctx.output(r, "group_id") for r in resource.config.security_rules]

    def _outputs(self, lb: dict[str, Any], ctx: ProvisionContext) -> dict[str, Any]:
        ctx.export("url", f"http://{lb['DNSName']}")
        return {"arn": lb["LoadBalancerArn"], "dns_name": lb["DNSName"]}

    def create(self, resource: Resource, ctx: ProvisionContext) -> ProviderResult:
        cfg = resource.config
        with translate_errors(f"create load balancer {cfg.name}"):
            name = cfg.name
            lb = self._find(name)
            if lb is not None and ctx.replacing and lb["LoadBalancerArn"] == ctx.replacing.identifier:
                # the superseded balancer still holds the name until it is pruned
                name = replacement_name(cfg.name, ctx.replacing, NAME_LIMIT)
                lb = self._find(name)
            if lb is None:
                lb = self.clients.elbv2.create_load_balancer(
                    Name=name,
                    Subnets=ctx.output(cfg.subnet, "subnet_ids"),
                    SecurityGroups=self._security_groups(resource, ctx),
                    Scheme="internet-facing" if cfg.internet_facing else "internal",
                    Type="application",
                    IpAddressType="ipv4",
                    Tags=tag_list(resource_tags(resource.name, ctx)),
                )["LoadBalancers"][0]
                LOG.info("created load balancer %s", lb["DNSName"])
        return ProviderResult(lb["LoadBalancerArn"], self._outputs(lb, ctx))

    def update(self, resource: Resource, previous: ResolvedResource, ctx: ProvisionContext) -> ProviderResult:
        cfg = resource.config
        elbv2 = self.clients.elbv2
        with translate_errors(f"update load balancer {cfg.name}"):
            elbv2.set_security_groups(
                LoadBalancerArn=previous.identifier, SecurityGroups=self._security_groups(resource, ctx)
            )
            elbv2.set_subnets(LoadBalancerArn=previous.identifier, Subnets=ctx.output(cfg.subnet, "subnet_ids"))
            lb = elbv2.describe_load_balancers(LoadBalancerArns=[previous.identifier])["LoadBalancers"][0]
        return ProviderResult(previous.identifier, self._outputs(lb, ctx))

    def delete(self, resolved: ResolvedResource, ctx: ProvisionContext) -> None:
        elbv2 = self.clients.elbv2
        with translate_errors(f"delete load balancer {resolved.identifier}"):
            elbv2.delete_load_balancer(LoadBalancerArn=resolved.identifier)
            elbv2.get_waiter("load_balancers_deleted").wait(LoadBalancerArns=[resolved.identifier])


def _health_check_args(cfg: TargetGroupConfig) -> dict[str, Any]:
    hc = cfg.health_check
    return {
        "HealthCheckProtocol": hc.protocol,
        "HealthCheckPath": hc.path,
        "HealthCheckIntervalSeconds": hc.interval_seconds,
        "HealthCheckTimeoutSeconds": hc.timeout_seconds,
        "HealthyThresholdCount": hc.healthy_threshold,
        "UnhealthyThresholdCount": hc.unhealthy_threshold,
        "Matcher": {"HttpCode": hc.healthy_http_codes},
    }


@AWS.register(ResourceKind.TARGET_GROUP)
class TargetGroupProvider(AwsProvider):
    """IP target group; instances are registered by the deployment controller, never here."""

    def _find(self, name: str) -> dict[str, Any] | None:
        try:
            found = self.clients.elbv2.describe_target_groups(Names=[name])["TargetGroups"]
        except ClientError as e:
            if error_code(e) == "TargetGroupNotFound":
                return None
            raise
        return found[0] if found else None

    def _set_attributes(self, arn: str, cfg: TargetGroupConfig) -> None:
        self.clients.elbv2.modify_target_group_attributes(
            TargetGroupArn=arn,
            Attributes=[{"Key": "deregistration_delay.timeout_seconds", "Value": str(cfg.deregistration_delay)}],
        )

    def _outputs(self, arn: str, cfg: TargetGroupConfig) -> dict[str, Any]:
        return {"arn": arn, "port": cfg.port, "health_check_path": cfg.health_check.path}

    def create(self, resource: Resource, ctx: ProvisionContext) -> ProviderResult:
        cfg = resource.config
        with translate_errors(f"create target group {cfg.name}"):
            name = cfg.name
            tg = self._find(name)
            if tg is not None and ctx.replacing and tg["TargetGroupArn"] == ctx.replacing.identifier:
                name = replacement_name(cfg.name, ctx.replacing, NAME_LIMIT)
                tg = self._find(name)
            if tg is None:
                tg = self.clients.elbv2.create_target_group(
                    Name=name,
                    Protocol=cfg.protocol,
                    Port=cfg.port,
                    VpcId=ctx.output(cfg.network, "vpc_id"),
                    TargetType=cfg.target_type,
                    Tags=tag_list(resource_tags(resource.name, ctx)),
                    **_health_check_args(cfg),
                )["TargetGroups"][0]
            self._set_attributes(tg["TargetGroupArn"], cfg)
        return ProviderResult(tg["TargetGroupArn"], self._outputs(tg["TargetGroupArn"], cfg))

    def update(self, resource: Resource, previous: ResolvedResource, ctx: ProvisionContext) -> ProviderResult:
        cfg = resource.config
        with translate_errors(f"update target group {cfg.name}"):
            self.clients.elbv2.modify_target_group(TargetGroupArn=previous.identifier, **_health_check_args(cfg))
            self._set_attributes(previous.identifier, cfg)
        return ProviderResult(previous.identifier, self._outputs(previous.identifier, cfg))

    def delete(self, resolved: ResolvedResource, ctx: ProvisionContext) -> None:
        with translate_errors(f"delete target group {resolved.identifier}"):
            self.clients.elbv2.delete_target_group(TargetGroupArn=resolved.identifier)


def _forward(ctx: ProvisionContext, cfg: ListenerConfig) -> list[dict[str, Any]]:
    return [{"Type": "forward", "TargetGroupArn": ctx.output(cfg.target_group, "arn")}]


@AWS.register(ResourceKind.LISTENER)
class ListenerProvider(AwsProvider):
    def create(self, resource: Resource, ctx: ProvisionContext) -> ProviderResult:
        cfg = resource.config
        elbv2 = self.clients.elbv2
        lb_arn = ctx.output(cfg.load_balancer, "arn")
        with translate_errors(f"create listener on port {cfg.port}"):
            listeners = elbv2.describe_listeners(LoadBalancerArn=lb_arn)["Listeners"]
            match = [
                lst
                for lst in listeners
                if lst["Port"] == cfg.port and not (ctx.replacing and lst["ListenerArn"] == ctx.replacing.identifier)
            ]
            if match:
                arn = match[0]["ListenerArn"]
                elbv2.modify_listener(ListenerArn=arn, Protocol=cfg.protocol, DefaultActions=_forward(ctx, cfg))
            else:
                arn = elbv2.create_listener(
                    LoadBalancerArn=lb_arn,
                    Protocol=cfg.protocol,
                    Port=cfg.port,
                    DefaultActions=_forward(ctx, cfg),
                    Tags=tag_list(resource_tags(resource.name, ctx)),
                )["Listeners"][0]["ListenerArn"]
        return ProviderResult(arn, {"arn": arn, "port": cfg.port})

    def update(self, resource: Resource, previous: ResolvedResource, ctx: ProvisionContext) -> ProviderResult:
        cfg = resource.config
        with translate_errors(f"update listener {previous.identifier}"):
            self.clients.elbv2.modify_listener(
                ListenerArn=previous.identifier,
                Port=cfg.port,
                Protocol=cfg.protocol,
                DefaultActions=_forward(ctx, cfg),
            )
        return ProviderResult(previous.identifier, {"arn": previous.identifier, "port": cfg.port})

    def delete(self, resolved: ResolvedResource, ctx: ProvisionContext) -> None:
        with translate_errors(f"delete listener {resolved.identifier}"):
            self.clients.elbv2.delete_listener(ListenerArn=resolved.identifier)
