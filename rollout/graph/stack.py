"""Standard resource graph for one load-balanced container service."""

import math

from rollout.config import EngineConfig
from rollout.graph.model import ResourceGraph
from rollout.graph.resources import (
    ClusterConfig,
    HealthCheckConfig,
    IngressRule,
    ListenerConfig,
    LoadBalancerConfig,
    NetworkConfig,
    RegistryConfig,
    SecurityRuleConfig,
    ServiceConfig,
    SubnetConfig,
    TargetGroupConfig,
    TaskTemplateConfig,
    make_resource,
)

NETWORK = "vpc"
PUBLIC_SUBNET = "subnet-ingress"
PRIVATE_SUBNET = "subnet-private"
ELB_RULE = "sg-elb"
APP_RULE = "sg-app"
LOAD_BALANCER = "alb"
TARGET_GROUP = "target-group"
LISTENER = "listener"
REGISTRY = "repository"
CLUSTER = "cluster"
TASK_TEMPLATE = "task-template"
SERVICE = "service"


def _private_offset(max_azs: int, public_mask: int, private_mask: int) -> int:
    """First private block index that does not overlap the public subnets."""
    public_size = max_azs * 2 ** (32 - public_mask)
    return math.ceil(public_size / 2 ** (32 - private_mask))


def build_service_graph(config: EngineConfig, image_tag: str) -> ResourceGraph:
    """Build the network, load balancer, registry, cluster, task template and service for ``config``.

    Public subnets carry the internet-facing load balancer; tasks run in
    isolated private subnets that reach the registry and log storage through
    VPC endpoints. Only the load balancer may talk to the tasks.
    """
    name = config.service_name
    net, lb, task, svc = config.network, config.load_balancer, config.task, config.service
    hc = lb.health_check

    graph = ResourceGraph()
    graph.add_resource(make_resource(NETWORK, NetworkConfig(cidr=net.cidr)))
    graph.add_resource(
        make_resource(
            PUBLIC_SUBNET,
            SubnetConfig(network=NETWORK, tier="public", cidr_mask=net.public_subnet_mask, az_count=net.max_azs),
        )
    )
    graph.add_resource(
        make_resource(
            PRIVATE_SUBNET,
            SubnetConfig(
                network=NETWORK,
                tier="private",
                cidr_mask=net.private_subnet_mask,
                az_count=net.max_azs,
                offset=_private_offset(net.max_azs, net.public_subnet_mask, net.private_subnet_mask),
                endpoints=tuple(net.endpoints),
            ),
        )
    )
    graph.add_resource(
        make_resource(
            ELB_RULE,
            SecurityRuleConfig(
                network=NETWORK,
                group_name=f"{name}-elb",
                description=f"Load balancer for {name}",
                ingress=(IngressRule(port=lb.port, cidr="0.0.0.0/0", description="Allow from anyone"),),
            ),
        )
    )
    graph.add_resource(
        make_resource(
            APP_RULE,
            SecurityRuleConfig(
                network=NETWORK,
                group_name=f"{name}-app",
                description=f"Tasks of {name}",
                ingress=(IngressRule(port=task.port, source=ELB_RULE, description="Allow from load balancer"),),
            ),
        )
    )
    graph.add_resource(
        make_resource(
            LOAD_BALANCER,
            LoadBalancerConfig(
                name=lb.name,
                internet_facing=lb.internet_facing,
                subnet=PUBLIC_SUBNET,
                security_rules=(ELB_RULE,),
            ),
        )
    )
    graph.add_resource(
        make_resource(
            TARGET_GROUP,
            TargetGroupConfig(
                network=NETWORK,
                name=f"{name}-tg"[:32],
                port=task.port,
                health_check=HealthCheckConfig(
                    path=hc.path,
                    interval_seconds=hc.interval_seconds,
                    timeout_seconds=hc.timeout_seconds,
                    healthy_threshold=hc.healthy_threshold,
                    unhealthy_threshold=hc.unhealthy_threshold,
                    healthy_http_codes=hc.healthy_http_codes,
                ),
                deregistration_delay=lb.deregistration_delay,
            ),
        )
    )
    graph.add_resource(
        make_resource(
            LISTENER,
            ListenerConfig(load_balancer=LOAD_BALANCER, target_group=TARGET_GROUP, port=lb.port),
        )
    )
    graph.add_resource(
        make_resource(
            REGISTRY,
            RegistryConfig(
                name=config.registry.name,
                scan_on_push=config.registry.scan_on_push,
                keep_last=config.registry.keep_last,
            ),
        )
    )
    graph.add_resource(
        make_resource(CLUSTER, ClusterConfig(name=svc.cluster, container_insights=svc.container_insights))
    )
    graph.add_resource(
        make_resource(
            TASK_TEMPLATE,
            TaskTemplateConfig(
                family=name,
                registry=REGISTRY,
                image_tag=image_tag,
                cpu=task.cpu,
                memory=task.memory,
                container_name=task.container_name,
                container_port=task.port,
                cpu_architecture=task.cpu_architecture,
                log_stream_prefix=task.log_stream_prefix,
                execution_identity=task.execution_role_arn,
            ),
        )
    )
    graph.add_resource(
        make_resource(
            SERVICE,
            ServiceConfig(
                name=name,
                cluster=CLUSTER,
                task_template=TASK_TEMPLATE,
                target_group=TARGET_GROUP,
                listener=LISTENER,
                subnet=PRIVATE_SUBNET,
                security_rules=(APP_RULE,),
                desired_count=svc.desired_count,
                min_healthy_percent=svc.min_healthy_percent,
                max_healthy_percent=svc.max_healthy_percent,
                circuit_breaker_rollback=svc.circuit_breaker.rollback,
                circuit_breaker_threshold=svc.circuit_breaker.threshold,
                batch_size=svc.deployment.batch_size,
                batch_timeout_seconds=svc.deployment.batch_timeout_seconds,
                timeout_seconds=svc.deployment.timeout_seconds,
                drain_grace_seconds=svc.deployment.drain_grace_seconds,
                enable_execute_command=svc.enable_execute_command,
            ),
        )
    )
    graph.validate()
    return graph
