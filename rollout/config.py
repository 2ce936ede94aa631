"""engine.yaml configuration loading and validation."""

from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any

import boto3
import jsonschema
import yaml

from rollout.errors import ConfigurationError
from rollout.spec.validator import validate_engine_spec

MANAGED_BY = "rollout-engine"


@dataclass
class NetworkSection:
    cidr: str = "192.168.0.0/16"
    max_azs: int = 3
    public_subnet_mask: int = 24
    private_subnet_mask: int = 24
    endpoints: list[str] = field(default_factory=lambda: ["ecr.api", "ecr.dkr", "s3", "logs"])


@dataclass
class HealthCheckSection:
    path: str = "/"
    interval_seconds: int = 60
    timeout_seconds: int = 5
    healthy_threshold: int = 2
    unhealthy_threshold: int = 3
    healthy_http_codes: str = "200"


@dataclass
class LoadBalancerSection:
    name: str = ""
    port: int = 80
    internet_facing: bool = True
    deregistration_delay: int = 60
    health_check: HealthCheckSection = field(default_factory=HealthCheckSection)


@dataclass
class RegistrySection:
    name: str = ""
    tag_length: int = 7
    keep_last: int = 10
    scan_on_push: bool = True
    build_context: str = "."
    platform: str = "linux/arm64"


@dataclass
class TaskSection:
    cpu: int = 1024
    memory: int = 2048
    port: int = 80
    cpu_architecture: str = "ARM64"
    container_name: str = ""
    log_stream_prefix: str = ""
    execution_role_arn: str | None = None


@dataclass
class CircuitBreakerSection:
    rollback: bool = True
    threshold: int = 2


@dataclass
class DeploymentSection:
    batch_size: int = 1
    batch_timeout_seconds: int = 600
    timeout_seconds: int = 3600
    drain_grace_seconds: int = 60


@dataclass
class ServiceSection:
    cluster: str = ""
    container_insights: bool = True
    desired_count: int = 3
    min_healthy_percent: int = 50
    max_healthy_percent: int = 200
    enable_execute_command: bool = True
    circuit_breaker: CircuitBreakerSection = field(default_factory=CircuitBreakerSection)
    deployment: DeploymentSection = field(default_factory=DeploymentSection)


@dataclass
class EngineConfig:
    """Parsed and validated engine.yaml configuration."""

    service_name: str
    region: str | None
    raw_spec: dict[str, Any]
    network: NetworkSection = field(default_factory=NetworkSection)
    load_balancer: LoadBalancerSection = field(default_factory=LoadBalancerSection)
    registry: RegistrySection = field(default_factory=RegistrySection)
    task: TaskSection = field(default_factory=TaskSection)
    service: ServiceSection = field(default_factory=ServiceSection)
    source_path: Path | None = None

    @property
    def build_context(self) -> Path:
        """Image build context, resolved relative to the engine.yaml location."""
        context = Path(self.registry.build_context)
        if not context.is_absolute() and self.source_path is not None:
            context = self.source_path.parent / context
        return context

    @classmethod
    def from_dict(cls, data: dict[str, Any], source_path: Path | None = None) -> "EngineConfig":
        """Validate a parsed engine.yaml and fill in defaults for every omitted field."""
        try:
            validate_engine_spec(data)
        except jsonschema.ValidationError as e:
            raise ConfigurationError(e.message) from e

        name = data["metadata"]["name"]
        spec = data.get("spec") or {}
        region = spec.get("region") or os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION")

        n = spec.get("network") or {}
        network = NetworkSection(
            cidr=n.get("cidr", "192.168.0.0/16"),
            max_azs=n.get("maxAzs", 3),
            public_subnet_mask=n.get("publicSubnetMask", 24),
            private_subnet_mask=n.get("privateSubnetMask", 24),
            endpoints=list(n.get("endpoints", NetworkSection().endpoints)),
        )

        lb = spec.get("loadBalancer") or {}
        hc = lb.get("healthCheck") or {}
        load_balancer = LoadBalancerSection(
            name=lb.get("name", f"{name}-alb"[:32]),
            port=lb.get("port", 80),
            internet_facing=lb.get("internetFacing", True),
            deregistration_delay=lb.get("deregistrationDelay", 60),
            health_check=HealthCheckSection(
                path=hc.get("path", "/"),
                interval_seconds=hc.get("intervalSeconds", 60),
                timeout_seconds=hc.get("timeoutSeconds", 5),
                healthy_threshold=hc.get("healthyThreshold", 2),
                unhealthy_threshold=hc.get("unhealthyThreshold", 3),
                healthy_http_codes=hc.get("healthyHttpCodes", "200"),
            ),
        )

        r = spec.get("registry") or {}
        registry = RegistrySection(
            name=r.get("name", f"{name}-repo"),
            tag_length=r.get("tagLength", 7),
            keep_last=r.get("keepLast", 10),
            scan_on_push=r.get("scanOnPush", True),
            build_context=r.get("buildContext", "."),
            platform=r.get("platform", "linux/arm64"),
        )

        t = spec.get("task") or {}
        task = TaskSection(
            cpu=t.get("cpu", 1024),
            memory=t.get("memory", 2048),
            port=t.get("port", 80),
            cpu_architecture=t.get("cpuArchitecture", "ARM64"),
            container_name=t.get("containerName", f"{name}-container"),
            log_stream_prefix=t.get("logStreamPrefix", name),
            execution_role_arn=t.get("executionRoleArn"),
        )

        s = spec.get("service") or {}
        cb = s.get("circuitBreaker") or {}
        dep = s.get("deployment") or {}
        service = ServiceSection(
            cluster=s.get("cluster", f"{name}-cluster"),
            container_insights=s.get("containerInsights", True),
            desired_count=s.get("desiredCount", 3),
            min_healthy_percent=s.get("minHealthyPercent", 50),
            max_healthy_percent=s.get("maxHealthyPercent", 200),
            enable_execute_command=s.get("enableExecuteCommand", True),
            circuit_breaker=CircuitBreakerSection(
                rollback=cb.get("rollback", True),
                threshold=cb.get("threshold", 2),
            ),
            deployment=DeploymentSection(
                batch_size=dep.get("batchSize", 1),
                batch_timeout_seconds=dep.get("batchTimeoutSeconds", 600),
                timeout_seconds=dep.get("timeoutSeconds", 3600),
                drain_grace_seconds=dep.get("drainGraceSeconds", 60),
            ),
        )
        if load_balancer.health_check.timeout_seconds >= load_balancer.health_check.interval_seconds:
            raise ConfigurationError("loadBalancer.healthCheck.timeoutSeconds must be less than intervalSeconds")

        return cls(
            service_name=name,
            region=region,
            raw_spec=spec,
            network=network,
            load_balancer=load_balancer,
            registry=registry,
            task=task,
            service=service,
            source_path=source_path,
        )

    @classmethod
    def from_file(cls, path: str | Path) -> "EngineConfig":
        """Load and validate engine.yaml from file path."""
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"engine.yaml not found: {path}")
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data, source_path=path.resolve())


def load_engine_config() -> EngineConfig:
    """Load engine.yaml from ENGINE_YAML_PATH environment variable."""
    path = os.environ.get("ENGINE_YAML_PATH")
    if not path:
        raise ConfigurationError("ENGINE_YAML_PATH environment variable required")
    return EngineConfig.from_file(path)


def default_tags(service_name: str) -> dict[str, str]:
    """Tags stamped on every AWS resource the engine creates."""
    return {"service": service_name, "managed-by": MANAGED_BY}


def create_aws_session(region: str | None) -> boto3.session.Session:
    """Create the boto3 session all AWS providers and adapters share."""
    if not region:
        raise ConfigurationError("AWS region required: set spec.region in engine.yaml or AWS_REGION")
    return boto3.session.Session(region_name=region)
