"""Resource kinds and their kind-specific configuration structs.

Each kind has exactly one config dataclass. Configs are validated when they are
constructed, so a malformed resource can never reach the provisioner. Fields
listed in a config's ``IMMUTABLE`` set cannot be changed in place; changing
one turns an update into a replace.
"""

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
import ipaddress
from typing import Any, ClassVar

from rollout.errors import ConfigurationError, CyclicDependencyError


class ResourceKind(str, Enum):
    """Kinds of infrastructure resource the engine knows how to provision."""

    NETWORK = "network"
    SUBNET = "subnet"
    SECURITY_RULE = "security-rule"
    LOAD_BALANCER = "load-balancer"
    LISTENER = "listener"
    TARGET_GROUP = "target-group"
    REGISTRY = "registry"
    TASK_TEMPLATE = "task-template"
    SERVICE = "service"
    CLUSTER = "cluster"


def _fail(kind: str, message: str) -> None:
    raise ConfigurationError(f"{kind}: {message}")


def _require_name(kind: str, field_name: str, value: str, max_len: int | None = None) -> None:
    if not value or not isinstance(value, str):
        _fail(kind, f"{field_name} must be a non-empty string")
    if max_len is not None and len(value) > max_len:
        _fail(kind, f"{field_name} {value!r} longer than {max_len} characters")


def _require_port(kind: str, port: int) -> None:
    if not isinstance(port, int) or not 1 <= port <= 65535:
        _fail(kind, f"port must be between 1 and 65535, got {port!r}")


@dataclass(frozen=True)
class ResourceConfig:
    """Base for kind-specific config structs."""

    KIND: ClassVar[ResourceKind]
    IMMUTABLE: ClassVar[frozenset[str]] = frozenset()

    def references(self) -> set[str]:
        """Logical names of other resources this config points at."""
        return set()

    def to_dict(self) -> dict[str, Any]:
        """Plain-dict form used for diffing and persisted state."""
        return _plain(asdict(self))

    def changed_fields(self, previous: dict[str, Any]) -> set[str]:
        """Names of fields whose value differs from a persisted config dict."""
        current = self.to_dict()
        return {f.name for f in fields(self) if current.get(f.name) != previous.get(f.name)}


def _plain(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, frozenset, set)):
        items = [_plain(v) for v in value]
        return sorted(items) if isinstance(value, (set, frozenset)) else items
    if isinstance(value, Enum):
        return value.value
    return value


@dataclass(frozen=True)
class NetworkConfig(ResourceConfig):
    KIND: ClassVar[ResourceKind] = ResourceKind.NETWORK
    IMMUTABLE: ClassVar[frozenset[str]] = frozenset({"cidr", "internet_gateway"})

    cidr: str = "192.168.0.0/16"
    enable_dns_hostnames: bool = True
    internet_gateway: bool = True

    def __post_init__(self) -> None:
        try:
            ipaddress.ip_network(self.cidr)
        except ValueError as e:
            raise ConfigurationError(f"network: invalid cidr {self.cidr!r}") from e


@dataclass(frozen=True)
class SubnetConfig(ResourceConfig):
    """One subnet per availability zone, carved out of the network CIDR."""

    KIND: ClassVar[ResourceKind] = ResourceKind.SUBNET
    IMMUTABLE: ClassVar[frozenset[str]] = frozenset(
        {"network", "tier", "cidr_mask", "az_count", "offset", "endpoints"}
    )

    network: str = ""
    tier: str = "private"
    cidr_mask: int = 24
    az_count: int = 3
    offset: int = 0
    endpoints: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _require_name("subnet", "network", self.network)
        if self.tier not in ("public", "private"):
            _fail("subnet", f"tier must be 'public' or 'private', got {self.tier!r}")
        if not 16 <= self.cidr_mask <= 28:
            _fail("subnet", f"cidr_mask must be between 16 and 28, got {self.cidr_mask}")
        if self.az_count < 1:
            _fail("subnet", "az_count must be at least 1")
        if self.offset < 0:
            _fail("subnet", "offset must not be negative")
        if self.endpoints and self.tier != "private":
            _fail("subnet", "endpoints are only supported on private subnets")

    def references(self) -> set[str]:
        return {self.network}


@dataclass(frozen=True)
class IngressRule:
    """Allow ``protocol``/``port`` from either a CIDR or another security rule."""

    port: int
    protocol: str = "tcp"
    cidr: str | None = None
    source: str | None = None
    description: str = ""

    def __post_init__(self) -> None:
        _require_port("security-rule", self.port)
        if (self.cidr is None) == (self.source is None):
            _fail("security-rule", "ingress rule needs exactly one of cidr or source")


@dataclass(frozen=True)
class SecurityRuleConfig(ResourceConfig):
    KIND: ClassVar[ResourceKind] = ResourceKind.SECURITY_RULE
    IMMUTABLE: ClassVar[frozenset[str]] = frozenset({"network", "group_name", "description"})

    network: str = ""
    group_name: str = ""
    description: str = ""
    ingress: tuple[IngressRule, ...] = ()

    def __post_init__(self) -> None:
        _require_name("security-rule", "network", self.network)
        _require_name("security-rule", "group_name", self.group_name, max_len=255)

    def references(self) -> set[str]:
        return {self.network} | {r.source for r in self.ingress if r.source}


@dataclass(frozen=True)
class LoadBalancerConfig(ResourceConfig):
    KIND: ClassVar[ResourceKind] = ResourceKind.LOAD_BALANCER
    IMMUTABLE: ClassVar[frozenset[str]] = frozenset({"name", "internet_facing"})

    name: str = ""
    internet_facing: bool = True
    subnet: str = ""
    security_rules: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _require_name("load-balancer", "name", self.name, max_len=32)
        _require_name("load-balancer", "subnet", self.subnet)

    def references(self) -> set[str]:
        return {self.subnet, *self.security_rules}


@dataclass(frozen=True)
class HealthCheckConfig:
    path: str = "/"
    protocol: str = "HTTP"
    interval_seconds: int = 60
    timeout_seconds: int = 5
    healthy_threshold: int = 2
    unhealthy_threshold: int = 3
    healthy_http_codes: str = "200"

    def __post_init__(self) -> None:
        if not self.path.startswith("/"):
            _fail("target-group", f"health check path must start with '/', got {self.path!r}")
        if self.interval_seconds < 1 or self.timeout_seconds < 1:
            _fail("target-group", "health check interval and timeout must be positive")
        if self.timeout_seconds >= self.interval_seconds:
            _fail("target-group", "health check timeout must be shorter than the interval")
        if self.healthy_threshold < 1 or self.unhealthy_threshold < 1:
            _fail("target-group", "health check thresholds must be at least 1")


@dataclass(frozen=True)
class TargetGroupConfig(ResourceConfig):
    KIND: ClassVar[ResourceKind] = ResourceKind.TARGET_GROUP
    IMMUTABLE: ClassVar[frozenset[str]] = frozenset({"network", "name", "port", "protocol", "target_type"})

    network: str = ""
    name: str = ""
    port: int = 80
    protocol: str = "HTTP"
    target_type: str = "ip"
    health_check: HealthCheckConfig = field(default_factory=HealthCheckConfig)
    deregistration_delay: int = 60

    def __post_init__(self) -> None:
        _require_name("target-group", "network", self.network)
        _require_name("target-group", "name", self.name, max_len=32)
        _require_port("target-group", self.port)
        if self.target_type not in ("ip", "instance"):
            _fail("target-group", f"unsupported target_type {self.target_type!r}")

    def references(self) -> set[str]:
        return {self.network}


@dataclass(frozen=True)
class ListenerConfig(ResourceConfig):
    KIND: ClassVar[ResourceKind] = ResourceKind.LISTENER
    IMMUTABLE: ClassVar[frozenset[str]] = frozenset({"load_balancer"})

    load_balancer: str = ""
    target_group: str = ""
    port: int = 80
    protocol: str = "HTTP"

    def __post_init__(self) -> None:
        _require_name("listener", "load_balancer", self.load_balancer)
        _require_name("listener", "target_group", self.target_group)
        _require_port("listener", self.port)

    def references(self) -> set[str]:
        return {self.load_balancer, self.target_group}


@dataclass(frozen=True)
class RegistryConfig(ResourceConfig):
    KIND: ClassVar[ResourceKind] = ResourceKind.REGISTRY
    IMMUTABLE: ClassVar[frozenset[str]] = frozenset({"name"})

    name: str = ""
    scan_on_push: bool = True
    keep_last: int = 10
    force_delete: bool = True

    def __post_init__(self) -> None:
        _require_name("registry", "name", self.name, max_len=256)
        if self.keep_last < 1:
            _fail("registry", "keep_last must be at least 1")


@dataclass(frozen=True)
class ClusterConfig(ResourceConfig):
    KIND: ClassVar[ResourceKind] = ResourceKind.CLUSTER
    IMMUTABLE: ClassVar[frozenset[str]] = frozenset({"name"})

    name: str = ""
    container_insights: bool = True

    def __post_init__(self) -> None:
        _require_name("cluster", "name", self.name, max_len=255)


# Execution identity permissions needed to pull from the registry and ship logs.
DEFAULT_EXECUTION_PERMISSIONS = (
    "ecr:GetAuthorizationToken",
    "ecr:BatchCheckLayerAvailability",
    "ecr:GetDownloadUrlForLayer",
    "ecr:BatchGetImage",
    "logs:CreateLogStream",
    "logs:PutLogEvents",
)


@dataclass(frozen=True)
class TaskTemplateConfig(ResourceConfig):
    """A task template is versioned: any change registers a new revision."""

    KIND: ClassVar[ResourceKind] = ResourceKind.TASK_TEMPLATE

    family: str = ""
    registry: str = ""
    image_tag: str = ""
    cpu: int = 1024
    memory: int = 2048
    container_name: str = ""
    container_port: int = 80
    cpu_architecture: str = "ARM64"
    os_family: str = "LINUX"
    log_stream_prefix: str = ""
    execution_identity: str | None = None
    execution_permissions: tuple[str, ...] = DEFAULT_EXECUTION_PERMISSIONS

    IMMUTABLE: ClassVar[frozenset[str]] = frozenset(
        {
            "family",
            "registry",
            "image_tag",
            "cpu",
            "memory",
            "container_name",
            "container_port",
            "cpu_architecture",
            "os_family",
            "log_stream_prefix",
            "execution_identity",
            "execution_permissions",
        }
    )

    def __post_init__(self) -> None:
        _require_name("task-template", "family", self.family, max_len=255)
        _require_name("task-template", "registry", self.registry)
        _require_name("task-template", "image_tag", self.image_tag)
        _require_name("task-template", "container_name", self.container_name, max_len=255)
        _require_port("task-template", self.container_port)
        if self.cpu <= 0 or self.memory <= 0:
            _fail("task-template", "cpu and memory must be positive")
        if self.cpu_architecture not in ("ARM64", "X86_64"):
            _fail("task-template", f"unsupported cpu_architecture {self.cpu_architecture!r}")

    def references(self) -> set[str]:
        return {self.registry}


@dataclass(frozen=True)
class ServiceConfig(ResourceConfig):
    KIND: ClassVar[ResourceKind] = ResourceKind.SERVICE
    IMMUTABLE: ClassVar[frozenset[str]] = frozenset({"name", "cluster"})

    name: str = ""
    cluster: str = ""
    task_template: str = ""
    target_group: str = ""
    listener: str = ""
    subnet: str = ""
    security_rules: tuple[str, ...] = ()
    desired_count: int = 3
    min_healthy_percent: int = 50
    max_healthy_percent: int = 200
    circuit_breaker_rollback: bool = True
    circuit_breaker_threshold: int = 2
    batch_size: int = 1
    batch_timeout_seconds: int = 600
    timeout_seconds: int = 3600
    drain_grace_seconds: int = 60
    assign_public_ip: bool = False
    enable_execute_command: bool = True

    def __post_init__(self) -> None:
        _require_name("service", "name", self.name, max_len=255)
        for ref in ("cluster", "task_template", "target_group", "listener", "subnet"):
            _require_name("service", ref, getattr(self, ref))
        if self.desired_count < 1:
            _fail("service", "desired_count must be at least 1")
        if not 0 <= self.min_healthy_percent <= 100:
            _fail("service", "min_healthy_percent must be between 0 and 100")
        if self.max_healthy_percent < 100:
            _fail("service", "max_healthy_percent must be at least 100")
        if self.circuit_breaker_threshold < 1 or self.batch_size < 1:
            _fail("service", "circuit_breaker_threshold and batch_size must be at least 1")

    def references(self) -> set[str]:
        return {
            self.cluster,
            self.task_template,
            self.target_group,
            self.listener,
            self.subnet,
            *self.security_rules,
        }


CONFIG_TYPES: dict[ResourceKind, type[ResourceConfig]] = {
    cls.KIND: cls
    for cls in (
        NetworkConfig,
        SubnetConfig,
        SecurityRuleConfig,
        LoadBalancerConfig,
        TargetGroupConfig,
        ListenerConfig,
        RegistryConfig,
        ClusterConfig,
        TaskTemplateConfig,
        ServiceConfig,
    )
}

# A dependent whose dependency of the given kind is replaced must be replaced too.
REPLACE_WITH_DEPENDENCY: dict[ResourceKind, frozenset[ResourceKind]] = {
    ResourceKind.SUBNET: frozenset({ResourceKind.NETWORK}),
    ResourceKind.SECURITY_RULE: frozenset({ResourceKind.NETWORK}),
    ResourceKind.TARGET_GROUP: frozenset({ResourceKind.NETWORK}),
    ResourceKind.LOAD_BALANCER: frozenset({ResourceKind.SUBNET}),
    ResourceKind.LISTENER: frozenset({ResourceKind.LOAD_BALANCER}),
    ResourceKind.SERVICE: frozenset({ResourceKind.CLUSTER}),
}


@dataclass(frozen=True)
class Resource:
    """A named node of the resource graph."""

    name: str
    kind: ResourceKind
    config: ResourceConfig
    depends_on: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("resource name must not be empty")
        kind = ResourceKind(self.kind)
        expected = CONFIG_TYPES[kind]
        if not isinstance(self.config, expected):
            raise ConfigurationError(
                f"resource {self.name!r} of kind {kind.value} needs {expected.__name__}, "
                f"got {type(self.config).__name__}"
            )
        object.__setattr__(self, "kind", kind)
        deps = frozenset(self.depends_on)
        if self.name in deps:
            raise CyclicDependencyError([self.name, self.name])
        missing = self.config.references() - deps
        if missing:
            raise ConfigurationError(
                f"resource {self.name!r} references {', '.join(sorted(missing))} without depending on it"
            )
        object.__setattr__(self, "depends_on", deps)


def make_resource(name: str, config: ResourceConfig, depends_on: set[str] | None = None) -> Resource:
    """Build a Resource whose dependencies are at least the config's references."""
    deps = set(depends_on or ()) | config.references()
    return Resource(name=name, kind=config.KIND, config=config, depends_on=frozenset(deps))
