"""In-process cloud backend for dry runs and tests.

Every provider call is recorded on the shared InMemoryCloud, and failures can
be injected per operation and resource name.
"""

from dataclasses import dataclass
import itertools
import threading
from typing import Any

from rollout.errors import ProviderError
from rollout.graph.resources import Resource, ResourceKind
from rollout.provisioner.context import ProvisionContext
from rollout.provisioner.registry import ProviderRegistry, ProviderResult
from rollout.provisioner.state import ResolvedResource
from rollout.providers.cidr import carve_cidrs

MEMORY = ProviderRegistry("memory")


@dataclass
class CloudRecord:
    kind: ResourceKind
    name: str
    config: dict[str, Any]


class InMemoryCloud:
    """Thread-safe record of the resources that exist and of every call made."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.records: dict[str, CloudRecord] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[tuple[str, str], Exception] = {}

    def fail(self, op: str, name: str, error: Exception | None = None) -> None:
        """Make the next ``op`` ("create", "update", "delete") on ``name`` raise."""
        self._failures[(op, name)] = error or ProviderError(f"injected {op} failure for {name}")

    def call(self, op: str, name: str) -> None:
        with self._lock:
            self.calls.append((op, name))
            error = self._failures.pop((op, name), None)
        if error is not None:
            raise error

    def calls_for(self, op: str) -> list[str]:
        return [name for o, name in self.calls if o == op]

    def allocate(self, prefix: str, record: CloudRecord) -> str:
        with self._lock:
            identifier = f"{prefix}-{next(self._ids):08x}"
            self.records[identifier] = record
        return identifier

    def find(self, kind: ResourceKind, name: str, exclude: str | None = None, config: dict | None = None) -> str | None:
        with self._lock:
            for identifier, record in self.records.items():
                if record.kind != kind or record.name != name or identifier == exclude:
                    continue
                if config is not None and record.config != config:
                    continue
                return identifier
        return None

    def put(self, identifier: str, record: CloudRecord) -> None:
        with self._lock:
            self.records[identifier] = record

    def remove(self, identifier: str) -> None:
        """Already-gone resources count as removed."""
        with self._lock:
            self.records.pop(identifier, None)

    def names(self, kind: ResourceKind | None = None) -> list[str]:
        with self._lock:
            return sorted(r.name for r in self.records.values() if kind is None or r.kind == kind)


class _MemoryProvider:
    prefix = "res"
    match_config = False

    def __init__(self, cloud: InMemoryCloud) -> None:
        self.cloud = cloud

    def outputs(self, resource: Resource, identifier: str, ctx: ProvisionContext) -> dict[str, Any]:
        return {}

    def _record(self, resource: Resource) -> CloudRecord:
        return CloudRecord(kind=resource.kind, name=resource.name, config=resource.config.to_dict())

    def create(self, resource: Resource, ctx: ProvisionContext) -> ProviderResult:
        self.cloud.call("create", resource.name)
        exclude = ctx.replacing.identifier if ctx.replacing else None
        config = resource.config.to_dict() if self.match_config else None
        identifier = self.cloud.find(resource.kind, resource.name, exclude=exclude, config=config)
        if identifier is None:
            identifier = self.cloud.allocate(self.prefix, self._record(resource))
        else:
            self.cloud.put(identifier, self._record(resource))
        return ProviderResult(identifier, self.outputs(resource, identifier, ctx))

    def update(self, resource: Resource, previous: ResolvedResource, ctx: ProvisionContext) -> ProviderResult:
        self.cloud.call("update", resource.name)
        self.cloud.put(previous.identifier, self._record(resource))
        return ProviderResult(previous.identifier, self.outputs(resource, previous.identifier, ctx))

    def delete(self, resolved: ResolvedResource, ctx: ProvisionContext) -> None:
        self.cloud.call("delete", resolved.name)
        self.cloud.remove(resolved.identifier)


@MEMORY.register(ResourceKind.NETWORK)
class MemoryNetwork(_MemoryProvider):
    prefix = "vpc"

    def outputs(self, resource: Resource, identifier: str, ctx: ProvisionContext) -> dict[str, Any]:
        return {"vpc_id": identifier, "cidr": resource.config.cidr, "internet_gateway_id": f"igw-{identifier[4:]}"}


@MEMORY.register(ResourceKind.SUBNET)
class MemorySubnet(_MemoryProvider):
    prefix = "subnet"

    def outputs(self, resource: Resource, identifier: str, ctx: ProvisionContext) -> dict[str, Any]:
        cfg = resource.config
        cidrs = carve_cidrs(ctx.output(cfg.network, "cidr"), cfg.cidr_mask, cfg.offset, cfg.az_count)
        return {
            "subnet_ids": [f"{identifier}-{i}" for i in range(cfg.az_count)],
            "cidrs": cidrs,
            "availability_zones": [f"zone-{chr(ord('a') + i)}" for i in range(cfg.az_count)],
            "endpoints": list(cfg.endpoints),
        }


@MEMORY.register(ResourceKind.SECURITY_RULE)
class MemorySecurityRule(_MemoryProvider):
    prefix = "sg"

    def outputs(self, resource: Resource, identifier: str, ctx: ProvisionContext) -> dict[str, Any]:
        return {"group_id": identifier}


@MEMORY.register(ResourceKind.LOAD_BALANCER)
class MemoryLoadBalancer(_MemoryProvider):
    prefix = "alb"

    def outputs(self, resource: Resource, identifier: str, ctx: ProvisionContext) -> dict[str, Any]:
        dns_name = f"{resource.config.name}.elb.internal"
        ctx.export("url", f"http://{dns_name}")
        return {"arn": identifier, "dns_name": dns_name}


@MEMORY.register(ResourceKind.TARGET_GROUP)
class MemoryTargetGroup(_MemoryProvider):
    prefix = "tg"

    def outputs(self, resource: Resource, identifier: str, ctx: ProvisionContext) -> dict[str, Any]:
        return {"arn": identifier, "port": resource.config.port}


@MEMORY.register(ResourceKind.LISTENER)
class MemoryListener(_MemoryProvider):
    prefix = "listener"

    def outputs(self, resource: Resource, identifier: str, ctx: ProvisionContext) -> dict[str, Any]:
        return {"arn": identifier}


@MEMORY.register(ResourceKind.REGISTRY)
class MemoryRegistry(_MemoryProvider):
    prefix = "repo"

    def outputs(self, resource: Resource, identifier: str, ctx: ProvisionContext) -> dict[str, Any]:
        return {"name": resource.config.name, "repository_uri": f"registry.internal/{resource.config.name}"}


@MEMORY.register(ResourceKind.CLUSTER)
class MemoryCluster(_MemoryProvider):
    prefix = "cluster"

    def outputs(self, resource: Resource, identifier: str, ctx: ProvisionContext) -> dict[str, Any]:
        return {"arn": identifier, "name": resource.config.name}


@MEMORY.register(ResourceKind.TASK_TEMPLATE)
class MemoryTaskTemplate(_MemoryProvider):
    """Every distinct config is a new revision of the family."""

    prefix = "taskdef"
    match_config = True

    def outputs(self, resource: Resource, identifier: str, ctx: ProvisionContext) -> dict[str, Any]:
        cfg = resource.config
        return {
            "arn": identifier,
            "family": cfg.family,
            "image": f"{ctx.output(cfg.registry, 'repository_uri')}:{cfg.image_tag}",
            "cpu": cfg.cpu,
            "memory": cfg.memory,
            "container_name": cfg.container_name,
            "container_port": cfg.container_port,
            "execution_identity": cfg.execution_identity or f"memory-role/{cfg.family}",
        }


@MEMORY.register(ResourceKind.SERVICE)
class MemoryService(_MemoryProvider):
    prefix = "svc"

    def outputs(self, resource: Resource, identifier: str, ctx: ProvisionContext) -> dict[str, Any]:
        cfg = resource.config
        return {
            "arn": identifier,
            "name": cfg.name,
            "cluster_arn": ctx.output(cfg.cluster, "arn"),
            "task_template_arn": ctx.output(cfg.task_template, "arn"),
            "target_group_arn": ctx.output(cfg.target_group, "arn"),
            "subnet_ids": ctx.output(cfg.subnet, "subnet_ids"),
            "security_group_ids": [ctx.output(r, "group_id") for r in cfg.security_rules],
            "container_name": ctx.output(cfg.task_template, "container_name"),
            "container_port": ctx.output(cfg.task_template, "container_port"),
            "desired_count": cfg.desired_count,
        }
