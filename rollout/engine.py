"""Service engine: publish an image, provision the stack for it, roll the service onto it."""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Any

import boto3

from rollout.config import EngineConfig, create_aws_session, default_tags
from rollout.deploy.aws import EcsClusterRuntime, ElbTargetGroup
from rollout.deploy.controller import DeploymentController
from rollout.deploy.models import (
    DeploymentPolicy,
    DeploymentRun,
    HealthCheckPolicy,
    RollbackPolicy,
    ServiceSpec,
    TaskTemplate,
)
from rollout.deploy.runtime import ClusterRuntime, LoadBalancer
from rollout.errors import ConfigurationError, PartialApplyError
from rollout.graph.model import ResourceGraph
from rollout.graph.resources import ResourceKind
from rollout.graph.stack import REGISTRY, SERVICE, TASK_TEMPLATE, build_service_graph
from rollout.provisioner import Plan, Provisioner, ResolvedResource, ResolvedState
from rollout.provisioner.registry import ResourceProvider
from rollout.providers.aws import build_aws_providers
from rollout.providers.memory import MEMORY, InMemoryCloud
from rollout.publisher import Artifact, ImagePublisher
from rollout.publisher.docker_build import DockerImageBuilder
from rollout.publisher.ecr import EcrImageRegistry
from rollout.store import StateStore

LOG = logging.getLogger(__name__)

# Stands in for the image tag when only the registry is being provisioned.
UNPUBLISHED_TAG = "unpublished"

PublisherFactory = Callable[[ResolvedResource, dict[str, Artifact]], ImagePublisher]
PortsFactory = Callable[[ResolvedResource], tuple[ClusterRuntime, LoadBalancer]]


@dataclass
class Backend:
    """Providers for provisioning plus, where supported, the publish and deploy collaborators."""

    name: str
    providers: Mapping[ResourceKind, ResourceProvider]
    publisher_for: PublisherFactory | None = None
    ports_for: PortsFactory | None = None


def aws_backend(config: EngineConfig, session: boto3.session.Session | None = None) -> Backend:
    session = session or create_aws_session(config.region)
    providers = build_aws_providers(session, default_tags(config.service_name))

    def publisher_for(registry: ResolvedResource, index: dict[str, Artifact]) -> ImagePublisher:
        return ImagePublisher(
            DockerImageBuilder(platform=config.registry.platform),
            EcrImageRegistry(session.client("ecr"), registry.outputs["repository_uri"]),
            index=index,
            tag_length=config.registry.tag_length,
        )

    def ports_for(service: ResolvedResource) -> tuple[ClusterRuntime, LoadBalancer]:
        return (
            EcsClusterRuntime.from_outputs(session.client("ecs"), service.outputs),
            ElbTargetGroup.from_outputs(session.client("elbv2"), service.outputs),
        )

    return Backend("aws", providers, publisher_for, ports_for)


def memory_backend(cloud: InMemoryCloud | None = None) -> Backend:
    """Provisioning only; publish and deploy need real collaborators."""
    return Backend("memory", MEMORY.build(cloud or InMemoryCloud()))


def service_spec(config: EngineConfig, state: ResolvedState) -> ServiceSpec:
    """The ServiceSpec the controller deploys, from config plus the provisioned service and template."""
    service = state[SERVICE].outputs
    template = state[TASK_TEMPLATE].outputs
    s = config.service
    hc = config.load_balancer.health_check
    return ServiceSpec(
        service_name=service["name"],
        cluster=service["cluster_arn"],
        template=TaskTemplate(
            version=template["arn"],
            image=template["image"],
            cpu=int(template["cpu"]),
            memory=int(template["memory"]),
            container_port=int(template["container_port"]),
            execution_identity=template.get("execution_identity"),
        ),
        desired_count=s.desired_count,
        min_healthy_percent=s.min_healthy_percent,
        max_healthy_percent=s.max_healthy_percent,
        rollback=RollbackPolicy(enabled=s.circuit_breaker.rollback, threshold=s.circuit_breaker.threshold),
        deployment=DeploymentPolicy(
            batch_size=s.deployment.batch_size,
            batch_timeout_seconds=s.deployment.batch_timeout_seconds,
            timeout_seconds=s.deployment.timeout_seconds,
            drain_grace_seconds=s.deployment.drain_grace_seconds,
        ),
        health=HealthCheckPolicy(
            interval_seconds=hc.interval_seconds,
            healthy_threshold=hc.healthy_threshold,
            unhealthy_threshold=hc.unhealthy_threshold,
        ),
    )


class ServiceEngine:
    """Runs plan, apply, destroy, publish and deploy for one engine.yaml against a state store."""

    def __init__(
        self,
        config: EngineConfig,
        backend: Backend,
        store: StateStore,
        max_workers: int = 4,
        controller_options: dict[str, Any] | None = None,
    ) -> None:
        self.config = config
        self.backend = backend
        self.store = store
        self.provisioner = Provisioner(
            backend.providers, max_workers=max_workers, tags=default_tags(config.service_name)
        )
        self.controller_options = dict(controller_options or {})
        self._controllers: dict[str, DeploymentController] = {}

    def current_tag(self, state: ResolvedState | None = None) -> str:
        """Image tag the service runs, else that of the provisioned template, else the newest artifact."""
        spec = self.store.load_service()
        if spec is not None:
            return spec.template.image.rsplit(":", 1)[1]
        state = state if state is not None else self.store.load_resources()
        if TASK_TEMPLATE in state:
            return state[TASK_TEMPLATE].config["image_tag"]
        artifacts = self.store.load_artifacts()
        if artifacts:
            return max(artifacts.values(), key=lambda a: a.created_at).tag
        raise ConfigurationError("no image published yet: run publish first or pass an image tag")

    def _keep(self) -> set[str]:
        """Identifiers that must survive pruning: the template the service runs."""
        spec = self.store.load_service()
        return {spec.template.version} if spec is not None else set()

    def graph(self, image_tag: str | None = None) -> ResourceGraph:
        return build_service_graph(self.config, image_tag or self.current_tag())

    def plan(self, image_tag: str | None = None) -> Plan:
        return self.provisioner.plan(self.graph(image_tag), self.store.load_resources())

    def apply(self, image_tag: str | None = None, prune_retired: bool = True) -> ResolvedState:
        """Provision the stack for ``image_tag``; resources.yaml is rewritten after every step."""
        with self.store.exclusive(self.config.service_name):
            return self._apply_tag(image_tag, prune_retired)

    def _apply_tag(self, image_tag: str | None, prune_retired: bool) -> ResolvedState:
        graph = self.graph(image_tag)
        state = self.store.load_resources()
        plan = self.provisioner.plan(graph, state)
        return self._apply(plan, state, prune_retired)

    def _apply(self, plan: Plan, state: ResolvedState, prune_retired: bool = True) -> ResolvedState:
        try:
            result = self.provisioner.apply(
                plan, state, on_step=self.store.save_resources, prune_retired=prune_retired, keep=self._keep()
            )
        except PartialApplyError as e:
            self.store.save_resources(e.state)
            raise
        self.store.save_resources(result)
        return result

    def destroy(self, targets: list[str] | None = None, force: bool = False) -> ResolvedState:
        with self.store.exclusive(self.config.service_name):
            state = self.store.load_resources()
            try:
                tag = self.current_tag(state)
            except ConfigurationError:
                tag = UNPUBLISHED_TAG
            try:
                result = self.provisioner.destroy(build_service_graph(self.config, tag), state, targets, force)
            except PartialApplyError as e:
                self.store.save_resources(e.state)
                raise
            self.store.save_resources(result)
            if SERVICE not in result:
                self.store.clear_service()
            return result

    def ensure_registry(self) -> ResolvedResource:
        """Provision just the image registry if it does not exist yet."""
        state = self.store.load_resources()
        if REGISTRY not in state:
            graph = ResourceGraph()
            graph.add_resource(build_service_graph(self.config, UNPUBLISHED_TAG).get(REGISTRY))
            LOG.info("provisioning registry for %s", self.config.service_name)
            state = self._apply(self.provisioner.plan(graph, state), state)
        return state[REGISTRY]

    def publish(self, context: str | Path | None = None, reuse_tag: bool = False) -> Artifact:
        with self.store.exclusive(self.config.service_name):
            return self._publish(context, reuse_tag)

    def _publish(self, context: str | Path | None, reuse_tag: bool) -> Artifact:
        if self.backend.publisher_for is None:
            raise ConfigurationError(f"the {self.backend.name} backend cannot publish images")
        registry = self.ensure_registry()
        publisher = self.backend.publisher_for(registry, self.store.load_artifacts())
        artifact = publisher.publish(context or self.config.build_context, reuse_tag=reuse_tag)
        self.store.save_artifacts(publisher.index)
        return artifact

    def controller(self, state: ResolvedState) -> DeploymentController:
        """The controller for the provisioned service; one per service for the life of the engine."""
        if self.backend.ports_for is None:
            raise ConfigurationError(f"the {self.backend.name} backend cannot deploy")
        service = state[SERVICE]
        if service.identifier not in self._controllers:
            runtime, load_balancer = self.backend.ports_for(service)
            self._controllers[service.identifier] = DeploymentController(
                runtime, load_balancer, on_change=self.store.save_run, **self.controller_options
            )
        return self._controllers[service.identifier]

    def deploy(self, context: str | Path | None = None, reuse_tag: bool = False) -> DeploymentRun | None:
        """Publish, provision for the new tag and roll the service onto it.

        Returns None when the running template is already current. The service
        spec on record only advances when the run reaches steady state;
        superseded templates are kept until then so a rollback can still launch them.
        Raises DeploymentInProgressError while another operation holds the state directory.
        """
        if self.backend.ports_for is None:
            raise ConfigurationError(f"the {self.backend.name} backend cannot deploy")
        with self.store.exclusive(self.config.service_name):
            artifact = self._publish(context, reuse_tag)
            previous = self.store.load_service()
            state = self._apply_tag(artifact.tag, prune_retired=False)
            spec = service_spec(self.config, state)
            if previous is not None and previous.template.version == spec.template.version:
                LOG.info("%s already runs %s", spec.service_name, spec.template.version)
                return None
            run = self.controller(state).deploy(spec, previous)
            self.store.save_service(spec)
            pruned = self.provisioner.prune(
                self.graph(artifact.tag), state, on_step=self.store.save_resources, keep=self._keep()
            )
            self.store.save_resources(pruned)
            return run

    def status(self) -> dict[str, Any]:
        state = self.store.load_resources()
        spec = self.store.load_service()
        return {
            "service": self.config.service_name,
            "backend": self.backend.name,
            "resources": {name: r.identifier for name, r in state.items()},
            "template": spec.template.version if spec else None,
            "image": spec.template.image if spec else None,
            "current_run": self.store.current_run(),
        }
