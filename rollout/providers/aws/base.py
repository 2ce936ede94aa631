"""Shared pieces of the AWS backend: client cache, tagging helpers, error translation."""

from collections.abc import Iterator
from contextlib import contextmanager
import hashlib
import threading
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from rollout.errors import ProviderError
from rollout.graph.resources import Resource
from rollout.provisioner.context import ProvisionContext
from rollout.provisioner.registry import IdentityProvider, ProviderRegistry, ProviderResult
from rollout.provisioner.state import ResolvedResource

AWS = ProviderRegistry("aws")

NAME_TAG = "rollout:name"


class AwsClients:
    """Lazily created boto3 clients sharing one session.

    boto3 sessions are not thread-safe, so client creation is serialised;
    the clients themselves are safe to share between threads.
    """

    def __init__(self, session: boto3.session.Session, identity: IdentityProvider | None = None) -> None:
        self.session = session
        self.identity = identity
        self._clients: dict[str, Any] = {}
        self._lock = threading.Lock()

    def client(self, service: str) -> Any:
        with self._lock:
            if service not in self._clients:
                self._clients[service] = self.session.client(service)
            return self._clients[service]

    @property
    def region(self) -> str:
        return self.session.region_name

    @property
    def ec2(self) -> Any:
        return self.client("ec2")

    @property
    def elbv2(self) -> Any:
        return self.client("elbv2")

    @property
    def ecr(self) -> Any:
        return self.client("ecr")

    @property
    def ecs(self) -> Any:
        return self.client("ecs")

    @property
    def iam(self) -> Any:
        return self.client("iam")


@contextmanager
def translate_errors(action: str) -> Iterator[None]:
    """Re-raise botocore failures as ProviderError naming the action."""
    try:
        yield
    except ClientError as e:
        raise ProviderError(f"{action}: {e.response.get('Error', {}).get('Message', e)}") from e
    except BotoCoreError as e:
        raise ProviderError(f"{action}: {e}") from e


def error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def resource_tags(name: str, ctx: ProvisionContext) -> dict[str, str]:
    return {**ctx.tags, NAME_TAG: name}


def tag_list(tags: dict[str, str]) -> list[dict[str, str]]:
    """EC2/ELB/ECR style: [{"Key": ..., "Value": ...}]."""
    return [{"Key": k, "Value": v} for k, v in sorted(tags.items())]


def ecs_tag_list(tags: dict[str, str]) -> list[dict[str, str]]:
    """ECS style: [{"key": ..., "value": ...}]."""
    return [{"key": k, "value": v} for k, v in sorted(tags.items())]


def tag_specifications(resource_type: str, tags: dict[str, str]) -> list[dict[str, Any]]:
    return [{"ResourceType": resource_type, "Tags": tag_list(tags)}]


def tag_filters(tags: dict[str, str]) -> list[dict[str, Any]]:
    return [{"Name": f"tag:{k}", "Values": [v]} for k, v in sorted(tags.items())]


def replacement_name(name: str, replacing: ResolvedResource, max_len: int) -> str:
    """Name for a replacement created while the resource it supersedes still holds ``name``.

    The suffix is derived from the superseded identifier, so a retried replacement finds the same name.
    """
    suffix = hashlib.sha256(replacing.identifier.encode()).hexdigest()[:6]
    return f"{name[: max_len - len(suffix) - 1].rstrip('-')}-{suffix}"


class AwsProvider:
    """Base for AWS providers; subclasses implement create/update/delete for one kind."""

    def __init__(self, clients: AwsClients) -> None:
        self.clients = clients

    def update(self, resource: Resource, previous: ResolvedResource, ctx: ProvisionContext) -> ProviderResult:
        """Kinds without mutable fields keep the existing resource."""
        return ProviderResult(previous.identifier, dict(previous.outputs))
