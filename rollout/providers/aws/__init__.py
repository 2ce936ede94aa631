"""AWS backend: importing this package registers a boto3 provider for every resource kind."""

import boto3

from rollout.graph.resources import ResourceKind
from rollout.provisioner.registry import ResourceProvider
from rollout.providers.aws import compute, ecr, loadbalancer, networking  # noqa: F401
from rollout.providers.aws.base import AWS, AwsClients
from rollout.providers.aws.iam import IamIdentityProvider


def build_aws_providers(
    session: boto3.session.Session,
    tags: dict[str, str] | None = None,
) -> dict[ResourceKind, ResourceProvider]:
    """One provider per kind sharing a client cache and an IAM identity provider."""
    clients = AwsClients(session)
    clients.identity = IamIdentityProvider(clients.iam, tags)
    return AWS.build(clients)


__all__ = ["AWS", "AwsClients", "IamIdentityProvider", "build_aws_providers"]
