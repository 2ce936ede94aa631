"""ECR repository with immutable tags and a lifecycle policy."""

import json

from botocore.exceptions import ClientError

from rollout.graph.resources import RegistryConfig, Resource, ResourceKind
from rollout.provisioner.context import ProvisionContext
from rollout.provisioner.registry import ProviderResult
from rollout.provisioner.state import ResolvedResource
from rollout.providers.aws.base import AWS, AwsProvider, error_code, resource_tags, tag_list, translate_errors


def lifecycle_policy(keep_last: int) -> str:
    """Lifecycle policy keeping the newest ``keep_last`` images."""
    return json.dumps(
        {
            "rules": [
                {
                    "rulePriority": 1,
                    "description": f"Keep last {keep_last} images",
                    "selection": {
                        "tagStatus": "any",
                        "countType": "imageCountMoreThan",
                        "countNumber": keep_last,
                    },
                    "action": {"type": "expire"},
                }
            ],
        }
    )


@AWS.register(ResourceKind.REGISTRY)
class RepositoryProvider(AwsProvider):
    """Tags are immutable so a published tag always resolves to the same digest."""

    def _configure(self, cfg: RegistryConfig) -> None:
        ecr = self.clients.ecr
        ecr.put_image_scanning_configuration(
            repositoryName=cfg.name, imageScanningConfiguration={"scanOnPush": cfg.scan_on_push}
        )
        ecr.put_lifecycle_policy(repositoryName=cfg.name, lifecyclePolicyText=lifecycle_policy(cfg.keep_last))

    @staticmethod
    def _outputs(repo: dict) -> dict:
        return {"name": repo["repositoryName"], "arn": repo["repositoryArn"], "repository_uri": repo["repositoryUri"]}

    def create(self, resource: Resource, ctx: ProvisionContext) -> ProviderResult:
        cfg = resource.config
        ecr = self.clients.ecr
        with translate_errors(f"create repository {cfg.name}"):
            try:
                repo = ecr.describe_repositories(repositoryNames=[cfg.name])["repositories"][0]
            except ClientError as e:
                if error_code(e) != "RepositoryNotFoundException":
                    raise
                repo = ecr.create_repository(
                    repositoryName=cfg.name,
                    imageTagMutability="IMMUTABLE",
                    imageScanningConfiguration={"scanOnPush": cfg.scan_on_push},
                    tags=tag_list(resource_tags(resource.name, ctx)),
                )["repository"]
            self._configure(cfg)
        return ProviderResult(repo["repositoryArn"], self._outputs(repo))

    def update(self, resource: Resource, previous: ResolvedResource, ctx: ProvisionContext) -> ProviderResult:
        with translate_errors(f"update repository {resource.config.name}"):
            self._configure(resource.config)
        return ProviderResult(previous.identifier, dict(previous.outputs))

    def delete(self, resolved: ResolvedResource, ctx: ProvisionContext) -> None:
        with translate_errors(f"delete repository {resolved.outputs.get('name')}"):
            self.clients.ecr.delete_repository(
                repositoryName=resolved.outputs["name"],
                force=bool(resolved.config.get("force_delete", False)),
            )
