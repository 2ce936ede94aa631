"""ECR as an image registry: push through Docker, resolve digests through the ECR API."""

import base64
import logging
from typing import Any

from botocore.exceptions import ClientError
import docker
from docker.errors import DockerException

from rollout.errors import PublishError
from rollout.publisher.publisher import BuiltImage

LOG = logging.getLogger(__name__)


class EcrImageRegistry:
    def __init__(self, ecr: Any, repository_uri: str, docker_client: docker.DockerClient | None = None) -> None:
        self.ecr = ecr
        self.repository = repository_uri
        self.repository_name = repository_uri.split("/", 1)[1]
        self._docker = docker_client

    @property
    def docker(self) -> docker.DockerClient:
        if self._docker is None:
            self._docker = docker.from_env()
        return self._docker

    def _auth_config(self) -> dict[str, str]:
        data = self.ecr.get_authorization_token()["authorizationData"][0]
        username, password = base64.b64decode(data["authorizationToken"]).decode().split(":", 1)
        return {"username": username, "password": password}

    def list_tags(self) -> set[str]:
        tags: set[str] = set()
        paginator = self.ecr.get_paginator("list_images")
        for page in paginator.paginate(repositoryName=self.repository_name, filter={"tagStatus": "TAGGED"}):
            tags.update(i["imageTag"] for i in page.get("imageIds", []) if "imageTag" in i)
        return tags

    def push(self, image: BuiltImage, tag: str) -> str:
        """Push ``image`` as ``tag`` and return the manifest digest."""
        digest = None
        try:
            self.docker.images.get(image.image_id).tag(self.repository, tag=tag)
            for line in self.docker.images.push(
                self.repository, tag=tag, stream=True, decode=True, auth_config=self._auth_config()
            ):
                if "error" in line:
                    raise PublishError(f"push of {self.repository}:{tag} failed: {line['error']}")
                digest = line.get("aux", {}).get("Digest", digest)
        except DockerException as e:
            raise PublishError(f"push of {self.repository}:{tag} failed: {e}") from e
        return digest or self.pull(tag)

    def pull(self, tag: str) -> str:
        """Digest the registry holds for ``tag``; KeyError if there is none."""
        try:
            details = self.ecr.describe_images(
                repositoryName=self.repository_name, imageIds=[{"imageTag": tag}]
            )["imageDetails"]
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ImageNotFoundException":
                raise KeyError(tag) from e
            raise
        if not details:
            raise KeyError(tag)
        return details[0]["imageDigest"]

    def delete(self, tag: str) -> None:
        response = self.ecr.batch_delete_image(repositoryName=self.repository_name, imageIds=[{"imageTag": tag}])
        for failure in response.get("failures", []):
            LOG.warning("delete of %s:%s failed: %s", self.repository, tag, failure.get("failureReason"))
