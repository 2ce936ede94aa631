"""Build images with the local Docker daemon."""

import logging
from pathlib import Path

import docker
from docker.errors import BuildError, DockerException

from rollout.errors import PublishError
from rollout.publisher.publisher import BuiltImage

LOG = logging.getLogger(__name__)


class DockerImageBuilder:
    """Builds a Dockerfile context for one target platform."""

    def __init__(self, client: docker.DockerClient | None = None, platform: str | None = "linux/arm64") -> None:
        self._client = client
        self.platform = platform

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise PublishError(f"Docker is not available: {e}") from e
        return self._client

    def build(self, context: Path) -> BuiltImage:
        if not (context / "Dockerfile").exists():
            raise PublishError(f"no Dockerfile in {context}")
        LOG.info("building %s for %s", context, self.platform or "host platform")
        try:
            image, logs = self.client.images.build(path=str(context), platform=self.platform, rm=True)
        except BuildError as e:
            for chunk in e.build_log:
                if "stream" in chunk:
                    LOG.error(chunk["stream"].rstrip())
            raise PublishError(f"image build failed: {e.msg}") from e
        except DockerException as e:
            raise PublishError(f"image build failed: {e}") from e
        for chunk in logs:
            if "stream" in chunk and chunk["stream"].strip():
                LOG.debug(chunk["stream"].rstrip())
        return BuiltImage(image_id=image.id, content_digest=image.id)
