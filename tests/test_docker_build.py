"""Tests for the Docker image builder."""

from pathlib import Path
from unittest.mock import MagicMock, patch

from docker.errors import BuildError, DockerException
import pytest

from rollout.errors import PublishError
from rollout.publisher.docker_build import DockerImageBuilder


def test_build_uses_platform(build_context: Path) -> None:
    """The build targets the configured platform and returns the image id."""
    client = MagicMock()
    client.images.build.return_value = (MagicMock(id="sha256:img"), [{"stream": "Step 1/2\n"}])

    image = DockerImageBuilder(client, platform="linux/arm64").build(build_context)

    assert image.image_id == "sha256:img"
    assert image.content_digest == "sha256:img"
    kwargs = client.images.build.call_args[1]
    assert kwargs["platform"] == "linux/arm64"
    assert kwargs["path"] == str(build_context)


def test_missing_dockerfile(tmp_path: Path) -> None:
    """A context without a Dockerfile is rejected before calling Docker."""
    client = MagicMock()
    with pytest.raises(PublishError, match="no Dockerfile"):
        DockerImageBuilder(client).build(tmp_path)
    client.images.build.assert_not_called()


def test_build_error_is_publish_error(build_context: Path) -> None:
    """Docker build failures become PublishError."""
    client = MagicMock()
    client.images.build.side_effect = BuildError("step failed", [{"stream": "error output\n"}])
    with pytest.raises(PublishError, match="step failed"):
        DockerImageBuilder(client).build(build_context)


@patch("rollout.publisher.docker_build.docker.from_env")
def test_docker_unavailable(mock_from_env, build_context: Path) -> None:
    """No Docker daemon is a PublishError."""
    mock_from_env.side_effect = DockerException("socket not found")
    with pytest.raises(PublishError, match="Docker is not available"):
        DockerImageBuilder().build(build_context)
