"""Tests for the ECR image registry adapter."""

import base64
from unittest.mock import MagicMock

from botocore.exceptions import ClientError
import pytest

from rollout.errors import PublishError
from rollout.publisher.ecr import EcrImageRegistry
from rollout.publisher.publisher import BuiltImage

REPO = "123456789012.dkr.ecr.us-west-2.amazonaws.com/web-repo"


def _make_registry(ecr: MagicMock | None = None, docker_client: MagicMock | None = None) -> EcrImageRegistry:
    ecr = ecr or MagicMock()
    token = base64.b64encode(b"AWS:secret").decode()
    ecr.get_authorization_token.return_value = {"authorizationData": [{"authorizationToken": token}]}
    return EcrImageRegistry(ecr, REPO, docker_client=docker_client or MagicMock())


def test_repository_name_from_uri() -> None:
    """The repository name is the path part of the URI."""
    assert _make_registry().repository_name == "web-repo"


def test_list_tags_skips_untagged() -> None:
    """Only tagged image ids are collected across pages."""
    ecr = MagicMock()
    ecr.get_paginator.return_value.paginate.return_value = [
        {"imageIds": [{"imageTag": "abc1234", "imageDigest": "d1"}, {"imageDigest": "d2"}]},
        {"imageIds": [{"imageTag": "def5678", "imageDigest": "d3"}]},
    ]
    assert _make_registry(ecr).list_tags() == {"abc1234", "def5678"}


def test_push_returns_digest_from_stream() -> None:
    """The manifest digest reported by the push stream is returned."""
    docker_client = MagicMock()
    docker_client.images.push.return_value = [{"status": "Pushing"}, {"aux": {"Digest": "sha256:abc"}}]
    registry = _make_registry(docker_client=docker_client)

    digest = registry.push(BuiltImage("img-1", "c1"), "abc1234")

    assert digest == "sha256:abc"
    docker_client.images.get.return_value.tag.assert_called_once_with(REPO, tag="abc1234")
    assert docker_client.images.push.call_args[1]["auth_config"] == {"username": "AWS", "password": "secret"}


def test_push_error_line_raises() -> None:
    """An error in the push stream is a PublishError."""
    docker_client = MagicMock()
    docker_client.images.push.return_value = [{"error": "denied: not authorized"}]
    with pytest.raises(PublishError, match="denied"):
        _make_registry(docker_client=docker_client).push(BuiltImage("img-1", "c1"), "abc1234")


def test_pull_missing_tag_is_key_error() -> None:
    """An unknown tag raises KeyError."""
    ecr = MagicMock()
    ecr.describe_images.side_effect = ClientError(
        {"Error": {"Code": "ImageNotFoundException", "Message": "nope"}}, "DescribeImages"
    )
    with pytest.raises(KeyError):
        _make_registry(ecr).pull("missing")


def test_pull_returns_digest() -> None:
    """pull reads the image digest from describe_images."""
    ecr = MagicMock()
    ecr.describe_images.return_value = {"imageDetails": [{"imageDigest": "sha256:abc"}]}
    assert _make_registry(ecr).pull("abc1234") == "sha256:abc"


def test_delete_batch_deletes_tag() -> None:
    """delete removes the tag through batch_delete_image."""
    ecr = MagicMock()
    ecr.batch_delete_image.return_value = {"failures": []}
    _make_registry(ecr).delete("abc1234")
    ecr.batch_delete_image.assert_called_once_with(repositoryName="web-repo", imageIds=[{"imageTag": "abc1234"}])
