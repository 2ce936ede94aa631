"""Image publishing: random immutable tags, atomic push, digest verification."""

from rollout.publisher.artifact import Artifact, generate_tag
from rollout.publisher.publisher import BuiltImage, ImagePublisher

__all__ = ["Artifact", "BuiltImage", "ImagePublisher", "generate_tag"]
