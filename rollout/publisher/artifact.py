"""Published image artifacts and random tag generation."""

from collections.abc import Container
from dataclasses import dataclass
from datetime import datetime, timezone
import secrets
import string
from typing import Any

from rollout.errors import PublishError

TAG_ALPHABET = string.ascii_lowercase + string.digits
MIN_TAG_LENGTH = 7


@dataclass(frozen=True)
class Artifact:
    """An image in the registry. A tag is never re-pointed, so ``digest`` is stable."""

    repository: str
    tag: str
    digest: str
    content_digest: str = ""
    created_at: str = ""

    @property
    def image_ref(self) -> str:
        return f"{self.repository}:{self.tag}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "repository": self.repository,
            "tag": self.tag,
            "digest": self.digest,
            "content_digest": self.content_digest,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Artifact":
        return cls(
            repository=data["repository"],
            tag=data["tag"],
            digest=data["digest"],
            content_digest=data.get("content_digest", ""),
            created_at=data.get("created_at", ""),
        )


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def random_tag(length: int = MIN_TAG_LENGTH) -> str:
    if length < MIN_TAG_LENGTH:
        raise PublishError(f"tag length must be at least {MIN_TAG_LENGTH}, got {length}")
    return "".join(secrets.choice(TAG_ALPHABET) for _ in range(length))


def generate_tag(taken: Container[str], length: int = MIN_TAG_LENGTH, max_attempts: int = 20) -> str:
    """Random tag not present in ``taken``; re-rolled on collision."""
    for _ in range(max_attempts):
        tag = random_tag(length)
        if tag not in taken:
            return tag
    raise PublishError(f"no free tag after {max_attempts} attempts")
