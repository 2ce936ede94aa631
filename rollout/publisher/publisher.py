"""Image publisher: build, tag with a fresh random tag, push atomically."""

from dataclasses import dataclass
import logging
from pathlib import Path
import threading
from typing import Protocol

from rollout.errors import PublishError
from rollout.publisher.artifact import MIN_TAG_LENGTH, Artifact, generate_tag, utcnow

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuiltImage:
    """A locally built image; ``content_digest`` identifies its content."""

    image_id: str
    content_digest: str


class ImageBuilder(Protocol):
    def build(self, context: Path) -> BuiltImage:
        ...


class ImageRegistry(Protocol):
    """Where images are pushed. ``pull`` returns the digest a tag points at."""

    repository: str

    def list_tags(self) -> set[str]:
        ...

    def push(self, image: BuiltImage, tag: str) -> str:
        ...

    def pull(self, tag: str) -> str:
        ...

    def delete(self, tag: str) -> None:
        ...


class ImagePublisher:
    """Publishes images under unique random tags.

    ``index`` maps tag to Artifact for every image this publisher produced. It
    is only consulted for collision checks and for explicit tag reuse.
    """

    def __init__(
        self,
        builder: ImageBuilder,
        registry: ImageRegistry,
        index: dict[str, Artifact] | None = None,
        tag_length: int = MIN_TAG_LENGTH,
    ) -> None:
        self.builder = builder
        self.registry = registry
        self.index: dict[str, Artifact] = dict(index or {})
        self.tag_length = tag_length
        self._lock = threading.Lock()

    def publish(self, context: str | Path, reuse_tag: bool = False) -> Artifact:
        """Build ``context`` and push it under a new tag.

        With ``reuse_tag`` an already published artifact with the same content
        is returned instead, provided its tag still resolves to its digest.
        Raises PublishError if anything fails; the tag is then deleted again.
        """
        try:
            image = self.builder.build(Path(context))
        except PublishError:
            raise
        except Exception as e:
            raise PublishError(f"build of {context} failed: {e}") from e

        with self._lock:
            if reuse_tag:
                existing = self._reusable(image)
                if existing is not None:
                    LOG.info("reusing %s for content %s", existing.image_ref, image.content_digest)
                    return existing
            try:
                taken = self.registry.list_tags() | set(self.index)
            except Exception as e:
                raise PublishError(f"cannot list tags of {self.registry.repository}: {e}") from e
            tag = generate_tag(taken, length=self.tag_length)
            digest = self._push_verified(image, tag)
            artifact = Artifact(
                repository=self.registry.repository,
                tag=tag,
                digest=digest,
                content_digest=image.content_digest,
                created_at=utcnow(),
            )
            self.index[tag] = artifact
        LOG.info("published %s (%s)", artifact.image_ref, digest)
        return artifact

    def _push_verified(self, image: BuiltImage, tag: str) -> str:
        try:
            digest = self.registry.push(image, tag)
            resolved = self.registry.pull(tag)
            if resolved != digest:
                raise PublishError(f"tag {tag} resolves to {resolved}, pushed {digest}")
            return digest
        except Exception as e:
            self._discard(tag)
            if isinstance(e, PublishError):
                raise
            raise PublishError(f"push of {self.registry.repository}:{tag} failed: {e}") from e

    def _discard(self, tag: str) -> None:
        try:
            self.registry.delete(tag)
        except Exception as e:
            LOG.warning("could not remove partial tag %s: %s", tag, e)

    def _reusable(self, image: BuiltImage) -> Artifact | None:
        for artifact in sorted(self.index.values(), key=lambda a: a.created_at, reverse=True):
            if artifact.content_digest != image.content_digest:
                continue
            try:
                if self.registry.pull(artifact.tag) == artifact.digest:
                    return artifact
            except Exception as e:
                LOG.warning("indexed tag %s no longer resolves: %s", artifact.tag, e)
        return None

    def resolve(self, tag: str) -> str:
        """Digest that ``tag`` points at in the registry."""
        try:
            return self.registry.pull(tag)
        except Exception as e:
            raise PublishError(f"tag {tag} not found in {self.registry.repository}: {e}") from e
