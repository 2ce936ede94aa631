"""Shared in-memory collaborators: clock, cluster runtime, load balancer, image registry and builder."""

from collections import Counter
import hashlib
import itertools
from pathlib import Path
import threading
from typing import Callable

import pytest

from rollout.deploy.runtime import HealthStatus, InstanceHandle
from rollout.publisher.publisher import BuiltImage


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.now += seconds


class FakeCluster:
    """Cluster runtime that records the running count after every launch and stop."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.running: dict[str, InstanceHandle] = {}
        self.launched: list[InstanceHandle] = []
        self.stopped: list[InstanceHandle] = []
        self.counts: list[int] = []
        self.launch_errors: list[Exception] = []
        self.stop_errors: list[Exception] = []

    def _handle(self, version: str) -> InstanceHandle:
        n = next(self._ids)
        return InstanceHandle(instance_id=f"i-{n:04d}", template_version=version, address=f"10.0.0.{n}")

    def seed(self, version: str, count: int) -> list[InstanceHandle]:
        handles = [self._handle(version) for _ in range(count)]
        for handle in handles:
            self.running[handle.instance_id] = handle
        return handles

    def launch_instance(self, template) -> InstanceHandle:
        with self._lock:
            if self.launch_errors:
                raise self.launch_errors.pop(0)
            handle = self._handle(template.version)
            self.running[handle.instance_id] = handle
            self.launched.append(handle)
            self.counts.append(len(self.running))
        return handle

    def stop_instance(self, handle: InstanceHandle) -> None:
        with self._lock:
            if self.stop_errors:
                raise self.stop_errors.pop(0)
            del self.running[handle.instance_id]
            self.stopped.append(handle)
            self.counts.append(len(self.running))

    def list_instances(self, service_id: str) -> list[InstanceHandle]:
        with self._lock:
            return list(self.running.values())

    def launched_versions(self, version: str) -> list[InstanceHandle]:
        return [h for h in self.launched if h.template_version == version]

    def running_versions(self) -> list[str]:
        return sorted(h.template_version for h in self.running.values())


HealthFn = Callable[[InstanceHandle, int], HealthStatus]


class FakeLoadBalancer:
    """Load balancer whose health answers come from ``health(handle, nth_check)``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.health: HealthFn = lambda handle, n: HealthStatus.PASSING
        self.registered: set[str] = set()
        self.deregistered: list[str] = []
        self.checks: Counter = Counter()
        self.register_errors: list[Exception] = []

    def register_target(self, handle: InstanceHandle) -> None:
        with self._lock:
            if self.register_errors:
                raise self.register_errors.pop(0)
            self.registered.add(handle.instance_id)

    def deregister_target(self, handle: InstanceHandle) -> None:
        with self._lock:
            self.registered.discard(handle.instance_id)
            self.deregistered.append(handle.instance_id)

    def get_health(self, handle: InstanceHandle) -> HealthStatus:
        with self._lock:
            n = self.checks[handle.instance_id]
            self.checks[handle.instance_id] += 1
        return self.health(handle, n)


class FakeRegistry:
    """Image registry keyed by tag. ``push_error`` fails the next push after the tag was written."""

    repository = "registry.test/web"

    def __init__(self) -> None:
        self.images: dict[str, str] = {}
        self.pushed: list[str] = []
        self.deleted: list[str] = []
        self.push_error: Exception | None = None
        self.resolve_to: str | None = None

    def list_tags(self) -> set[str]:
        return set(self.images)

    def push(self, image: BuiltImage, tag: str) -> str:
        digest = "sha256:" + hashlib.sha256(image.content_digest.encode()).hexdigest()
        self.images[tag] = self.resolve_to or digest
        self.pushed.append(tag)
        if self.push_error is not None:
            error, self.push_error = self.push_error, None
            raise error
        return digest

    def pull(self, tag: str) -> str:
        return self.images[tag]

    def delete(self, tag: str) -> None:
        self.images.pop(tag, None)
        self.deleted.append(tag)


class FakeBuilder:
    """Builds ``context`` into an image whose content digest is the Dockerfile's hash."""

    def __init__(self) -> None:
        self.builds: list[Path] = []
        self.error: Exception | None = None

    def build(self, context: Path) -> BuiltImage:
        if self.error is not None:
            raise self.error
        self.builds.append(context)
        content = (context / "Dockerfile").read_text()
        digest = hashlib.sha256(content.encode()).hexdigest()
        return BuiltImage(image_id=f"img-{len(self.builds)}", content_digest=digest)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def load_balancer() -> FakeLoadBalancer:
    return FakeLoadBalancer()


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def builder() -> FakeBuilder:
    return FakeBuilder()


@pytest.fixture
def build_context(tmp_path: Path) -> Path:
    context = tmp_path / "app"
    context.mkdir()
    (context / "Dockerfile").write_text("FROM scratch\nCOPY app /app\n")
    return context
