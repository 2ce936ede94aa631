"""Local state directory: resolved resources, service spec, deployment runs, published artifacts."""

from collections.abc import Iterator
from contextlib import contextmanager
import os
from pathlib import Path
import tempfile
import threading
from typing import Any

import yaml

from rollout.deploy.models import DeploymentRun, ServiceSpec
from rollout.errors import DeploymentInProgressError
from rollout.provisioner.state import ResolvedState
from rollout.publisher.artifact import Artifact

STATE_DIR = ".rollout-engine"
STATE_DIR_ENV = "ROLLOUT_STATE_DIR"

RESOURCES_FILE = "resources.yaml"
SERVICE_FILE = "service.yaml"
ARTIFACTS_FILE = "artifacts.yaml"
RUNS_DIR = "runs"
CURRENT_RUN = "current.yaml"
LOCK_FILE = "engine.lock"


def default_state_dir() -> Path:
    return Path(os.environ.get(STATE_DIR_ENV) or Path.cwd() / STATE_DIR)


class StateStore:
    """YAML documents under one directory. Every write replaces its file atomically."""

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root) if root is not None else default_state_dir()
        self._lock = threading.Lock()

    def _read(self, relative: str) -> Any:
        path = self.root / relative
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as f:
            return yaml.safe_load(f)

    def _write(self, relative: str, data: Any) -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        return path

    @contextmanager
    def exclusive(self, service_name: str) -> Iterator[None]:
        """Hold the state directory for one mutating operation.

        The lock file is opened in exclusive-create mode, so a second holder in
        this or any other process raises DeploymentInProgressError, as does a
        run still recorded in ``runs/current.yaml``. A crashed process leaves
        both behind; remove them by hand once nothing is running.
        """
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.root / LOCK_FILE
        try:
            f = open(path, mode="x", encoding="utf-8")
        except FileExistsError:
            raise DeploymentInProgressError(service_name, (self.current_run() or {}).get("id")) from None
        try:
            with f:
                f.write(f"{os.getpid()}\n")
            current = self.current_run()
            if current:
                raise DeploymentInProgressError(service_name, current.get("id"))
            yield
        finally:
            path.unlink(missing_ok=True)

    # resources

    def load_resources(self) -> ResolvedState:
        return ResolvedState.from_dict(self._read(RESOURCES_FILE))

    def save_resources(self, state: ResolvedState) -> None:
        self._write(RESOURCES_FILE, state.to_dict())

    # service

    def load_service(self) -> ServiceSpec | None:
        data = self._read(SERVICE_FILE)
        return ServiceSpec.from_dict(data) if data else None

    def save_service(self, spec: ServiceSpec) -> None:
        self._write(SERVICE_FILE, spec.to_dict())

    def clear_service(self) -> None:
        (self.root / SERVICE_FILE).unlink(missing_ok=True)

    # runs

    def save_run(self, run: DeploymentRun) -> None:
        """Write the run snapshot; ``runs/current.yaml`` tracks it until it reaches a terminal state."""
        data = run.to_dict()
        self._write(f"{RUNS_DIR}/{run.id}.yaml", data)
        if run.done:
            current = self._read(f"{RUNS_DIR}/{CURRENT_RUN}")
            if current and current.get("id") == run.id:
                (self.root / RUNS_DIR / CURRENT_RUN).unlink(missing_ok=True)
        else:
            self._write(f"{RUNS_DIR}/{CURRENT_RUN}", data)

    def current_run(self) -> dict[str, Any] | None:
        return self._read(f"{RUNS_DIR}/{CURRENT_RUN}")

    def load_run(self, run_id: str) -> dict[str, Any] | None:
        return self._read(f"{RUNS_DIR}/{run_id}.yaml")

    def runs(self) -> list[dict[str, Any]]:
        """Every recorded run, oldest first."""
        directory = self.root / RUNS_DIR
        if not directory.exists():
            return []
        paths = sorted(directory.glob("run-*.yaml"), key=lambda p: p.stat().st_mtime)
        return [r for r in (self._read(f"{RUNS_DIR}/{p.name}") for p in paths) if r]

    # artifacts

    def load_artifacts(self) -> dict[str, Artifact]:
        data = self._read(ARTIFACTS_FILE) or {}
        return {a["tag"]: Artifact.from_dict(a) for a in data.get("artifacts", [])}

    def save_artifacts(self, index: dict[str, Artifact]) -> None:
        artifacts = sorted(index.values(), key=lambda a: a.created_at)
        self._write(ARTIFACTS_FILE, {"artifacts": [a.to_dict() for a in artifacts]})
