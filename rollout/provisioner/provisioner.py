"""Dependency-ordered provisioner: plan, apply and destroy over a resolved-state snapshot."""

from collections.abc import Callable, Collection, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
import heapq
import logging
from typing import Any

from rollout.errors import ConfigurationError, DependentsRemainError, PartialApplyError
from rollout.graph.model import ResourceGraph
from rollout.graph.resources import ResourceKind
from rollout.provisioner.context import ProvisionContext
from rollout.provisioner.plan import Action, Plan, PlanStep, build_plan
from rollout.provisioner.registry import ResourceProvider
from rollout.provisioner.state import ResolvedResource, ResolvedState

LOG = logging.getLogger(__name__)

StepCallback = Callable[[ResolvedState], None]


class Provisioner:
    """Creates, updates and deletes resources through per-kind providers.

    State is never held between calls: every operation takes a ResolvedState
    and returns a new one.
    """

    def __init__(
        self,
        providers: Mapping[ResourceKind, ResourceProvider],
        max_workers: int = 4,
        tags: dict[str, str] | None = None,
    ) -> None:
        if max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")
        self.providers = dict(providers)
        self.max_workers = max_workers
        self.tags = dict(tags or {})
        self.exports: dict[str, Any] = {}

    def _provider(self, kind: ResourceKind) -> ResourceProvider:
        try:
            return self.providers[kind]
        except KeyError:
            raise ConfigurationError(f"no provider registered for kind {kind.value!r}") from None

    def _context(self, resolved_or_step: PlanStep | ResolvedResource, state: ResolvedState) -> ProvisionContext:
        if isinstance(resolved_or_step, PlanStep):
            resource = resolved_or_step.resource
            deps = resource.depends_on
            replacing = resolved_or_step.previous if resolved_or_step.action == Action.REPLACE else None
        else:
            resource = None
            deps = resolved_or_step.depends_on
            replacing = None
        dependencies = {d: state[d] for d in sorted(deps) if d in state}
        return ProvisionContext(
            name=resolved_or_step.name,
            resource=resource,
            dependencies=dependencies,
            tags=self.tags,
            replacing=replacing,
        )

    def plan(self, graph: ResourceGraph, state: ResolvedState) -> Plan:
        """Validate ``graph`` and compute a create/update/no-op/replace step for each resource."""
        plan = build_plan(graph, state)
        LOG.info("plan: %s", ", ".join(f"{k}={v}" for k, v in plan.summary().items()))
        return plan

    def _run_step(self, step: PlanStep, state: ResolvedState) -> tuple[ResolvedResource, dict[str, Any]]:
        ctx = self._context(step, state)
        provider = self._provider(step.resource.kind)
        LOG.info("%s %s (%s)%s", step.action.value, step.name, step.kind, f": {step.reason}" if step.reason else "")
        if step.action in (Action.CREATE, Action.REPLACE):
            result = provider.create(step.resource, ctx)
        else:
            result = provider.update(step.resource, step.previous, ctx)
        return ResolvedResource.from_resource(step.resource, result.identifier, result.outputs), ctx.exports

    def apply(
        self,
        plan: Plan,
        state: ResolvedState,
        on_step: StepCallback | None = None,
        prune_retired: bool = True,
        keep: Collection[str] = (),
    ) -> ResolvedState:
        """Execute ``plan`` level by level, running independent steps in parallel.

        Replacements are created first; the superseded resources stay in the
        state as retired entries and are deleted, dependents first, once every
        step has succeeded. With ``prune_retired`` off they are kept until
        ``prune`` is called. Retired entries whose identifier is in ``keep`` are
        never deleted. On failure, raises PartialApplyError whose ``state``
        holds every step that completed.
        """
        current = state
        completed: list[str] = []

        for level in plan.levels:
            work = [plan.step(name) for name in level if plan.step(name).action != Action.NOOP]
            if not work:
                continue
            snapshot = current
            failures: list[tuple[PlanStep, Exception]] = []
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(work))) as pool:
                futures = {pool.submit(self._run_step, step, snapshot): step for step in work}
                for future in as_completed(futures):
                    step = futures[future]
                    try:
                        resolved, exports = future.result()
                    except Exception as e:
                        LOG.error("%s %s failed: %s", step.action.value, step.name, e)
                        failures.append((step, e))
                        continue
                    if step.action == Action.REPLACE and step.previous is not None:
                        old = step.previous
                        current = current.with_resource(
                            replace(old, name=f"{old.name}~{old.identifier}", retired_from=old.name)
                        )
                    current = current.with_resource(resolved)
                    completed.append(step.name)
                    self.exports.update(exports)
                    if on_step is not None:
                        on_step(current)
            if failures:
                step, cause = min(failures, key=lambda f: f[0].name)
                raise PartialApplyError(step.name, sorted(completed, key=plan.order.index), current, cause) from cause

        if not prune_retired:
            return current
        return self._delete_retired(current, plan.order, completed, on_step, keep)

    def prune(
        self,
        graph: ResourceGraph,
        state: ResolvedState,
        on_step: StepCallback | None = None,
        keep: Collection[str] = (),
    ) -> ResolvedState:
        """Delete every retired entry left in ``state`` by an earlier apply, except those in ``keep``."""
        return self._delete_retired(state, graph.topological_order(), [], on_step, keep)

    def _delete_retired(
        self,
        state: ResolvedState,
        order: list[str],
        completed: list[str],
        on_step: StepCallback | None,
        keep: Collection[str] = (),
    ) -> ResolvedState:
        position = {name: i for i, name in enumerate(order)}
        retired = sorted(
            state.retired(),
            key=lambda r: (position.get(r.retired_from, -1), r.name),
            reverse=True,
        )
        current = state
        for old in retired:
            live = current.get(old.retired_from)
            if live is not None and live.identifier == old.identifier:
                # the replacement adopted the retired resource; only the entry goes
                LOG.info("%s is live again as %s", old.identifier, old.retired_from)
                current = current.without(old.name)
                if on_step is not None:
                    on_step(current)
                continue
            if old.identifier in keep:
                LOG.info("keep superseded %s (%s): still in use", old.retired_from, old.identifier)
                continue
            LOG.info("delete superseded %s (%s)", old.retired_from, old.identifier)
            try:
                self._provider(old.kind).delete(old, self._context(old, current))
            except Exception as e:
                raise PartialApplyError(old.name, completed, current, e) from e
            current = current.without(old.name)
            if on_step is not None:
                on_step(current)
        return current

    def destroy(
        self,
        graph: ResourceGraph,
        state: ResolvedState,
        targets: list[str] | None = None,
        force: bool = False,
    ) -> ResolvedState:
        """Delete resources in strict reverse-topological order.

        ``targets`` defaults to every graph resource present in ``state``. A
        target that other live resources still depend on raises
        DependentsRemainError before anything is deleted, unless ``force`` is
        set, in which case those dependents are destroyed too.
        """
        if targets is None:
            selected = {n for n in graph.names() if n in state}
        else:
            unknown = [t for t in targets if t not in state]
            if unknown:
                raise ConfigurationError(f"not provisioned: {', '.join(sorted(unknown))}")
            selected = set(targets)

        def live_dependents(name: str) -> set[str]:
            found = set(state.dependents(name))
            if name in graph:
                found |= {d for d in graph.dependents(name) if d in state}
            return found

        pending = sorted(selected)
        while pending:
            name = pending.pop(0)
            outside = sorted(live_dependents(name) - selected)
            if not outside:
                continue
            if not force:
                raise DependentsRemainError(name, outside)
            selected.update(outside)
            pending.extend(outside)

        selected.update(r.name for r in state.retired())
        order = _reverse_topological(selected, state)
        current = state
        completed: list[str] = []
        for name in order:
            resolved = current[name]
            LOG.info("delete %s (%s)", name, resolved.kind.value)
            try:
                self._provider(resolved.kind).delete(resolved, self._context(resolved, current))
            except Exception as e:
                raise PartialApplyError(name, completed, current, e) from e
            current = current.without(name)
            completed.append(name)
        return current


def _reverse_topological(names: set[str], state: ResolvedState) -> list[str]:
    """Dependents before their dependencies; ties broken by name."""
    deps = {n: {d for d in state[n].depends_on if d in names} for n in names}
    indegree = {n: len(deps[n]) for n in names}
    children: dict[str, list[str]] = {n: [] for n in names}
    for n, ds in deps.items():
        for d in ds:
            children[d].append(n)
    heap = [n for n, deg in indegree.items() if deg == 0]
    heapq.heapify(heap)
    order: list[str] = []
    while heap:
        n = heapq.heappop(heap)
        order.append(n)
        for child in sorted(children[n]):
            indegree[child] -= 1
            if indegree[child] == 0:
                heapq.heappush(heap, child)
    return list(reversed(order))
