"""Planning: diff a resource graph against a resolved state."""

from dataclasses import dataclass, field
from enum import Enum

from rollout.graph.model import ResourceGraph
from rollout.graph.resources import REPLACE_WITH_DEPENDENCY, Resource
from rollout.provisioner.state import ResolvedResource, ResolvedState


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    NOOP = "no-op"
    REPLACE = "replace"


@dataclass
class PlanStep:
    name: str
    action: Action
    resource: Resource
    previous: ResolvedResource | None = None
    reason: str = ""

    @property
    def kind(self) -> str:
        return self.resource.kind.value


@dataclass
class Plan:
    """Steps in deterministic topological order plus the parallel levels they run in."""

    steps: list[PlanStep]
    levels: list[list[str]]
    orphans: list[str] = field(default_factory=list)

    def step(self, name: str) -> PlanStep:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)

    @property
    def order(self) -> list[str]:
        return [s.name for s in self.steps]

    @property
    def changes(self) -> list[PlanStep]:
        return [s for s in self.steps if s.action != Action.NOOP]

    def is_empty(self) -> bool:
        return not self.changes

    def summary(self) -> dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for step in self.steps:
            counts[step.action.value] += 1
        return counts


def _diff(resource: Resource, previous: ResolvedResource | None) -> tuple[Action, str]:
    if previous is None:
        return Action.CREATE, "not provisioned"
    if previous.kind != resource.kind:
        return Action.REPLACE, f"kind changed from {previous.kind.value}"
    changed = resource.config.changed_fields(previous.config)
    immutable = sorted(changed & resource.config.IMMUTABLE)
    if immutable:
        return Action.REPLACE, "immutable fields changed: " + ", ".join(immutable)
    if changed:
        return Action.UPDATE, "fields changed: " + ", ".join(sorted(changed))
    if previous.depends_on != resource.depends_on:
        return Action.UPDATE, "dependencies changed"
    return Action.NOOP, ""


def build_plan(graph: ResourceGraph, state: ResolvedState) -> Plan:
    """Compute the action for every resource in ``graph`` given what ``state`` holds.

    A replaced (or re-created) dependency forces its existing dependents to be
    updated against the new identifier, or replaced when the dependent is bound
    to that kind of dependency.
    """
    order = graph.topological_order()
    levels = graph.topological_levels()
    steps: dict[str, PlanStep] = {}

    for name in order:
        resource = graph.get(name)
        previous = state.get(name)
        action, reason = _diff(resource, previous)
        if previous is not None and action in (Action.NOOP, Action.UPDATE):
            for dep in sorted(resource.depends_on):
                dep_step = steps[dep]
                if dep_step.action not in (Action.REPLACE, Action.CREATE):
                    continue
                if dep_step.resource.kind in REPLACE_WITH_DEPENDENCY.get(resource.kind, frozenset()):
                    action, reason = Action.REPLACE, f"dependency {dep} is {dep_step.action.value}d"
                    break
                action, reason = Action.UPDATE, f"dependency {dep} is {dep_step.action.value}d"
        steps[name] = PlanStep(name=name, action=action, resource=resource, previous=previous, reason=reason)

    orphans = [n for n in state.names() if n not in graph and not state[n].retired]
    return Plan(steps=[steps[n] for n in order], levels=levels, orphans=orphans)
