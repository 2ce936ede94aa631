"""Dependency-ordered provisioning of a resource graph."""

from rollout.provisioner.plan import Action, Plan, PlanStep
from rollout.provisioner.provisioner import Provisioner
from rollout.provisioner.state import ResolvedResource, ResolvedState

__all__ = ["Action", "Plan", "PlanStep", "Provisioner", "ResolvedResource", "ResolvedState"]
