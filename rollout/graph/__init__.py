"""Resource graph model: kinds, kind-specific configs and the dependency graph."""

from rollout.graph.model import ResourceGraph
from rollout.graph.resources import Resource, ResourceKind, make_resource

__all__ = ["Resource", "ResourceGraph", "ResourceKind", "make_resource"]
