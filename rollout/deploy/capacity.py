"""Running-count bounds derived from desired count and healthy percentages."""

from dataclasses import dataclass


@dataclass(frozen=True)
class CapacityBounds:
    min_running: int
    max_running: int

    def can_launch(self, running: int) -> bool:
        return running + 1 <= self.max_running

    def can_stop(self, running: int) -> bool:
        return running - 1 >= self.min_running


def capacity_bounds(desired: int, min_healthy_percent: int, max_healthy_percent: int) -> CapacityBounds:
    """ceil(N*M/100) and floor(N*X/100), in integer arithmetic."""
    return CapacityBounds(
        min_running=-(-desired * min_healthy_percent // 100),
        max_running=desired * max_healthy_percent // 100,
    )
