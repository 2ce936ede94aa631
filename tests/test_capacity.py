"""Tests for running-count bounds."""

import pytest

from rollout.deploy.capacity import CapacityBounds, capacity_bounds


@pytest.mark.parametrize(
    "desired, min_pct, max_pct, expected",
    [
        (3, 50, 200, (2, 6)),
        (3, 100, 200, (3, 6)),
        (1, 0, 100, (0, 1)),
        (5, 33, 150, (2, 7)),
        (4, 50, 125, (2, 5)),
    ],
)
def test_capacity_bounds_round_min_up_and_max_down(desired: int, min_pct: int, max_pct: int, expected) -> None:
    """min_running is ceil(N*M/100), max_running is floor(N*X/100)."""
    bounds = capacity_bounds(desired, min_pct, max_pct)
    assert (bounds.min_running, bounds.max_running) == expected


def test_can_launch_and_stop_respect_bounds() -> None:
    """A launch must keep R <= max, a stop must keep R >= min."""
    bounds = CapacityBounds(min_running=2, max_running=4)
    assert bounds.can_launch(3)
    assert not bounds.can_launch(4)
    assert bounds.can_stop(3)
    assert not bounds.can_stop(2)
