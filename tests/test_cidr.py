"""Tests for per-AZ CIDR carving."""

import pytest

from rollout.errors import ConfigurationError
from rollout.providers.cidr import carve_cidrs


def test_carve_consecutive_blocks() -> None:
    """Blocks start at the offset and follow each other."""
    assert carve_cidrs("192.168.0.0/16", 24, 0, 3) == ["192.168.0.0/24", "192.168.1.0/24", "192.168.2.0/24"]
    assert carve_cidrs("192.168.0.0/16", 24, 3, 2) == ["192.168.3.0/24", "192.168.4.0/24"]


def test_carve_mixed_sizes() -> None:
    """Offsets count blocks of the requested size."""
    assert carve_cidrs("10.0.0.0/16", 20, 1, 1) == ["10.0.16.0/20"]


def test_carve_beyond_network() -> None:
    """Asking for more blocks than fit is an error."""
    with pytest.raises(ConfigurationError, match="room for 4"):
        carve_cidrs("10.0.0.0/22", 24, 2, 3)


def test_mask_larger_than_network() -> None:
    """A subnet cannot be bigger than its network."""
    with pytest.raises(ConfigurationError):
        carve_cidrs("10.0.0.0/24", 16, 0, 1)
