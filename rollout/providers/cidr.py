"""CIDR carving for per-AZ subnets."""

import ipaddress

from rollout.errors import ConfigurationError


def carve_cidrs(network_cidr: str, mask: int, offset: int, count: int) -> list[str]:
    """Return ``count`` consecutive /``mask`` blocks of ``network_cidr`` starting at block ``offset``."""
    network = ipaddress.ip_network(network_cidr)
    if mask < network.prefixlen:
        raise ConfigurationError(f"subnet mask /{mask} is larger than network {network_cidr}")
    available = 2 ** (mask - network.prefixlen)
    if offset + count > available:
        raise ConfigurationError(
            f"{network_cidr} has room for {available} /{mask} subnets, need blocks {offset}..{offset + count - 1}"
        )
    first = int(network.network_address) + offset * 2 ** (network.max_prefixlen - mask)
    size = 2 ** (network.max_prefixlen - mask)
    return [str(ipaddress.ip_network((first + i * size, mask))) for i in range(count)]
