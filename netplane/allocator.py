"""Address-space allocation for VPCs and subnets.

The allocator is pure with respect to persistence: callers pass in the
current siblings/leases and get a decision back. Leasing scans the subnet
in ascending order and returns the lowest free host, so allocation order
is deterministic and reproducible.

Reserved addresses in every subnet:
- network address
- first usable address (implicit gateway)
- broadcast address
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Iterable
from ipaddress import IPv4Address, IPv4Network

from netplane.config import Settings, settings as default_settings
from netplane.errors import (
    ExhaustionError,
    SubnetOutOfRangeError,
    SubnetOverlapError,
    ValidationError,
)

logger = logging.getLogger(__name__)

PRIVATE_RANGES = (
    IPv4Network("10.0.0.0/8"),
    IPv4Network("172.16.0.0/12"),
    IPv4Network("192.168.0.0/16"),
)

# network + gateway + broadcast
RESERVED_PER_SUBNET = 3


def parse_cidr(cidr: str) -> IPv4Network:
    """Parse an IPv4 CIDR block whose host bits are zero.

    Raises:
        ValidationError: If the value is not a network-aligned IPv4 CIDR
    """
    if not isinstance(cidr, str) or "/" not in cidr:
        raise ValidationError(f"Invalid CIDR block: {cidr!r}", code="INVALID_CIDR")
    try:
        network = ipaddress.ip_network(cidr.strip(), strict=True)
    except ValueError as e:
        raise ValidationError(f"Invalid CIDR block: {cidr!r}", code="INVALID_CIDR") from e
    if not isinstance(network, IPv4Network):
        raise ValidationError(f"Only IPv4 CIDR blocks are supported: {cidr}", code="INVALID_CIDR")
    return network


def _as_network(value: str | IPv4Network) -> IPv4Network:
    return value if isinstance(value, IPv4Network) else parse_cidr(value)


def validate_vpc_cidr(cidr: str, settings: Settings | None = None) -> IPv4Network:
    """Validate a VPC block: RFC1918 and prefix within the configured bounds."""
    settings = settings or default_settings
    network = parse_cidr(cidr)

    if not any(network.subnet_of(private) for private in PRIVATE_RANGES):
        raise ValidationError(
            "CIDR block must be within private IP ranges (RFC 1918)", code="INVALID_CIDR"
        )
    if not settings.vpc_min_prefix <= network.prefixlen <= settings.vpc_max_prefix:
        raise ValidationError(
            f"CIDR block prefix must be between /{settings.vpc_min_prefix} "
            f"and /{settings.vpc_max_prefix}",
            code="INVALID_CIDR",
        )
    return network


def is_within(parent: IPv4Network, candidate: IPv4Network) -> bool:
    """True if ``candidate`` lies inside ``parent`` (address & mask == network)."""
    if candidate.prefixlen < parent.prefixlen:
        return False
    masked = int(candidate.network_address) & int(parent.netmask)
    return masked == int(parent.network_address)


def overlaps(a: IPv4Network, b: IPv4Network) -> bool:
    """True if the [network, broadcast] intervals of two blocks intersect."""
    return (
        int(a.network_address) <= int(b.broadcast_address)
        and int(b.network_address) <= int(a.broadcast_address)
    )


def allocate_subnet(
    vpc_cidr: str | IPv4Network,
    requested_cidr: str | IPv4Network,
    sibling_cidrs: Iterable[str | IPv4Network] = (),
    settings: Settings | None = None,
) -> IPv4Network:
    """Validate a subnet request against its VPC and sibling subnets.

    Returns:
        The requested block as an IPv4Network

    Raises:
        ValidationError: Malformed CIDR or prefix too long for the reserved set
        SubnetOutOfRangeError: Not contained in the VPC block
        SubnetOverlapError: Intersects an existing sibling
    """
    settings = settings or default_settings
    parent = _as_network(vpc_cidr)
    candidate = _as_network(requested_cidr)

    if not is_within(parent, candidate):
        raise SubnetOutOfRangeError(f"Subnet {candidate} is outside VPC range {parent}")
    if candidate.prefixlen > settings.subnet_max_prefix:
        raise ValidationError(
            f"Subnet prefix must be /{settings.subnet_max_prefix} or shorter",
            code="INVALID_CIDR",
        )

    for sibling in sibling_cidrs:
        existing = _as_network(sibling)
        if overlaps(existing, candidate):
            raise SubnetOverlapError(f"Subnet {candidate} overlaps existing subnet {existing}")

    return candidate


def gateway_address(subnet_cidr: str | IPv4Network) -> IPv4Address:
    """The implicit gateway: first usable address of the subnet."""
    network = _as_network(subnet_cidr)
    return network.network_address + 1


def reserved_addresses(subnet_cidr: str | IPv4Network) -> set[IPv4Address]:
    network = _as_network(subnet_cidr)
    return {network.network_address, gateway_address(network), network.broadcast_address}


def usable_address_count(subnet_cidr: str | IPv4Network) -> int:
    network = _as_network(subnet_cidr)
    return max(network.num_addresses - RESERVED_PER_SUBNET, 0)


def _parse_address(ip: str | IPv4Address) -> IPv4Address:
    if isinstance(ip, IPv4Address):
        return ip
    try:
        return IPv4Address(ip)
    except ValueError as e:
        raise ValidationError(f"Invalid IP address: {ip!r}") from e


def lease_address(
    subnet_cidr: str | IPv4Network,
    existing_leases: Iterable[str | IPv4Address] = (),
) -> IPv4Address:
    """Return the lowest free host address in the subnet.

    Raises:
        ExhaustionError: If every usable address is leased
    """
    network = _as_network(subnet_cidr)
    taken = {_parse_address(ip) for ip in existing_leases}
    taken |= reserved_addresses(network)

    for candidate in network.hosts():
        if candidate not in taken:
            return candidate

    raise ExhaustionError(f"No free address left in subnet {network}")


def release_address(subnet_cidr: str | IPv4Network, ip: str | IPv4Address) -> IPv4Address:
    """Validate that ``ip`` is a leasable address of the subnet.

    Returns the normalized address; the caller drops its lease record.
    """
    network = _as_network(subnet_cidr)
    address = _parse_address(ip)
    if address not in network:
        raise ValidationError(f"Address {address} is not in subnet {network}")
    if address in reserved_addresses(network):
        raise ValidationError(f"Address {address} is reserved in subnet {network}")
    return address


def allocate_vlan_tag(used_tags: Iterable[int], settings: Settings | None = None) -> int:
    """Return the lowest free subnet VLAN tag.

    Raises:
        ExhaustionError: If the configured tag range is fully used
    """
    settings = settings or default_settings
    used = set(used_tags)
    for tag in range(settings.subnet_vlan_base, settings.subnet_vlan_max + 1):
        if tag not in used:
            return tag
    raise ExhaustionError("No free VLAN tag left for subnet isolation", code="VLAN_EXHAUSTED")


class AddressPool:
    """Tracks host-IP usage within one subnet.

    Leases map address -> port id. The pool is rebuilt from persisted
    leases for each action, so it is only ever mutated under the owning
    VPC lock.
    """

    def __init__(self, subnet_cidr: str | IPv4Network, leases: dict[str, str] | None = None):
        self.network = _as_network(subnet_cidr)
        self._leases: dict[IPv4Address, str] = {}
        for ip, port_id in (leases or {}).items():
            self._leases[release_address(self.network, ip)] = port_id

    @property
    def leases(self) -> dict[str, str]:
        return {str(ip): port_id for ip, port_id in sorted(self._leases.items())}

    @property
    def capacity(self) -> int:
        return usable_address_count(self.network)

    @property
    def free_count(self) -> int:
        return self.capacity - len(self._leases)

    def lease(self, port_id: str) -> IPv4Address:
        """Lease the lowest free address to ``port_id``."""
        for ip, owner in self._leases.items():
            if owner == port_id:
                return ip
        address = lease_address(self.network, self._leases.keys())
        self._leases[address] = port_id
        logger.debug(f"Leased {address} in {self.network} to {port_id}")
        return address

    def release(self, ip: str | IPv4Address) -> str | None:
        """Release an address. Returns the port id that held it, if any."""
        address = release_address(self.network, ip)
        return self._leases.pop(address, None)

    def owner_of(self, ip: str | IPv4Address) -> str | None:
        return self._leases.get(_parse_address(ip))
