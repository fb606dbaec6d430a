"""IPv4 prefix arithmetic used to lay out the private network."""

import ipaddress
import math
from typing import Tuple, Union

from libvirtdev.errors import InvalidAddress

AddressLike = Union[str, ipaddress.IPv4Address]


def _address(value: AddressLike) -> ipaddress.IPv4Address:
    try:
        addr = ipaddress.ip_address(value)
    except ValueError as e:
        raise InvalidAddress(f"invalid address {value!r}: {e}") from e
    if not isinstance(addr, ipaddress.IPv4Address):
        raise InvalidAddress(f"not an IPv4 address: {value!r}")
    return addr


def parse_prefix(cidr: str) -> ipaddress.IPv4Network:
    """Parse ``a.b.c.d/n``. Host bits are masked off."""
    try:
        prefix = ipaddress.ip_network(cidr, strict=False)
    except ValueError as e:
        raise InvalidAddress(f"invalid prefix {cidr!r}: {e}") from e
    if not isinstance(prefix, ipaddress.IPv4Network):
        raise InvalidAddress(f"not an IPv4 prefix: {cidr!r}")
    return prefix


def broadcast_addr(prefix: ipaddress.IPv4Network) -> ipaddress.IPv4Address:
    """Last address of *prefix*: address + 2**(32 - bits) - 1."""
    n = int(prefix.network_address) + (1 << (32 - prefix.prefixlen)) - 1
    return ipaddress.IPv4Address(n)


def mask_addr(prefix: ipaddress.IPv4Network) -> ipaddress.IPv4Address:
    """Netmask of *prefix* with the top ``bits`` bits set."""
    bits = prefix.prefixlen
    return ipaddress.IPv4Address(((1 << bits) - 1) << (32 - bits))


def mask_bits(mask: AddressLike) -> int:
    """Prefix length encoded by a dotted netmask such as ``255.255.255.0``."""
    value = int(_address(mask))
    hostmask = ~value & 0xFFFFFFFF
    if hostmask & (hostmask + 1):
        raise InvalidAddress(f"non-contiguous netmask {mask}")
    return 32 - int(math.log2(hostmask + 1))


def prefix_mask_to_cidr(address: str, netmask: str) -> ipaddress.IPv4Network:
    """Rebuild a prefix from separate address and netmask strings."""
    addr = _address(address)
    bits = mask_bits(netmask)
    return ipaddress.IPv4Network((int(addr), bits), strict=False)


def gateway_addr(prefix: ipaddress.IPv4Network) -> ipaddress.IPv4Address:
    return prefix.network_address + 1


def dhcp_range(prefix: ipaddress.IPv4Network) -> Tuple[ipaddress.IPv4Address, ipaddress.IPv4Address]:
    """DHCP pool ``[prefix+2, broadcast-1]`` for a network gated at ``prefix+1``."""
    if prefix.prefixlen > 30:
        raise InvalidAddress(f"prefix {prefix} is too small for a DHCP range")
    start = prefix.network_address + 2
    end = broadcast_addr(prefix) - 1
    return start, end
