"""Local routes towards the private network behind the hypervisor."""

import ipaddress
import xml.etree.ElementTree as ET
from ipaddress import IPv4Network
from typing import List
from urllib.parse import urlsplit

from libvirtdev.errors import InvalidAddress, RouteError
from libvirtdev.interfaces.hypervisor import Handle, HypervisorBackend
from libvirtdev.interfaces.process import ProcessRunner
from libvirtdev.logging import get_logger
from libvirtdev.models import DevVMConfig
from libvirtdev.netmath import prefix_mask_to_cidr

log = get_logger(__name__)

ROUTE_ACTIONS = ("add", "del")


def route_command(sudo: str, action: str, route: str) -> str:
    return " ".join(part for part in (sudo, "ip", "route", action, route) if part)


def modify_routes(runner: ProcessRunner, sudo: str, action: str, routes: List[str]) -> None:
    """
    Apply ``ip route <action>`` for each route.

    Every route is attempted; failures are raised together as one
    :class:`RouteError` and routes that succeeded stay applied.
    """
    if action not in ROUTE_ACTIONS:
        raise ValueError(f"route action must be one of {ROUTE_ACTIONS}, got {action!r}")
    failures = []
    for route in routes:
        command = route_command(sudo, action, route)
        log.info(f"  {command}")
        result = runner.run_shell(command)
        if not result.success:
            log.warning("route_failed", action=action, route=route, detail=result.describe())
            failures.append((f"{action} {route}", result.describe()))
    if failures:
        raise RouteError(failures)


def hypervisor_host(config: DevVMConfig) -> str:
    """Host part of the connect URL when it is an IP, else the configured address."""
    host = urlsplit(config.connect).hostname or ""
    try:
        return str(ipaddress.ip_address(host))
    except ValueError:
        return config.hypervisor


def network_prefix(backend: HypervisorBackend, net: Handle) -> IPv4Network:
    """CIDR of the first ``<ip>`` block of a live network."""
    root = ET.fromstring(backend.network_xml(net))
    ip = root.find("ip")
    if ip is None or not ip.get("address") or not ip.get("netmask"):
        raise InvalidAddress(f"network {root.findtext('name')!r} has no ipv4 address")
    return prefix_mask_to_cidr(ip.get("address"), ip.get("netmask"))


def get_routes(config: DevVMConfig, backend: HypervisorBackend, net: Handle) -> List[str]:
    """Configured routes plus ``<network prefix> via <hypervisor host>``."""
    routes = list(config.routes)
    if net is None:
        log.warning("net prefix unavailable", reason=f"network {config.net!r} is not present")
        return routes
    try:
        prefix = network_prefix(backend, net)
    except InvalidAddress as e:
        log.warning("net prefix error", error=str(e))
        return routes
    host = hypervisor_host(config)
    if not host:
        log.warning("hypervisor host unknown", connect=config.connect)
        return routes
    routes.append(f"{prefix} via {host}")
    return routes
