"""
Keep a network's DNS host records in line with the domains on the hypervisor.
"""

import xml.etree.ElementTree as ET
from typing import Dict, List, Optional, Tuple

from libvirtdev.errors import DNSReconcileError, HypervisorError
from libvirtdev.interfaces.hypervisor import (
    Handle,
    HypervisorBackend,
    NetworkSection,
    NetworkUpdateCommand,
)
from libvirtdev.logging import get_logger

log = get_logger(__name__)


def resolve_domain_address(
    backend: HypervisorBackend, dom: Handle, ifname: str = ""
) -> Optional[str]:
    """
    First guest IPv4 address as reported by the guest agent.

    With *ifname* only that interface is considered; otherwise unnamed
    interfaces and ``lo`` are skipped.
    """
    for iface in backend.interface_addresses(dom):
        if ifname:
            if iface.name != ifname:
                continue
            log.debug("preferred_interface", interface=iface.name)
        elif not iface.name or iface.name == "lo":
            continue
        if iface.ipv4:
            return iface.ipv4[0]
    return None


def dns_host_xml(ip: str, hostnames: List[str]) -> str:
    host = ET.Element("host", ip=ip)
    for name in hostnames:
        ET.SubElement(host, "hostname").text = name
    return ET.tostring(host, encoding="unicode")


def _resolve_all(
    backend: HypervisorBackend, ifname: str
) -> List[Tuple[str, str]]:
    """``(name, address)`` for every domain whose guest reports an IPv4 address."""
    resolved = []
    for dom in backend.list_domains():
        try:
            name = backend.domain_name(dom)
            try:
                addr = resolve_domain_address(backend, dom, ifname)
            except HypervisorError as e:
                log.warning(f"no dns entries for domain {name!r}", error=e.message, code=e.code)
                continue
            if addr is None:
                log.warning(f"no dns entries for domain {name!r}", reason="no ipv4 address")
                continue
            resolved.append((name, addr))
        finally:
            backend.free(dom)
    return resolved


def sync_domain_names_to_network_dns(
    backend: HypervisorBackend,
    net: Handle,
    ifname: str = "",
    aliases: Optional[Dict[str, List[str]]] = None,
) -> Dict[str, str]:
    """
    Replace every DNS host entry of *net* with one entry per domain.

    All addresses are resolved before the first record is touched; a domain
    whose address cannot be read is skipped. Returns the
    ``{domain name: address}`` mapping that was written.
    """
    aliases = aliases or {}
    root = ET.fromstring(backend.network_xml(net))
    dns = root.find("dns")
    if dns is None:
        raise DNSReconcileError(f"network {root.findtext('name')!r} has no dns section")

    resolved = _resolve_all(backend, ifname)

    for host in dns.findall("host"):
        entry = ET.tostring(host, encoding="unicode").strip()
        log.debug("dns_host_delete", entry=entry)
        backend.update_network(net, NetworkUpdateCommand.DELETE, NetworkSection.DNS_HOST, entry)

    written: Dict[str, str] = {}
    for name, addr in resolved:
        hostnames = [name] + list(aliases.get(name, []))
        log.info(f"dns entry {name!r} maps to {addr!r}", aliases=hostnames[1:])
        backend.update_network(
            net,
            NetworkUpdateCommand.ADD_LAST,
            NetworkSection.DNS_HOST,
            dns_host_xml(addr, hostnames),
        )
        written[name] = addr
    return written
