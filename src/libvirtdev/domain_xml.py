#!/usr/bin/env python3
"""
Domain XML composition for libvirt.

A user supplied template provides everything machine specific (OS, clock,
console, guest agent channel, ...). Identity, sizing, NICs and the disk are
always overwritten from the configuration.
"""

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from libvirtdev.errors import ConfigurationError
from libvirtdev.models import DevVMConfig, InterfaceTopology


@dataclass(frozen=True)
class InterfaceSpec:
    """A NIC attached either to a host bridge or to a libvirt network."""

    kind: str  # "bridge" or "network"
    source: str
    model: str = "virtio"


@dataclass(frozen=True)
class DiskSpec:
    source: str
    target_dev: str = "vda"
    bus: str = "virtio"
    driver: str = "qemu"
    format: str = "qcow2"
    cache: str = "none"


@dataclass(frozen=True)
class DomainDescriptor:
    name: str
    vcpu: int
    memory_mib: int
    interfaces: List[InterfaceSpec] = field(default_factory=list)
    disks: List[DiskSpec] = field(default_factory=list)
    domain_type: str = "kvm"


def build_interfaces(
    topology: InterfaceTopology, net_name: str, bridge: str
) -> List[InterfaceSpec]:
    """NIC list for the configured topology."""
    if topology == InterfaceTopology.NETWORK:
        return [InterfaceSpec(kind="network", source=net_name)]
    return [
        InterfaceSpec(kind="bridge", source=bridge),
        InterfaceSpec(kind="network", source=net_name),
    ]


def build_domain_descriptor(config: DevVMConfig) -> DomainDescriptor:
    return DomainDescriptor(
        name=config.name,
        vcpu=config.vcpu,
        memory_mib=config.memory,
        interfaces=build_interfaces(config.net_interfaces, config.net, config.net_bridge),
        disks=[DiskSpec(source=config.disk_path)],
    )


def read_domain_template(path: Path) -> ET.Element:
    """Parse a domain XML template file."""
    try:
        text = Path(path).read_text()
    except OSError as e:
        raise ConfigurationError(f"cannot read domain template {path}: {e}") from e
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise ConfigurationError(f"invalid domain template {path}: {e}") from e
    if root.tag != "domain":
        raise ConfigurationError(f"domain template {path} has root <{root.tag}>, expected <domain>")
    return root


def _replace(parent: ET.Element, tag: str, **attrib) -> ET.Element:
    old = parent.find(tag)
    if old is not None:
        index = list(parent).index(old)
        parent.remove(old)
        elem = ET.Element(tag, attrib)
        parent.insert(index, elem)
        return elem
    return ET.SubElement(parent, tag, attrib)


def _interface_element(spec: InterfaceSpec) -> ET.Element:
    iface = ET.Element("interface", type=spec.kind)
    ET.SubElement(iface, "source", {spec.kind: spec.source})
    ET.SubElement(iface, "model", type=spec.model)
    return iface


def _disk_element(spec: DiskSpec) -> ET.Element:
    disk = ET.Element("disk", type="file", device="disk")
    ET.SubElement(disk, "driver", name=spec.driver, type=spec.format, cache=spec.cache)
    ET.SubElement(disk, "source", file=spec.source)
    ET.SubElement(disk, "target", dev=spec.target_dev, bus=spec.bus)
    return disk


def apply_descriptor(template: ET.Element, descriptor: DomainDescriptor) -> ET.Element:
    """Overwrite the template in place with *descriptor* and return it."""
    template.set("type", descriptor.domain_type)
    _replace(template, "name").text = descriptor.name
    # libvirt assigns a fresh uuid
    uuid = template.find("uuid")
    if uuid is not None:
        template.remove(uuid)
    _replace(template, "vcpu", placement="static").text = str(descriptor.vcpu)
    _replace(template, "memory", unit="MiB").text = str(descriptor.memory_mib)
    current = template.find("currentMemory")
    if current is not None:
        template.remove(current)

    devices = template.find("devices")
    if devices is None:
        devices = ET.SubElement(template, "devices")
    for old in devices.findall("interface") + devices.findall("disk"):
        devices.remove(old)
    # disks first, libvirt keeps device order
    for index, disk in enumerate(descriptor.disks):
        devices.insert(index, _disk_element(disk))
    for iface in descriptor.interfaces:
        devices.append(_interface_element(iface))
    return template


def render_domain_xml(config: DevVMConfig, template: ET.Element) -> str:
    """Compose the final domain XML for *config* from a parsed template."""
    root = apply_descriptor(template, build_domain_descriptor(config))
    ET.indent(root)
    return ET.tostring(root, encoding="unicode")
