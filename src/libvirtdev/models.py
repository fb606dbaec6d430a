#!/usr/bin/env python3
"""
Pydantic models for libvirtdev configuration validation.
"""

import json
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from libvirtdev.errors import ConfigurationError, InvalidAddress
from libvirtdev.netmath import parse_prefix


class InterfaceTopology(str, Enum):
    """How the domain's NICs are attached."""

    BRIDGE_AND_NETWORK = "bridge+network"
    NETWORK = "network"


VALID_NET_MODES = {"open", "bridge", "nat", "route"}


class DevVMConfig(BaseModel):
    """Everything needed to provision one dev VM and its infrastructure."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # domain
    name: str = Field(description="libvirt domain name (VM name)")
    template: Path = Field(description="libvirt domain XML used as a template")
    memory: int = Field(default=2048, ge=128, description="Memory in MiB")
    vcpu: int = Field(default=2, ge=1, le=512, description="Number of vCPUs")
    base_disk: Path = Field(description="Local qcow2 image uploaded as the base volume")
    connect: str = Field(default="qemu:///system", description="libvirt connect URL")

    # network
    net: str = Field(default="devnet", description="libvirt network name")
    net_bridge: str = Field(default="virbr10", description="Bridge interface name")
    net_range: str = Field(default="10.50.0.0/24", description="Private IPv4 CIDR")
    net_dns: str = Field(default="", description="Upstream nameserver for the network")
    net_dns_hostnames: Dict[str, List[str]] = Field(
        default_factory=dict, description="Extra DNS names per domain"
    )
    net_mode: str = Field(default="open", description="Network forward mode")
    net_dhcp: Optional[bool] = Field(
        default=None, description="Serve DHCP; unset means only in open mode"
    )
    net_interfaces: InterfaceTopology = Field(
        default=InterfaceTopology.BRIDGE_AND_NETWORK, description="Domain NIC topology"
    )

    # storage
    pool: str = Field(default="devpool", description="libvirt storage pool name")
    pool_path: Path = Field(
        default=Path("/var/lib/libvirt/devpool"), description="Pool directory on the hypervisor"
    )

    # access
    authorized_keys: Path = Field(
        default=Path("~/.ssh/id_rsa.pub"), description="SSH public keys file"
    )
    hypervisor: str = Field(default="", description="Hypervisor IP address")
    username: str = Field(default="root", description="Guest SSH username")
    routes: List[str] = Field(default_factory=list, description="Extra local routes")
    sudo: str = Field(default="sudo", description="Privilege escalation command")
    wait_secs: int = Field(default=120, ge=0, description="Seconds to wait for the guest agent after boot")
    remote_dir: str = Field(default="", description="Remote rsync target directory")
    rsync_options: List[str] = Field(default_factory=list, description="Extra rsync options")
    domain_ifname: str = Field(default="", description="Preferred guest interface, i.e. eth0")

    verbose: bool = False

    @field_validator("name")
    @classmethod
    def name_must_be_valid(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("domain name cannot be empty")
        if len(v) > 64:
            raise ValueError("domain name must be <= 64 characters")
        return v.strip()

    @field_validator("net_range")
    @classmethod
    def net_range_must_be_ipv4_cidr(cls, v: str) -> str:
        try:
            parse_prefix(v)
        except InvalidAddress as e:
            raise ValueError(str(e)) from e
        return v

    @field_validator("net_mode")
    @classmethod
    def net_mode_must_be_valid(cls, v: str) -> str:
        if v not in VALID_NET_MODES:
            raise ValueError(f"net_mode must be one of: {sorted(VALID_NET_MODES)}")
        return v

    @field_validator("routes")
    @classmethod
    def routes_must_not_be_blank(cls, v: List[str]) -> List[str]:
        for route in v:
            if not route.strip():
                raise ValueError("routes cannot contain empty entries")
        return v

    @field_validator("template", "base_disk", "authorized_keys")
    @classmethod
    def expand_user(cls, v: Path) -> Path:
        return v.expanduser()

    @property
    def disk(self) -> str:
        """Name of the domain's writable volume."""
        return f"{self.name}.img"

    @property
    def base_volume(self) -> str:
        return self.base_disk.name

    @property
    def disk_path(self) -> str:
        """Absolute hypervisor-side path of the domain volume."""
        return str(self.pool_path / self.disk)

    @property
    def dhcp_enabled(self) -> bool:
        if self.net_dhcp is None:
            return self.net_mode == "open"
        return self.net_dhcp

    def with_name(self, name: Optional[str]) -> "DevVMConfig":
        """Return a copy targeting another domain name."""
        if not name:
            return self
        return self.model_validate({**self.model_dump(), "name": name})

    @classmethod
    def load(cls, path: Path, name: Optional[str] = None) -> "DevVMConfig":
        """Load configuration from a JSON or YAML file."""
        path = Path(path).expanduser()
        if not path.exists():
            raise ConfigurationError(f"config file not found: {path}")
        text = path.read_text()
        try:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(text)
            else:
                data = json.loads(text)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigurationError(f"cannot parse {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path}: top level must be a mapping")
        if name:
            data["name"] = name
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"invalid config {path}:\n{e}") from e
