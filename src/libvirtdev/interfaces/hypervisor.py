"""Interfaces for libvirtdev hypervisor backends.

Handles passed in and out of a backend are opaque references owned by the
caller. Every method reports failures as
:class:`libvirtdev.errors.HypervisorError` carrying the hypervisor's error
code, so callers can classify them with
:func:`libvirtdev.errors.classify_error`.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List

Handle = Any


class NetworkUpdateCommand(Enum):
    DELETE = "delete"
    ADD_LAST = "add_last"


class NetworkSection(Enum):
    DNS_HOST = "dns_host"


@dataclass
class VolumeInfo:
    """Sizes reported for a storage volume, in bytes."""

    capacity: int
    allocation: int


@dataclass
class GuestInterface:
    """A guest NIC as reported by the in-guest agent."""

    name: str
    ipv4: List[str] = field(default_factory=list)
    ipv6: List[str] = field(default_factory=list)


class UploadStream(ABC):
    """Hypervisor-side data stream feeding a volume upload."""

    @abstractmethod
    def send_all(self, producer: Callable[[int], bytes]) -> None:
        """Pull buffers from *producer* until it returns ``b""``."""
        pass

    @abstractmethod
    def abort(self) -> None:
        """Terminate the stream, discarding the transfer."""
        pass

    @abstractmethod
    def finish(self) -> None:
        """Terminate the stream, committing the transfer."""
        pass


class HypervisorBackend(ABC):
    """Abstract interface for hypervisor operations."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name (e.g., 'libvirt')."""
        pass

    @abstractmethod
    def connect(self) -> None:
        """Establish connection to hypervisor."""
        pass

    @abstractmethod
    def disconnect(self) -> None:
        """Close connection."""
        pass

    # lookups
    @abstractmethod
    def lookup_network(self, name: str) -> Handle:
        pass

    @abstractmethod
    def lookup_pool(self, name: str) -> Handle:
        pass

    @abstractmethod
    def lookup_volume(self, pool: Handle, name: str) -> Handle:
        pass

    @abstractmethod
    def lookup_domain(self, name: str) -> Handle:
        pass

    # definitions
    @abstractmethod
    def define_network(self, xml: str) -> Handle:
        pass

    @abstractmethod
    def define_pool(self, xml: str) -> Handle:
        pass

    @abstractmethod
    def define_domain(self, xml: str) -> Handle:
        pass

    # activation
    @abstractmethod
    def start_network(self, net: Handle) -> None:
        pass

    @abstractmethod
    def start_pool(self, pool: Handle) -> None:
        """Start a pool, building its target directory first."""
        pass

    @abstractmethod
    def start_domain(self, dom: Handle) -> None:
        """Boot a domain, discarding any managed save image."""
        pass

    @abstractmethod
    def set_autostart(self, handle: Handle) -> None:
        pass

    # teardown
    @abstractmethod
    def destroy(self, handle: Handle) -> None:
        """Force-stop a network, pool or domain."""
        pass

    @abstractmethod
    def undefine(self, handle: Handle) -> None:
        pass

    @abstractmethod
    def free(self, handle: Handle) -> None:
        """Release the local reference without touching the resource."""
        pass

    # volumes
    @abstractmethod
    def create_volume(self, pool: Handle, xml: str) -> Handle:
        pass

    @abstractmethod
    def create_volume_from(self, pool: Handle, xml: str, base: Handle) -> Handle:
        pass

    @abstractmethod
    def volume_info(self, vol: Handle) -> VolumeInfo:
        pass

    @abstractmethod
    def volume_name(self, vol: Handle) -> str:
        pass

    @abstractmethod
    def delete_volume(self, vol: Handle) -> None:
        pass

    @abstractmethod
    def list_volumes(self, pool: Handle) -> List[Handle]:
        pass

    @abstractmethod
    def open_upload(self, vol: Handle, length: int) -> UploadStream:
        pass

    # domains
    @abstractmethod
    def domain_name(self, dom: Handle) -> str:
        pass

    @abstractmethod
    def is_running(self, dom: Handle) -> bool:
        pass

    @abstractmethod
    def list_domains(self) -> List[Handle]:
        """All persistent or running domains."""
        pass

    @abstractmethod
    def agent_command(self, dom: Handle, command: str, timeout: int) -> str:
        """Send a raw JSON guest agent command and return the raw reply."""
        pass

    @abstractmethod
    def interface_addresses(self, dom: Handle) -> List[GuestInterface]:
        """Guest interfaces as reported by the in-guest agent."""
        pass

    # networks
    @abstractmethod
    def network_xml(self, net: Handle) -> str:
        pass

    @abstractmethod
    def update_network(
        self,
        net: Handle,
        command: NetworkUpdateCommand,
        section: NetworkSection,
        xml: str,
    ) -> None:
        pass
