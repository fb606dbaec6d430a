"""Per-run ownership of the five managed hypervisor resources."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional

from libvirtdev.errors import MissingDependencyError
from libvirtdev.interfaces.hypervisor import Handle, HypervisorBackend


class ResourceKind(Enum):
    NETWORK = "network"
    POOL = "storage pool"
    BASE_VOLUME = "base volume"
    DOMAIN_VOLUME = "domain volume"
    DOMAIN = "domain"


class ResourceState(Enum):
    UNKNOWN = "unknown"
    ABSENT = "absent"
    PRESENT = "present"


@dataclass
class ResourceHandle:
    """Either absent or present with a live hypervisor reference."""

    kind: ResourceKind
    name: str
    state: ResourceState = ResourceState.UNKNOWN
    ref: Optional[Handle] = None

    @property
    def present(self) -> bool:
        return self.state == ResourceState.PRESENT

    def set(self, ref: Handle) -> None:
        if ref is None:
            raise ValueError(f"{self.kind.value} {self.name!r}: cannot mark present without a reference")
        self.ref = ref
        self.state = ResourceState.PRESENT

    def mark_absent(self) -> None:
        self.ref = None
        self.state = ResourceState.ABSENT

    def require(self) -> Handle:
        """Return the live reference or fail if the resource is not present."""
        if not self.present:
            raise MissingDependencyError(f"{self.kind.value} {self.name!r} is not present")
        return self.ref

    def __str__(self) -> str:
        return f"{self.kind.value} {self.name!r}"


@dataclass
class ResourceHandles:
    network: ResourceHandle
    pool: ResourceHandle
    base_volume: ResourceHandle
    domain_volume: ResourceHandle
    domain: ResourceHandle
    _released: bool = field(default=False, repr=False)

    @classmethod
    def for_names(
        cls, network: str, pool: str, base_volume: str, domain_volume: str, domain: str
    ) -> "ResourceHandles":
        return cls(
            network=ResourceHandle(ResourceKind.NETWORK, network),
            pool=ResourceHandle(ResourceKind.POOL, pool),
            base_volume=ResourceHandle(ResourceKind.BASE_VOLUME, base_volume),
            domain_volume=ResourceHandle(ResourceKind.DOMAIN_VOLUME, domain_volume),
            domain=ResourceHandle(ResourceKind.DOMAIN, domain),
        )

    def __iter__(self) -> Iterator[ResourceHandle]:
        yield self.network
        yield self.pool
        yield self.base_volume
        yield self.domain_volume
        yield self.domain

    def release(self, backend: HypervisorBackend) -> None:
        """Free every held reference. Safe to call more than once."""
        if self._released:
            return
        self._released = True
        for handle in self:
            if handle.ref is not None:
                backend.free(handle.ref)
                handle.ref = None
