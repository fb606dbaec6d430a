"""
Error taxonomy for libvirtdev.

Hypervisor failures carry the numeric libvirt error code; everything that
needs to decide whether a failure is tolerable goes through
:func:`classify_error` instead of matching on message text.
"""

from enum import Enum, IntEnum
from typing import List, Optional, Tuple


class ErrorCode(IntEnum):
    """Subset of libvirt ``virErrorNumber`` values the tool reacts to."""

    NO_DOMAIN = 42
    NO_NETWORK = 43
    NO_STORAGE_POOL = 49
    NO_STORAGE_VOL = 50
    OPERATION_INVALID = 55
    AGENT_UNRESPONSIVE = 86


class ErrorKind(Enum):
    """How a failure should be treated by the caller."""

    NOT_FOUND = "not_found"
    ALREADY_IN_STATE = "already_in_state"
    OPERATION_INVALID = "operation_invalid"
    AGENT_UNRESPONSIVE = "agent_unresponsive"
    TIMEOUT = "timeout"
    CONFIGURATION_INVALID = "configuration_invalid"
    HYPERVISOR_FAILURE = "hypervisor_failure"


NOT_FOUND_CODES = frozenset(
    {
        ErrorCode.NO_DOMAIN,
        ErrorCode.NO_NETWORK,
        ErrorCode.NO_STORAGE_POOL,
        ErrorCode.NO_STORAGE_VOL,
    }
)

# Operations that bring a resource into existence or start it. An
# OPERATION_INVALID answer to these means the resource is already there.
CREATING_OPERATIONS = frozenset({"define", "create", "start"})


def classify_error(operation: str, code: Optional[int]) -> ErrorKind:
    """Map a (operation, libvirt error code) pair to an :class:`ErrorKind`."""
    if code is None:
        return ErrorKind.HYPERVISOR_FAILURE
    if code in NOT_FOUND_CODES:
        return ErrorKind.NOT_FOUND
    if code == ErrorCode.OPERATION_INVALID:
        if operation in CREATING_OPERATIONS:
            return ErrorKind.ALREADY_IN_STATE
        return ErrorKind.OPERATION_INVALID
    if code == ErrorCode.AGENT_UNRESPONSIVE:
        return ErrorKind.AGENT_UNRESPONSIVE
    return ErrorKind.HYPERVISOR_FAILURE


# Kinds that ensure-absent treats as "already gone".
TOLERATED_ON_DELETE = frozenset(
    {ErrorKind.NOT_FOUND, ErrorKind.OPERATION_INVALID, ErrorKind.ALREADY_IN_STATE}
)


class LibvirtDevError(Exception):
    """Base class for all libvirtdev errors."""

    kind = ErrorKind.HYPERVISOR_FAILURE


class ConfigurationError(LibvirtDevError):
    """Bad configuration, template, or key file."""

    kind = ErrorKind.CONFIGURATION_INVALID


class InvalidAddress(ConfigurationError, ValueError):
    """An address, netmask or CIDR string could not be parsed."""


class HypervisorError(LibvirtDevError):
    """A failure reported by the hypervisor control connection."""

    def __init__(
        self,
        code: Optional[int],
        message: str,
        operation: str = "",
        target: str = "",
    ):
        self.code = code
        self.message = message
        self.operation = operation
        self.target = target
        super().__init__(self._format())

    def _format(self) -> str:
        prefix = " ".join(p for p in (self.operation, self.target) if p)
        if prefix:
            return f"{prefix}: {self.message} (code={self.code})"
        return f"{self.message} (code={self.code})"

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        return classify_error(self.operation, self.code)


class MissingDependencyError(LibvirtDevError):
    """A resource this one depends on is not present."""


class GuestAgentProtocolError(LibvirtDevError):
    """The guest agent answered with something that is not a valid envelope."""


class GuestUnreachable(LibvirtDevError):
    """The guest did not become agent-responsive within its wait time."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, domain: str, wait_secs: int):
        self.domain = domain
        self.wait_secs = wait_secs
        super().__init__(f"guest {domain!r} did not respond within {wait_secs} sec timeout")


class OperationCancelled(LibvirtDevError):
    """The run was interrupted by a cancellation signal."""


class DNSReconcileError(LibvirtDevError):
    """The network cannot hold DNS host records."""


class _AggregateError(LibvirtDevError):
    header = "errors:"

    def __init__(self, failures: List[Tuple[str, Exception]]):
        self.failures = list(failures)
        lines = [self.header]
        lines.extend(f"  {item}: {err}" for item, err in self.failures)
        super().__init__("\n".join(lines))


class RouteError(_AggregateError):
    """One or more routes could not be applied."""

    header = "error modifying routes:"


class VolumeSweepError(_AggregateError):
    """One or more pool volumes could not be deleted."""

    header = "failed to delete pool volume(s):"


class DomainRestartError(_AggregateError):
    """One or more domains could not be restarted."""

    header = "failed to restart domain(s):"
