"""Wait for a booted domain's guest agent to answer."""

import math
import threading
import time
from enum import Enum
from typing import Callable, Optional

from libvirtdev.errors import ErrorKind, GuestUnreachable, HypervisorError, OperationCancelled
from libvirtdev.guest_agent import GuestAgent
from libvirtdev.interfaces.hypervisor import Handle, HypervisorBackend
from libvirtdev.logging import get_logger

log = get_logger(__name__)

WAIT_INTERVAL = 5


class PollState(Enum):
    WAITING_FOR_BOOT = "waiting_for_boot"
    WAITING_FOR_AGENT = "waiting_for_agent"
    READY = "ready"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class GuestReadinessPoller:
    """
    Bounded poll until a domain is running and its agent answers ``guest-ping``.

    At most ``ceil(wait_secs / interval) + 1`` attempts are made. Each sleep
    waits on *cancel_event*, so setting the event ends the wait early with
    :class:`OperationCancelled`.
    """

    def __init__(
        self,
        backend: HypervisorBackend,
        domain: Handle,
        name: str,
        wait_secs: int,
        interval: int = WAIT_INTERVAL,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.backend = backend
        self.domain = domain
        self.name = name
        self.wait_secs = wait_secs
        self.interval = interval
        self.cancel_event = cancel_event or threading.Event()
        self.agent = GuestAgent(backend, domain, name)
        self._clock = clock
        self._started: Optional[float] = None
        self._stopped: Optional[float] = None

        self.state = PollState.WAITING_FOR_BOOT
        self.attempts = 0
        self.sleeps = 0

    @property
    def max_attempts(self) -> int:
        return math.ceil(self.wait_secs / self.interval) + 1

    @property
    def elapsed(self) -> float:
        if self._started is None:
            return 0.0
        end = self._stopped if self._stopped is not None else self._clock()
        return end - self._started

    def wait(self) -> None:
        self._started = self._clock()
        try:
            self._poll()
        finally:
            self._stopped = self._clock()

    def _poll(self) -> None:
        for attempt in range(1, self.max_attempts + 1):
            self.attempts = attempt
            more = attempt < self.max_attempts

            if not self._running():
                self.state = PollState.WAITING_FOR_BOOT
                log.info(f"waiting for domain {self.name!r} to start...", attempt=attempt)
                if more:
                    self._sleep()
                continue

            self.state = PollState.WAITING_FOR_AGENT
            try:
                self.agent.ping(timeout=self.interval)
            except HypervisorError as e:
                if e.kind != ErrorKind.AGENT_UNRESPONSIVE:
                    raise
                log.info(
                    f"waiting for domain {self.name!r} guest-agent to start...",
                    attempt=attempt,
                    error=e.message,
                )
                if more:
                    self._sleep()
                continue

            self.state = PollState.READY
            log.info(f"domain {self.name!r} guest-agent is responding", attempts=attempt)
            return

        self.state = PollState.TIMED_OUT
        raise GuestUnreachable(self.name, self.wait_secs)

    def _running(self) -> bool:
        try:
            return self.backend.is_running(self.domain)
        except HypervisorError as e:
            log.info(f"domain {self.name!r} state unavailable", error=str(e))
            return False

    def _sleep(self) -> None:
        if self.cancel_event.wait(self.interval):
            self.state = PollState.CANCELLED
            raise OperationCancelled(f"wait for domain {self.name!r} cancelled")
        self.sleeps += 1
