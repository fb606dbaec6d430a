"""Run the interactive ssh/rsync command until it exits or the user interrupts."""

import signal
import threading
from typing import Optional

from libvirtdev.errors import OperationCancelled
from libvirtdev.interfaces.process import ProcessHandle, ProcessRunner
from libvirtdev.logging import get_logger

log = get_logger(__name__)

SESSION_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class InteractiveSession:
    """
    Runs one shell command in a background thread.

    The calling thread blocks on ``done``, which is set either when the
    command exits or when SIGINT/SIGTERM arrives. On a signal the child is
    terminated and :class:`OperationCancelled` is raised.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        command: str,
        done: Optional[threading.Event] = None,
        join_timeout: float = 10.0,
    ):
        self.runner = runner
        self.command = command
        self.done = done or threading.Event()
        self.join_timeout = join_timeout
        self.returncode: Optional[int] = None
        self.cancelled = False
        self._handle: Optional[ProcessHandle] = None
        self._error: Optional[BaseException] = None
        self._lock = threading.Lock()

    def cancel(self, signum=None, frame=None) -> None:
        if signum is not None:
            log.info("session_interrupted", signal=signal.Signals(signum).name)
        self.cancelled = True
        self.done.set()

    def _work(self) -> None:
        try:
            with self._lock:
                if self.cancelled:
                    return
                self._handle = self.runner.spawn_shell(self.command)
            self.returncode = self._handle.wait()
        except Exception as e:
            self._error = e
        finally:
            self.done.set()

    def run(self, install_signals: bool = True) -> int:
        """Run the command and return its exit status."""
        log.debug("session_command", command=self.command)
        if self.done.is_set():
            self.cancelled = True
        previous = {}
        if install_signals:
            for signum in SESSION_SIGNALS:
                previous[signum] = signal.signal(signum, self.cancel)

        worker = threading.Thread(target=self._work, name="libvirtdev-session", daemon=True)
        worker.start()
        try:
            self.done.wait()
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)

        if self.cancelled:
            with self._lock:
                if self._handle is not None:
                    self._handle.terminate()
            worker.join(self.join_timeout)
            raise OperationCancelled(f"interrupted: {self.command}")

        worker.join(self.join_timeout)
        if self._error is not None:
            raise self._error
        return self.returncode if self.returncode is not None else -1
