"""Abstract interface for local process execution."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class ProcessResult:
    """Result of process execution."""

    command: str
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0

    def describe(self) -> str:
        detail = self.stderr.strip() or self.stdout.strip()
        if detail:
            return f"exit status {self.returncode}: {detail}"
        return f"exit status {self.returncode}"


class ProcessHandle(ABC):
    """A running child process attached to the terminal."""

    @abstractmethod
    def wait(self) -> int:
        pass

    @abstractmethod
    def poll(self) -> Optional[int]:
        pass

    @abstractmethod
    def terminate(self) -> None:
        pass


class ProcessRunner(ABC):
    """Abstract interface for process execution."""

    @abstractmethod
    def run_shell(
        self,
        command: str,
        capture_output: bool = True,
        timeout: Optional[int] = None,
    ) -> ProcessResult:
        """Run a shell command to completion."""
        pass

    @abstractmethod
    def spawn_shell(self, command: str) -> ProcessHandle:
        """Start a shell command sharing this process's stdin/stdout/stderr."""
        pass
