"""Subprocess process runner implementation."""

import subprocess
from typing import Optional

from ..interfaces.process import ProcessHandle, ProcessResult, ProcessRunner


class PopenHandle(ProcessHandle):
    def __init__(self, proc: subprocess.Popen):
        self._proc = proc

    def wait(self) -> int:
        return self._proc.wait()

    def poll(self) -> Optional[int]:
        return self._proc.poll()

    def terminate(self) -> None:
        if self._proc.poll() is None:
            self._proc.terminate()


class SubprocessRunner(ProcessRunner):
    """Run processes using the subprocess module."""

    def run_shell(
        self,
        command: str,
        capture_output: bool = True,
        timeout: Optional[int] = None,
    ) -> ProcessResult:
        """Run a shell command."""
        try:
            result = subprocess.run(
                ["sh", "-c", command],
                capture_output=capture_output,
                timeout=timeout,
                text=True,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            return ProcessResult(command=command, returncode=-1, stderr=str(e))
        return ProcessResult(
            command=command,
            returncode=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )

    def spawn_shell(self, command: str) -> ProcessHandle:
        return PopenHandle(subprocess.Popen(["sh", "-c", command]))
