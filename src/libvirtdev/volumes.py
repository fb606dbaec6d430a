"""
Storage volume descriptors and the base-volume upload session.
"""

import xml.etree.ElementTree as ET
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Callable, List, Optional

from libvirtdev.errors import ConfigurationError
from libvirtdev.interfaces.hypervisor import Handle, HypervisorBackend, UploadStream
from libvirtdev.logging import get_logger

log = get_logger(__name__)

ProgressCallback = Callable[[int, int], None]


def volume_xml(name: str, capacity: int, allocation: Optional[int] = None) -> str:
    """qcow2 volume definition with sizes in bytes."""
    vol = ET.Element("volume")
    ET.SubElement(vol, "name").text = name
    ET.SubElement(vol, "capacity", unit="bytes").text = str(capacity)
    if allocation is not None:
        ET.SubElement(vol, "allocation", unit="bytes").text = str(allocation)
    target = ET.SubElement(vol, "target")
    ET.SubElement(target, "format", type="qcow2")
    ET.indent(vol)
    return ET.tostring(vol, encoding="unicode")


def read_authorized_keys(path: Path) -> List[str]:
    """One public key per non-empty line of *path*."""
    try:
        text = Path(path).expanduser().read_text()
    except OSError as e:
        raise ConfigurationError(f"cannot read authorized keys {path}: {e}") from e
    keys = [line.strip() for line in text.strip().splitlines() if line.strip()]
    if not keys:
        raise ConfigurationError(f"no public keys in {path}")
    return keys


class UploadState(Enum):
    PENDING = "pending"
    SENDING = "sending"
    FINISHED = "finished"
    ABORTED = "aborted"


class UploadSession:
    """
    Feed a local file into a hypervisor upload stream.

    The stream pulls buffers through :meth:`produce`; an empty buffer means
    end of data. Exactly one of ``finish`` or ``abort`` ends the stream.
    """

    def __init__(
        self,
        stream: UploadStream,
        source: BinaryIO,
        total: int,
        progress: Optional[ProgressCallback] = None,
    ):
        self.stream = stream
        self.source = source
        self.total = total
        self.progress = progress
        self.transferred = 0
        self.state = UploadState.PENDING

    def produce(self, nbytes: int) -> bytes:
        buf = self.source.read(nbytes)
        if buf:
            self.transferred += len(buf)
            if self.progress:
                self.progress(self.transferred, self.total)
        return buf

    def run(self) -> None:
        if self.state != UploadState.PENDING:
            raise RuntimeError(f"upload session already {self.state.value}")
        self.state = UploadState.SENDING
        try:
            self.stream.send_all(self.produce)
        except BaseException:
            self._abort()
            raise
        self.stream.finish()
        self.state = UploadState.FINISHED

    def _abort(self) -> None:
        if self.state in (UploadState.FINISHED, UploadState.ABORTED):
            return
        self.state = UploadState.ABORTED
        self.stream.abort()


def upload_file(
    backend: HypervisorBackend,
    vol: Handle,
    path: Path,
    progress: Optional[ProgressCallback] = None,
) -> int:
    """Upload *path* into *vol* and return the number of bytes sent."""
    path = Path(path)
    total = path.stat().st_size
    with open(path, "rb") as source:
        stream = backend.open_upload(vol, total)
        session = UploadSession(stream, source, total, progress)
        session.run()
    log.debug("upload_complete", path=str(path), bytes=session.transferred)
    return session.transferred
