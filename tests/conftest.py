"""
Pytest fixtures and configuration for libvirtdev tests.
"""
import json
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from libvirtdev.errors import ErrorCode, HypervisorError
from libvirtdev.interfaces.hypervisor import (
    GuestInterface,
    HypervisorBackend,
    UploadStream,
    VolumeInfo,
)
from libvirtdev.interfaces.process import ProcessHandle, ProcessResult, ProcessRunner
from libvirtdev.models import DevVMConfig
from libvirtdev.orchestrator import ResourceOrchestrator

TEMPLATE_XML = """\
<domain type="qemu">
  <name>template</name>
  <uuid>1b4e28ba-2fa1-11d2-883f-0016d3cca427</uuid>
  <memory unit="KiB">1048576</memory>
  <currentMemory unit="KiB">1048576</currentMemory>
  <vcpu>1</vcpu>
  <os>
    <type arch="x86_64" machine="pc">hvm</type>
  </os>
  <devices>
    <disk type="file" device="cdrom">
      <target dev="hdc" bus="ide"/>
    </disk>
    <interface type="network">
      <source network="default"/>
    </interface>
    <channel type="unix">
      <target type="virtio" name="org.qemu.guest_agent.0"/>
    </channel>
  </devices>
</domain>
"""

BASE_DISK_BYTES = b"QFI\xfb" + b"\x00" * 2996

MUTATING_METHODS = {
    "define_network",
    "define_pool",
    "define_domain",
    "start_network",
    "start_pool",
    "start_domain",
    "set_autostart",
    "destroy",
    "undefine",
    "create_volume",
    "create_volume_from",
    "delete_volume",
    "open_upload",
    "update_network",
}

OPERATIONS = {
    "define_network": "define",
    "define_pool": "define",
    "define_domain": "define",
    "start_network": "start",
    "start_pool": "start",
    "start_domain": "start",
}


class FakeRef:
    """Stand-in for a libvirt virNetwork / virStoragePool / virStorageVol / virDomain."""

    def __init__(self, kind: str, name: str, xml: str = "", pool: Optional[str] = None):
        self.kind = kind
        self.name = name
        self.xml = xml
        self.pool = pool
        self.active = False
        self.autostart = False
        self.capacity = 0
        self.allocation = 0
        self.backing: Optional[str] = None

    def __repr__(self):
        return f"<FakeRef {self.kind} {self.name}>"


class FakeUploadStream(UploadStream):
    def __init__(self, vol: FakeRef, chunk: int = 1024, fail_after: Optional[int] = None):
        self.vol = vol
        self.chunk = chunk
        self.fail_after = fail_after
        self.data = b""
        self.chunks = 0
        self.aborted = False
        self.finished = False

    def send_all(self, producer):
        while True:
            if self.fail_after is not None and self.chunks >= self.fail_after:
                raise HypervisorError(1, "stream broken", operation="upload", target=self.vol.name)
            buf = producer(self.chunk)
            if not buf:
                return
            self.chunks += 1
            self.data += buf

    def abort(self):
        assert not self.finished, "abort after finish"
        self.aborted = True

    def finish(self):
        assert not self.aborted, "finish after abort"
        self.finished = True
        self.vol.data = self.data


class FakeHypervisor(HypervisorBackend):
    """In-memory hypervisor that records every call made through it."""

    name = "fake"

    def __init__(self):
        self.connected = False
        self.networks: Dict[str, FakeRef] = {}
        self.pools: Dict[str, FakeRef] = {}
        self.volumes: Dict[tuple, FakeRef] = {}
        self.domains: Dict[str, FakeRef] = {}
        self.calls: List[tuple] = []
        self.freed: List[FakeRef] = []
        self.failures: Dict[tuple, list] = {}
        self.interfaces: Dict[str, List[GuestInterface]] = {}
        self.agent_log: List[tuple] = []
        self.agent_handlers: Dict[str, Callable] = {}
        self.network_updates: List[tuple] = []
        self.streams: List[FakeUploadStream] = []
        self.upload_fail_after: Optional[int] = None

    # ── test helpers ─────────────────────────────────────────────────────────

    def fail(self, method: str, name: str, code: int, message: str = "injected", times=1):
        """Make ``method`` on resource ``name`` raise; ``times=None`` means always."""
        operation = OPERATIONS.get(method, method.replace("_", " "))
        err = HypervisorError(code, message, operation=operation, target=name)
        self.failures[(method, name)] = [err, times]

    def _check(self, method: str, name: str = ""):
        self.calls.append((method, name))
        entry = self.failures.get((method, name))
        if entry:
            err, remaining = entry
            if remaining is None or remaining > 0:
                if remaining:
                    entry[1] -= 1
                raise err

    @property
    def mutations(self) -> List[tuple]:
        return [c for c in self.calls if c[0] in MUTATING_METHODS]

    def add_network(self, name: str, xml: str, active: bool = True) -> FakeRef:
        ref = FakeRef("network", name, xml)
        ref.active = active
        self.networks[name] = ref
        return ref

    def add_pool(self, name: str, active: bool = True) -> FakeRef:
        ref = FakeRef("pool", name)
        ref.active = active
        self.pools[name] = ref
        return ref

    def add_volume(self, pool: str, name: str, capacity: int = 0, allocation: int = 0) -> FakeRef:
        ref = FakeRef("volume", name, pool=pool)
        ref.capacity = capacity
        ref.allocation = allocation
        self.volumes[(pool, name)] = ref
        return ref

    def add_domain(self, name: str, running: bool = True) -> FakeRef:
        ref = FakeRef("domain", name)
        ref.active = running
        self.domains[name] = ref
        return ref

    @staticmethod
    def _name_of(xml: str) -> str:
        return ET.fromstring(xml).findtext("name")

    def _registry(self, ref: FakeRef) -> dict:
        return {
            "network": self.networks,
            "pool": self.pools,
            "domain": self.domains,
        }[ref.kind]

    # ── HypervisorBackend ────────────────────────────────────────────────────

    def connect(self):
        self.calls.append(("connect", ""))
        self.connected = True

    def disconnect(self):
        self.calls.append(("disconnect", ""))
        self.connected = False

    def lookup_network(self, name):
        self._check("lookup_network", name)
        if name not in self.networks:
            raise HypervisorError(ErrorCode.NO_NETWORK, f"Network not found: {name}", "lookup network", name)
        return self.networks[name]

    def lookup_pool(self, name):
        self._check("lookup_pool", name)
        if name not in self.pools:
            raise HypervisorError(ErrorCode.NO_STORAGE_POOL, f"Storage pool not found: {name}", "lookup pool", name)
        return self.pools[name]

    def lookup_volume(self, pool, name):
        self._check("lookup_volume", name)
        if (pool.name, name) not in self.volumes:
            raise HypervisorError(ErrorCode.NO_STORAGE_VOL, f"Storage volume not found: {name}", "lookup volume", name)
        return self.volumes[(pool.name, name)]

    def lookup_domain(self, name):
        self._check("lookup_domain", name)
        if name not in self.domains:
            raise HypervisorError(ErrorCode.NO_DOMAIN, f"Domain not found: {name}", "lookup domain", name)
        return self.domains[name]

    def _define(self, method, registry, kind, xml):
        name = self._name_of(xml)
        self._check(method, name)
        ref = registry.get(name) or FakeRef(kind, name)
        ref.xml = xml
        registry[name] = ref
        return ref

    def define_network(self, xml):
        return self._define("define_network", self.networks, "network", xml)

    def define_pool(self, xml):
        return self._define("define_pool", self.pools, "pool", xml)

    def define_domain(self, xml):
        return self._define("define_domain", self.domains, "domain", xml)

    def _start(self, method, ref):
        self._check(method, ref.name)
        if ref.active:
            raise HypervisorError(ErrorCode.OPERATION_INVALID, f"{ref.kind} is already active", "start", ref.name)
        ref.active = True

    def start_network(self, net):
        self._start("start_network", net)

    def start_pool(self, pool):
        self._start("start_pool", pool)

    def start_domain(self, dom):
        self._start("start_domain", dom)

    def set_autostart(self, handle):
        self._check("set_autostart", handle.name)
        handle.autostart = True

    def destroy(self, handle):
        self._check("destroy", handle.name)
        if not handle.active:
            raise HypervisorError(ErrorCode.OPERATION_INVALID, f"{handle.kind} is not running", "destroy", handle.name)
        handle.active = False

    def undefine(self, handle):
        self._check("undefine", handle.name)
        registry = self._registry(handle)
        if registry.get(handle.name) is not handle:
            raise HypervisorError(ErrorCode.NO_DOMAIN, f"{handle.kind} not found", "undefine", handle.name)
        del registry[handle.name]

    def free(self, handle):
        self.freed.append(handle)

    def _new_volume(self, method, pool, xml):
        root = ET.fromstring(xml)
        name = root.findtext("name")
        self._check(method, name)
        ref = FakeRef("volume", name, xml, pool=pool.name)
        ref.capacity = int(root.findtext("capacity") or 0)
        ref.allocation = int(root.findtext("allocation") or 0)
        self.volumes[(pool.name, name)] = ref
        return ref

    def create_volume(self, pool, xml):
        return self._new_volume("create_volume", pool, xml)

    def create_volume_from(self, pool, xml, base):
        ref = self._new_volume("create_volume_from", pool, xml)
        ref.backing = base.name
        return ref

    def volume_info(self, vol):
        self._check("volume_info", vol.name)
        return VolumeInfo(capacity=vol.capacity, allocation=vol.allocation)

    def volume_name(self, vol):
        return vol.name

    def delete_volume(self, vol):
        self._check("delete_volume", vol.name)
        if (vol.pool, vol.name) not in self.volumes:
            raise HypervisorError(ErrorCode.NO_STORAGE_VOL, "volume not found", "delete volume", vol.name)
        del self.volumes[(vol.pool, vol.name)]

    def list_volumes(self, pool):
        self._check("list_volumes", pool.name)
        return [v for (p, _n), v in self.volumes.items() if p == pool.name]

    def open_upload(self, vol, length):
        self._check("open_upload", vol.name)
        stream = FakeUploadStream(vol, fail_after=self.upload_fail_after)
        self.streams.append(stream)
        return stream

    def domain_name(self, dom):
        return dom.name

    def is_running(self, dom):
        self._check("is_running", dom.name)
        return dom.active

    def list_domains(self):
        self._check("list_domains")
        return list(self.domains.values())

    def agent_command(self, dom, command, timeout):
        request = json.loads(command)
        execute = request["execute"]
        self._check(f"agent:{execute}", dom.name)
        self.agent_log.append((dom.name, request, timeout))
        handler = self.agent_handlers.get(execute)
        if handler is not None:
            result = handler(request)
        elif execute == "guest-file-open":
            result = 1000
        else:
            result = {}
        return json.dumps({"return": result})

    def interface_addresses(self, dom):
        self._check("interface_addresses", dom.name)
        return list(self.interfaces.get(dom.name, []))

    def network_xml(self, net):
        self._check("network_xml", net.name)
        return net.xml

    def update_network(self, net, command, section, xml):
        self._check("update_network", net.name)
        self.network_updates.append((net.name, command, section, xml))


class FakeProcessHandle(ProcessHandle):
    def __init__(self, returncode: int = 0, block=None):
        self.returncode = returncode
        self.block = block
        self.terminated = False

    def wait(self):
        if self.block is not None:
            self.block.wait(5)
        return -15 if self.terminated else self.returncode

    def poll(self):
        return None

    def terminate(self):
        self.terminated = True
        if self.block is not None:
            self.block.set()


class FakeRunner(ProcessRunner):
    """Records shell commands; commands containing a ``failing`` substring exit 2."""

    def __init__(self, failing=()):
        self.commands: List[str] = []
        self.failing = list(failing)
        self.spawned: List[FakeProcessHandle] = []
        self.spawn_returncode = 0
        self.spawn_block = None

    def run_shell(self, command, capture_output=True, timeout=None):
        self.commands.append(command)
        if any(f in command for f in self.failing):
            return ProcessResult(command, 2, stderr="RTNETLINK answers: File exists")
        return ProcessResult(command, 0)

    def spawn_shell(self, command):
        self.commands.append(command)
        handle = FakeProcessHandle(self.spawn_returncode, self.spawn_block)
        self.spawned.append(handle)
        return handle


@pytest.fixture
def backend():
    return FakeHypervisor()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def vm_files(tmp_path):
    """Template, base disk and authorized keys on disk."""
    template = tmp_path / "template.xml"
    template.write_text(TEMPLATE_XML)
    base_disk = tmp_path / "debian-12.qcow2"
    base_disk.write_bytes(BASE_DISK_BYTES)
    keys = tmp_path / "id_ed25519.pub"
    keys.write_text("ssh-ed25519 AAAAC3Nza dev@laptop\n\nssh-rsa AAAAB3Nza dev@desktop\n")
    return {"template": template, "base_disk": base_disk, "authorized_keys": keys}


@pytest.fixture
def config(vm_files, tmp_path) -> DevVMConfig:
    return DevVMConfig(
        name="devbox",
        template=vm_files["template"],
        base_disk=vm_files["base_disk"],
        authorized_keys=vm_files["authorized_keys"],
        pool_path=Path("/var/lib/libvirt/devpool"),
        net_dns="1.1.1.1",
        wait_secs=0,
    )


@pytest.fixture
def orchestrator(config, backend, runner) -> ResourceOrchestrator:
    orch = ResourceOrchestrator(config, backend, runner=runner)
    orch.load()
    return orch
