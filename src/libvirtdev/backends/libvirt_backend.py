"""libvirt hypervisor backend implementation."""

from contextlib import contextmanager
from typing import Callable, Dict, List

try:
    import libvirt
    import libvirt_qemu
except ImportError:
    libvirt = None
    libvirt_qemu = None

from ..errors import HypervisorError
from ..interfaces.hypervisor import (
    GuestInterface,
    Handle,
    HypervisorBackend,
    NetworkSection,
    NetworkUpdateCommand,
    UploadStream,
    VolumeInfo,
)
from ..logging import get_logger

log = get_logger(__name__)


@contextmanager
def translate_errors(operation: str, target: str = ""):
    """Re-raise ``libvirt.libvirtError`` as :class:`HypervisorError`."""
    try:
        yield
    except libvirt.libvirtError as e:
        raise HypervisorError(
            e.get_error_code(),
            e.get_error_message() or str(e),
            operation=operation,
            target=target,
        ) from e


def _handle_name(handle: Handle) -> str:
    try:
        return handle.name()
    except Exception:
        return repr(handle)


class LibvirtUploadStream(UploadStream):
    """Wraps ``virStream`` for a volume upload."""

    def __init__(self, stream, target: str):
        self._stream = stream
        self._target = target

    def send_all(self, producer: Callable[[int], bytes]) -> None:
        with translate_errors("upload", self._target):
            self._stream.sendAll(lambda _stream, nbytes, _opaque: producer(nbytes), None)

    def abort(self) -> None:
        try:
            self._stream.abort()
        except libvirt.libvirtError as e:
            # sendAll() aborts on its own when the producer raises
            log.debug("stream_abort_failed", target=self._target, error=str(e))

    def finish(self) -> None:
        with translate_errors("finish upload", self._target):
            self._stream.finish()


class LibvirtBackend(HypervisorBackend):
    """libvirt hypervisor backend."""

    name = "libvirt"

    def __init__(self, uri: str = "qemu:///system"):
        self.uri = uri
        self._conn = None

    def connect(self) -> None:
        """Establish connection to libvirt."""
        if libvirt is None:
            raise ImportError("libvirt-python is required. Install with: pip install libvirt-python")
        if self._conn is not None:
            return
        with translate_errors("connect", self.uri):
            self._conn = libvirt.open(self.uri)

    def disconnect(self) -> None:
        """Close connection."""
        if self._conn:
            try:
                self._conn.close()
            except libvirt.libvirtError as e:
                log.warning("disconnect_failed", uri=self.uri, error=str(e))
            self._conn = None

    @property
    def conn(self):
        """Get active libvirt connection."""
        if self._conn is None:
            self.connect()
        return self._conn

    # lookups

    def lookup_network(self, name: str) -> Handle:
        with translate_errors("lookup network", name):
            return self.conn.networkLookupByName(name)

    def lookup_pool(self, name: str) -> Handle:
        with translate_errors("lookup pool", name):
            return self.conn.storagePoolLookupByName(name)

    def lookup_volume(self, pool: Handle, name: str) -> Handle:
        with translate_errors("lookup volume", name):
            return pool.storageVolLookupByName(name)

    def lookup_domain(self, name: str) -> Handle:
        with translate_errors("lookup domain", name):
            return self.conn.lookupByName(name)

    # definitions

    def define_network(self, xml: str) -> Handle:
        with translate_errors("define", "network"):
            return self.conn.networkDefineXML(xml)

    def define_pool(self, xml: str) -> Handle:
        with translate_errors("define", "storage pool"):
            return self.conn.storagePoolDefineXML(xml, 0)

    def define_domain(self, xml: str) -> Handle:
        with translate_errors("define", "domain"):
            return self.conn.defineXML(xml)

    # activation

    def start_network(self, net: Handle) -> None:
        with translate_errors("start", _handle_name(net)):
            net.create()

    def start_pool(self, pool: Handle) -> None:
        with translate_errors("start", _handle_name(pool)):
            pool.create(libvirt.VIR_STORAGE_POOL_CREATE_WITH_BUILD)

    def start_domain(self, dom: Handle) -> None:
        with translate_errors("start", _handle_name(dom)):
            dom.createWithFlags(libvirt.VIR_DOMAIN_START_FORCE_BOOT)

    def set_autostart(self, handle: Handle) -> None:
        with translate_errors("autostart", _handle_name(handle)):
            handle.setAutostart(1)

    # teardown

    def destroy(self, handle: Handle) -> None:
        with translate_errors("destroy", _handle_name(handle)):
            handle.destroy()

    def undefine(self, handle: Handle) -> None:
        with translate_errors("undefine", _handle_name(handle)):
            handle.undefine()

    def free(self, handle: Handle) -> None:
        # python bindings release the C reference when the object is collected
        pass

    # volumes

    def create_volume(self, pool: Handle, xml: str) -> Handle:
        with translate_errors("create volume", _handle_name(pool)):
            return pool.createXML(xml, 0)

    def create_volume_from(self, pool: Handle, xml: str, base: Handle) -> Handle:
        with translate_errors("create volume from", _handle_name(base)):
            return pool.createXMLFrom(xml, base, 0)

    def volume_info(self, vol: Handle) -> VolumeInfo:
        with translate_errors("volume info", _handle_name(vol)):
            _type, capacity, allocation = vol.info()
        return VolumeInfo(capacity=capacity, allocation=allocation)

    def volume_name(self, vol: Handle) -> str:
        with translate_errors("volume name"):
            return vol.name()

    def delete_volume(self, vol: Handle) -> None:
        with translate_errors("delete volume", _handle_name(vol)):
            vol.delete(libvirt.VIR_STORAGE_VOL_DELETE_NORMAL)

    def list_volumes(self, pool: Handle) -> List[Handle]:
        with translate_errors("list volumes", _handle_name(pool)):
            return pool.listAllVolumes(0)

    def open_upload(self, vol: Handle, length: int) -> UploadStream:
        target = _handle_name(vol)
        with translate_errors("open upload", target):
            stream = self.conn.newStream(0)
            vol.upload(stream, 0, length, 0)
        return LibvirtUploadStream(stream, target)

    # domains

    def domain_name(self, dom: Handle) -> str:
        with translate_errors("domain name"):
            return dom.name()

    def is_running(self, dom: Handle) -> bool:
        with translate_errors("domain state", _handle_name(dom)):
            state, _reason = dom.state()
        return state == libvirt.VIR_DOMAIN_RUNNING

    def list_domains(self) -> List[Handle]:
        flags = libvirt.VIR_CONNECT_LIST_DOMAINS_PERSISTENT | libvirt.VIR_CONNECT_LIST_DOMAINS_RUNNING
        with translate_errors("list domains"):
            return self.conn.listAllDomains(flags)

    def agent_command(self, dom: Handle, command: str, timeout: int) -> str:
        with translate_errors("agent command", _handle_name(dom)):
            return libvirt_qemu.qemuAgentCommand(dom, command, timeout, 0)

    def interface_addresses(self, dom: Handle) -> List[GuestInterface]:
        with translate_errors("interface addresses", _handle_name(dom)):
            ifaces: Dict[str, Dict] = dom.interfaceAddresses(
                libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_AGENT, 0
            )
        result = []
        for name, data in (ifaces or {}).items():
            iface = GuestInterface(name=name)
            for addr in data.get("addrs") or []:
                if addr.get("type") == libvirt.VIR_IP_ADDR_TYPE_IPV4:
                    iface.ipv4.append(addr["addr"])
                elif addr.get("type") == libvirt.VIR_IP_ADDR_TYPE_IPV6:
                    iface.ipv6.append(addr["addr"])
            result.append(iface)
        return result

    # networks

    def network_xml(self, net: Handle) -> str:
        with translate_errors("network xml", _handle_name(net)):
            return net.XMLDesc(0)

    def update_network(
        self,
        net: Handle,
        command: NetworkUpdateCommand,
        section: NetworkSection,
        xml: str,
    ) -> None:
        commands = {
            NetworkUpdateCommand.DELETE: libvirt.VIR_NETWORK_UPDATE_COMMAND_DELETE,
            NetworkUpdateCommand.ADD_LAST: libvirt.VIR_NETWORK_UPDATE_COMMAND_ADD_LAST,
        }
        sections = {
            NetworkSection.DNS_HOST: libvirt.VIR_NETWORK_SECTION_DNS_HOST,
        }
        with translate_errors(f"update network ({command.value})", _handle_name(net)):
            net.update(
                commands[command],
                sections[section],
                -1,
                xml,
                libvirt.VIR_NETWORK_UPDATE_AFFECT_CURRENT,
            )
