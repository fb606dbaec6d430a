#!/usr/bin/env python3
"""
Resource lifecycle for one dev VM.

The orchestrator owns the five managed resources (network, storage pool,
base volume, domain volume and domain) for a single run. ``load`` looks
them up once; every ``ensure_*`` is a no-op when the resource is already
present and every ``delete_*`` is a no-op when it is already absent.
"""

import threading
import xml.etree.ElementTree as ET
from typing import Callable, List, Optional, Tuple

from libvirtdev.dns import resolve_domain_address, sync_domain_names_to_network_dns
from libvirtdev.domain_xml import read_domain_template, render_domain_xml
from libvirtdev.errors import (
    TOLERATED_ON_DELETE,
    ConfigurationError,
    DomainRestartError,
    ErrorKind,
    HypervisorError,
    LibvirtDevError,
    OperationCancelled,
    VolumeSweepError,
)
from libvirtdev.guest_agent import GuestAgent
from libvirtdev.handles import ResourceHandle, ResourceHandles
from libvirtdev.interfaces.hypervisor import Handle, HypervisorBackend
from libvirtdev.interfaces.process import ProcessRunner
from libvirtdev.logging import get_logger, log_operation
from libvirtdev.models import DevVMConfig
from libvirtdev.netmath import dhcp_range, gateway_addr, mask_addr, parse_prefix
from libvirtdev.readiness import GuestReadinessPoller
from libvirtdev.routes import get_routes, modify_routes
from libvirtdev.volumes import ProgressCallback, read_authorized_keys, upload_file, volume_xml

log = get_logger(__name__)

SUPPORTED_NET_MODES = ("open", "bridge")

Failures = List[Tuple[str, Exception]]


def _to_xml(root: ET.Element) -> str:
    ET.indent(root)
    return ET.tostring(root, encoding="unicode")


def network_xml(config: DevVMConfig) -> str:
    """Network definition for the private dev network."""
    net = ET.Element("network")
    ET.SubElement(net, "name").text = config.net
    ET.SubElement(net, "forward", mode=config.net_mode)
    ET.SubElement(net, "bridge", name=config.net_bridge)
    dns = ET.SubElement(net, "dns", forwardPlainNames="no")
    if config.net_dns:
        ET.SubElement(dns, "forwarder", addr=config.net_dns)
    if config.dhcp_enabled:
        prefix = parse_prefix(config.net_range)
        start, end = dhcp_range(prefix)
        ip = ET.SubElement(
            net,
            "ip",
            address=str(gateway_addr(prefix)),
            netmask=str(mask_addr(prefix)),
            localPtr="yes",
        )
        dhcp = ET.SubElement(ip, "dhcp")
        dhcp_range_elem = ET.SubElement(dhcp, "range", start=str(start), end=str(end))
        ET.SubElement(dhcp_range_elem, "lease", expiry="1", unit="hours")
    return _to_xml(net)


def pool_xml(config: DevVMConfig) -> str:
    """Directory-backed storage pool definition."""
    pool = ET.Element("pool", type="dir")
    ET.SubElement(pool, "name").text = config.pool
    ET.SubElement(pool, "source")
    target = ET.SubElement(pool, "target")
    ET.SubElement(target, "path").text = str(config.pool_path)
    permissions = ET.SubElement(target, "permissions")
    ET.SubElement(permissions, "mode").text = "0755"
    return _to_xml(pool)


class ResourceOrchestrator:
    """Idempotent create/delete of the dev VM resources."""

    def __init__(
        self,
        config: DevVMConfig,
        backend: HypervisorBackend,
        runner: Optional[ProcessRunner] = None,
        cancel_event: Optional[threading.Event] = None,
        upload_progress: Optional[ProgressCallback] = None,
    ):
        self.config = config
        self.backend = backend
        self.runner = runner
        self.cancel_event = cancel_event or threading.Event()
        self.upload_progress = upload_progress
        self.handles = ResourceHandles.for_names(
            network=config.net,
            pool=config.pool,
            base_volume=config.base_volume,
            domain_volume=config.disk,
            domain=config.name,
        )

    def __enter__(self) -> "ResourceOrchestrator":
        try:
            self.load()
        except BaseException:
            self.close()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ── load ────────────────────────────────────────────────────────────────

    def load(self) -> None:
        """Look up every managed resource; only not-found is tolerated."""
        self.backend.connect()
        h = self.handles
        self._lookup(h.network, self.backend.lookup_network)
        self._lookup(h.pool, self.backend.lookup_pool)
        if h.pool.present:
            pool = h.pool.ref
            self._lookup(h.base_volume, lambda name: self.backend.lookup_volume(pool, name))
            self._lookup(h.domain_volume, lambda name: self.backend.lookup_volume(pool, name))
        else:
            h.base_volume.mark_absent()
            h.domain_volume.mark_absent()
        self._lookup(h.domain, self.backend.lookup_domain)

        for handle in h:
            log.debug("resource_state", kind=handle.kind.value, name=handle.name, state=handle.state.value)

    def _lookup(self, handle: ResourceHandle, lookup: Callable[[str], Handle]) -> None:
        log.info(f"checking {handle}...")
        try:
            handle.set(lookup(handle.name))
        except HypervisorError as e:
            if e.kind != ErrorKind.NOT_FOUND:
                log.error("lookup_failed", kind=handle.kind.value, name=handle.name, error=str(e))
                raise
            handle.mark_absent()

    def close(self) -> None:
        self.handles.release(self.backend)
        self.backend.disconnect()

    def summary(self) -> List[Tuple[str, str, bool]]:
        return [(h.kind.value, h.name, h.present) for h in self.handles]

    # ── ensure present ──────────────────────────────────────────────────────

    def ensure_network(self) -> None:
        h = self.handles.network
        if h.present:
            log.debug(f"{h} already present")
            return
        if self.config.net_mode not in SUPPORTED_NET_MODES:
            log.warning(f"net mode={self.config.net_mode!r} may not be supported")
        xml = network_xml(self.config)
        log.debug("network_xml", xml=xml)
        with log_operation(log, "create", kind=h.kind.value, name=h.name):
            net = self.backend.define_network(xml)
            h.set(net)
            self.backend.set_autostart(net)
            self.backend.start_network(net)

    def ensure_pool(self) -> None:
        h = self.handles.pool
        if h.present:
            log.debug(f"{h} already present")
            return
        xml = pool_xml(self.config)
        log.debug("pool_xml", xml=xml)
        with log_operation(log, "create", kind=h.kind.value, name=h.name):
            pool = self.backend.define_pool(xml)
            h.set(pool)
            self.backend.start_pool(pool)
            self.backend.set_autostart(pool)

    def ensure_base_volume(self) -> None:
        h = self.handles.base_volume
        if h.present:
            log.debug(f"{h} already present")
            return
        pool = self.handles.pool.require()
        path = self.config.base_disk
        try:
            size = path.stat().st_size
        except OSError as e:
            raise ConfigurationError(f"cannot read base disk {path}: {e}") from e
        xml = volume_xml(h.name, size)
        log.debug("base_volume_xml", xml=xml)

        with log_operation(log, "create", kind=h.kind.value, name=h.name, pool=self.config.pool):
            vol = self.backend.create_volume(pool, xml)
            h.set(vol)
            log.info(f'uploading base volume "{self.config.pool}/{h.name}"...', bytes=size)
            try:
                upload_file(self.backend, vol, path, self.upload_progress)
            except Exception as e:
                self._discard_partial(h)
                if isinstance(e, OSError):
                    raise ConfigurationError(f"cannot read base disk {path}: {e}") from e
                raise

    def _discard_partial(self, h: ResourceHandle) -> None:
        log.warning(f"deleting partially uploaded {h}")
        try:
            self.backend.delete_volume(h.ref)
        except HypervisorError as e:
            log.warning("partial_volume_delete_failed", name=h.name, error=str(e))
        self.backend.free(h.ref)
        h.mark_absent()

    def ensure_domain_volume(self) -> None:
        h = self.handles.domain_volume
        if h.present:
            log.debug(f"{h} already present")
            return
        pool = self.handles.pool.require()
        base = self.handles.base_volume.require()
        info = self.backend.volume_info(base)
        xml = volume_xml(h.name, info.capacity, info.allocation)
        log.debug("domain_volume_xml", xml=xml)
        with log_operation(log, "create", kind=h.kind.value, name=h.name, pool=self.config.pool):
            h.set(self.backend.create_volume_from(pool, xml, base))

    def ensure_domain(self) -> None:
        """
        Create, boot and configure the domain.

        A present, running domain is left untouched. Post-boot configuration
        (keys, hostname, DNS) only follows a define or a start. The template
        and key file are read first so a bad local file fails before anything
        is touched. Everything after the boot is fatal for this step but
        leaves the domain in place.
        """
        h = self.handles.domain
        if h.present and self.backend.is_running(h.ref):
            log.debug(f"{h} already present")
            return
        keys = read_authorized_keys(self.config.authorized_keys)
        template = None if h.present else read_domain_template(self.config.template)

        self.ensure_domain_volume()

        if not h.present:
            xml = render_domain_xml(self.config, template)
            log.debug("domain_xml", xml=xml)
            with log_operation(log, "create", kind=h.kind.value, name=h.name):
                self._define_domain(h, xml)

        dom = h.ref
        if not self.backend.is_running(dom):
            log.info(f"starting domain {h.name!r}")
            self.backend.start_domain(dom)

        poller = GuestReadinessPoller(
            self.backend,
            dom,
            h.name,
            self.config.wait_secs,
            cancel_event=self.cancel_event,
        )
        poller.wait()
        log.debug("guest_ready", domain=h.name, attempts=poller.attempts, elapsed=round(poller.elapsed, 1))

        agent = GuestAgent(self.backend, dom, h.name)
        agent.add_authorized_keys(self.config.username, keys)
        agent.set_hostname(h.name)
        self.sync_dns()

    def _define_domain(self, h: ResourceHandle, xml: str) -> None:
        try:
            dom = self.backend.define_domain(xml)
        except HypervisorError as e:
            if e.kind != ErrorKind.ALREADY_IN_STATE:
                raise
            log.info(f"{h} already defined", error=e.message)
            h.set(self.backend.lookup_domain(h.name))
            return
        h.set(dom)
        self.backend.set_autostart(dom)

    # ── ensure absent ───────────────────────────────────────────────────────

    def _delete_entity(self, h: ResourceHandle) -> None:
        log.info(f"deleting {h}...")
        if not h.present:
            return
        ref = h.ref
        for step, action in (("destroy", self.backend.destroy), ("undefine", self.backend.undefine)):
            try:
                action(ref)
            except HypervisorError as e:
                if e.kind not in TOLERATED_ON_DELETE:
                    log.error(f"{step}_failed", kind=h.kind.value, name=h.name, error=str(e))
                    raise
                log.debug(f"{step}_skipped", kind=h.kind.value, name=h.name, reason=e.kind.value)
        self.backend.free(ref)
        h.mark_absent()
        log.info(f"deleted {h}")

    def _delete_volume(self, h: ResourceHandle) -> None:
        log.info(f"deleting {h}...")
        if not h.present:
            return
        try:
            self.backend.delete_volume(h.ref)
        except HypervisorError as e:
            if e.kind not in TOLERATED_ON_DELETE:
                log.error("delete_failed", kind=h.kind.value, name=h.name, error=str(e))
                raise
            log.debug("delete_skipped", kind=h.kind.value, name=h.name, reason=e.kind.value)
        self.backend.free(h.ref)
        h.mark_absent()
        log.info(f"deleted {h}")

    def delete_network(self) -> None:
        self._delete_entity(self.handles.network)

    def delete_pool(self) -> None:
        self._delete_entity(self.handles.pool)

    def delete_base_volume(self) -> None:
        self._delete_volume(self.handles.base_volume)

    def delete_domain_volume(self) -> None:
        self._delete_volume(self.handles.domain_volume)

    def delete_domain(self) -> None:
        """Delete the domain, then its writable volume."""
        self._delete_entity(self.handles.domain)
        self._delete_volume(self.handles.domain_volume)

    def delete_pool_volumes(self) -> List[str]:
        """Delete every volume in the pool and return the deleted names."""
        h = self.handles.pool
        if not h.present:
            log.info(f"{h} is absent, no volumes to delete")
            return []
        deleted: List[str] = []
        failures: Failures = []
        for vol in self.backend.list_volumes(h.ref):
            try:
                name = self.backend.volume_name(vol)
                log.info(f"deleting volume {name!r}...")
                try:
                    self.backend.delete_volume(vol)
                except HypervisorError as e:
                    if e.kind not in TOLERATED_ON_DELETE:
                        log.error("volume_delete_failed", name=name, error=str(e))
                        failures.append((name, e))
                        continue
                deleted.append(name)
                log.info(f"deleted volume {name!r}")
            finally:
                self.backend.free(vol)

        for handle in (self.handles.base_volume, self.handles.domain_volume):
            if handle.present and handle.name in deleted:
                self.backend.free(handle.ref)
                handle.mark_absent()
        if failures:
            raise VolumeSweepError(failures)
        return deleted

    # ── batches ─────────────────────────────────────────────────────────────

    def _run_batch(self, steps: List[Tuple[str, Callable[[], None]]]) -> Failures:
        failures: Failures = []
        for label, step in steps:
            if self.cancel_event.is_set():
                raise OperationCancelled(f"cancelled before {label} step")
            try:
                step()
            except OperationCancelled:
                raise
            except LibvirtDevError as e:
                log.error(f"{label} failed", error=str(e), error_kind=e.kind.value)
                failures.append((label, e))
        return failures

    def ensure_all(self) -> Failures:
        """Create everything in dependency order, continuing past failures."""
        return self._run_batch(
            [
                ("network", self.ensure_network),
                ("pool", self.ensure_pool),
                ("base volume", self.ensure_base_volume),
                ("domain volume", self.ensure_domain_volume),
                ("domain", self.ensure_domain),
            ]
        )

    def delete_all(self) -> Failures:
        """Delete everything in reverse dependency order, continuing past failures."""
        return self._run_batch(
            [
                ("domain", self.delete_domain),
                ("base volume", self.delete_base_volume),
                ("pool", self.delete_pool),
                ("network", self.delete_network),
            ]
        )

    # ── network services ────────────────────────────────────────────────────

    def sync_dns(self):
        net = self.handles.network.require()
        return sync_domain_names_to_network_dns(
            self.backend,
            net,
            ifname=self.config.domain_ifname,
            aliases=self.config.net_dns_hostnames,
        )

    def routes(self) -> List[str]:
        return get_routes(self.config, self.backend, self.handles.network.ref)

    def add_routes(self) -> None:
        self._modify_routes("add")

    def delete_routes(self) -> None:
        self._modify_routes("del")

    def _modify_routes(self, action: str) -> None:
        if self.runner is None:
            raise LibvirtDevError("no process runner configured for route changes")
        routes = self.routes()
        log.info(f"{action} routes {routes}...")
        modify_routes(self.runner, self.config.sudo, action, routes)

    def domain_address(self) -> str:
        """IPv4 address of the managed domain, for SSH and rsync."""
        h = self.handles.domain
        dom = h.require()
        addr = resolve_domain_address(self.backend, dom, self.config.domain_ifname)
        if addr is None:
            raise LibvirtDevError(f"domain interfaces not found for {h.name!r}")
        return addr

    def restart_all_domains(self) -> None:
        """Restart the network, then force-boot every persistent or running domain."""
        net = self.handles.network.require()
        doms = self.backend.list_domains()
        log.info(f"restarting network {self.config.net!r}...")
        try:
            self.backend.destroy(net)
        except HypervisorError as e:
            if e.kind != ErrorKind.OPERATION_INVALID:
                raise
        self.backend.start_network(net)
        log.info(f"restarted network {self.config.net!r}")

        failures: Failures = []
        for dom in doms:
            try:
                name = self.backend.domain_name(dom)
                log.info(f"restarting domain {name!r}...")
                try:
                    self._restart_domain(dom)
                except HypervisorError as e:
                    log.error("domain_restart_failed", domain=name, error=str(e))
                    failures.append((name, e))
                    continue
                log.info(f"restarted domain {name!r}")
            finally:
                self.backend.free(dom)
        if failures:
            raise DomainRestartError(failures)

    def _restart_domain(self, dom: Handle) -> None:
        try:
            self.backend.destroy(dom)
        except HypervisorError as e:
            # not running
            if e.kind != ErrorKind.OPERATION_INVALID:
                raise
        self.backend.start_domain(dom)
