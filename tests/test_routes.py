#!/usr/bin/env python3
"""Tests for local route management."""

from ipaddress import IPv4Network

import pytest

from libvirtdev.errors import InvalidAddress, LibvirtDevError, RouteError
from libvirtdev.orchestrator import ResourceOrchestrator, network_xml
from libvirtdev.routes import get_routes, hypervisor_host, modify_routes, network_prefix, route_command

from conftest import FakeRunner


class TestModifyRoutes:
    def test_commands(self, runner):
        modify_routes(runner, "sudo", "add", ["10.50.0.0/24 via 192.168.1.10", "10.60.0.0/24 via 192.168.1.10"])
        assert runner.commands == [
            "sudo ip route add 10.50.0.0/24 via 192.168.1.10",
            "sudo ip route add 10.60.0.0/24 via 192.168.1.10",
        ]

    def test_no_sudo(self):
        assert route_command("", "del", "10.50.0.0/24 via 1.2.3.4") == "ip route del 10.50.0.0/24 via 1.2.3.4"

    def test_failures_aggregated_and_others_applied(self):
        runner = FakeRunner(failing=["10.60.0.0/24"])
        routes = ["10.50.0.0/24 via 1.2.3.4", "10.60.0.0/24 via 1.2.3.4", "10.70.0.0/24 via 1.2.3.4"]
        with pytest.raises(RouteError) as exc:
            modify_routes(runner, "doas", "add", routes)
        assert len(runner.commands) == 3
        assert [item for item, _ in exc.value.failures] == ["add 10.60.0.0/24 via 1.2.3.4"]
        message = str(exc.value)
        assert message.startswith("error modifying routes:")
        assert "File exists" in message

    def test_invalid_action(self, runner):
        with pytest.raises(ValueError):
            modify_routes(runner, "sudo", "replace", ["10.0.0.0/8 via 1.2.3.4"])

    def test_empty_route_list(self, runner):
        modify_routes(runner, "sudo", "add", [])
        assert runner.commands == []


class TestHypervisorHost:
    @pytest.mark.parametrize(
        "connect,hypervisor,expected",
        [
            ("qemu+ssh://root@192.168.1.10/system", "", "192.168.1.10"),
            ("qemu+ssh://root@kvm.lan/system", "192.168.1.20", "192.168.1.20"),
            ("qemu:///system", "192.168.1.30", "192.168.1.30"),
            ("qemu:///system", "", ""),
        ],
    )
    def test_host(self, config, connect, hypervisor, expected):
        config = config.model_copy(update={"connect": connect, "hypervisor": hypervisor})
        assert hypervisor_host(config) == expected


class TestGetRoutes:
    @pytest.fixture
    def remote(self, config):
        return config.model_copy(
            update={
                "connect": "qemu+ssh://root@192.168.1.10/system",
                "routes": ["10.60.0.0/24 via 192.168.1.10"],
            }
        )

    def test_network_prefix(self, backend, config):
        net = backend.add_network("devnet", network_xml(config))
        assert network_prefix(backend, net) == IPv4Network("10.50.0.0/24")

    def test_network_without_ip(self, backend, config):
        net = backend.add_network("devnet", "<network><name>devnet</name></network>")
        with pytest.raises(InvalidAddress):
            network_prefix(backend, net)

    def test_derived_route_appended(self, backend, remote):
        net = backend.add_network("devnet", network_xml(remote))
        assert get_routes(remote, backend, net) == [
            "10.60.0.0/24 via 192.168.1.10",
            "10.50.0.0/24 via 192.168.1.10",
        ]

    def test_absent_network_gives_configured_routes(self, backend, remote):
        assert get_routes(remote, backend, None) == ["10.60.0.0/24 via 192.168.1.10"]

    def test_config_routes_not_mutated(self, backend, remote):
        net = backend.add_network("devnet", network_xml(remote))
        get_routes(remote, backend, net)
        assert remote.routes == ["10.60.0.0/24 via 192.168.1.10"]

    def test_orchestrator_add_and_delete(self, backend, remote, runner):
        backend.add_network("devnet", network_xml(remote))
        orch = ResourceOrchestrator(remote, backend, runner=runner)
        orch.load()
        orch.add_routes()
        orch.delete_routes()
        assert runner.commands == [
            "sudo ip route add 10.60.0.0/24 via 192.168.1.10",
            "sudo ip route add 10.50.0.0/24 via 192.168.1.10",
            "sudo ip route del 10.60.0.0/24 via 192.168.1.10",
            "sudo ip route del 10.50.0.0/24 via 192.168.1.10",
        ]

    def test_orchestrator_needs_runner(self, backend, remote):
        orch = ResourceOrchestrator(remote, backend)
        orch.load()
        with pytest.raises(LibvirtDevError):
            orch.add_routes()
