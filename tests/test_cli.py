#!/usr/bin/env python3
"""Tests for the libvirtdev command line."""

import os
import signal
import threading
from unittest.mock import patch

import pytest
import yaml

from libvirtdev.cli import build_parser, main
from libvirtdev.cli.commands import cmd_addall, cmd_connect, cmd_delpool, cmd_sshconfig
from libvirtdev.cli.parsers import install_cancel_handlers, resolve_command, restore_handlers
from libvirtdev.errors import ErrorCode, HypervisorError
from libvirtdev.interfaces.hypervisor import GuestInterface

from conftest import FakeHypervisor, FakeRunner


class TestParser:
    def test_default_is_connect(self):
        args = build_parser().parse_args([])
        assert resolve_command(args) is cmd_connect
        assert args.config == "libvirtdev.yaml"

    def test_action_flag(self):
        args = build_parser().parse_args(["--addall", "-n", "scratch"])
        assert resolve_command(args) is cmd_addall
        assert args.name == "scratch"

    def test_sshconfig(self):
        args = build_parser().parse_args(["--sshconfig", "~/.ssh/config"])
        assert resolve_command(args) is cmd_sshconfig

    def test_actions_are_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--addall", "--delall"])
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--adddom", "--sshconfig", "x"])

    def test_delpoolvols_flag(self):
        args = build_parser().parse_args(["--delpool", "--delpoolvols"])
        assert args.func is cmd_delpool
        assert args.delpoolvols


class TestMain:
    @pytest.fixture
    def config_file(self, tmp_path, vm_files):
        path = tmp_path / "libvirtdev.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "name": "devbox",
                    "template": str(vm_files["template"]),
                    "base_disk": str(vm_files["base_disk"]),
                    "authorized_keys": str(vm_files["authorized_keys"]),
                    "net_dns": "1.1.1.1",
                    "wait_secs": 0,
                }
            )
        )
        return path

    @pytest.fixture
    def fake(self):
        backend = FakeHypervisor()
        runner = FakeRunner()
        with patch("libvirtdev.cli.parsers.LibvirtBackend", return_value=backend), patch(
            "libvirtdev.cli.parsers.SubprocessRunner", return_value=runner
        ):
            yield backend, runner

    def test_missing_config(self, tmp_path, fake):
        assert main(["-c", str(tmp_path / "none.yaml"), "--addnet"]) == 2

    def test_delpoolvols_requires_delpool(self, config_file, fake):
        with pytest.raises(SystemExit) as exc:
            main(["-c", str(config_file), "--delpoolvols"])
        assert exc.value.code == 2

    def test_addnet(self, config_file, fake):
        backend, _runner = fake
        assert main(["-c", str(config_file), "--addnet"]) == 0
        assert backend.networks["devnet"].active
        assert ("disconnect", "") in backend.calls

    def test_addall_then_delall(self, config_file, fake):
        backend, _runner = fake
        assert main(["-c", str(config_file), "--addall"]) == 0
        assert backend.domains["devbox"].active
        assert ("devpool", "devbox.img") in backend.volumes
        assert main(["-c", str(config_file), "--delall"]) == 0
        assert backend.domains == {}
        assert backend.networks == {}
        assert backend.pools == {}

    def test_name_override(self, config_file, fake):
        backend, _runner = fake
        assert main(["-c", str(config_file), "-n", "scratch", "--addall"]) == 0
        assert "scratch" in backend.domains
        assert ("devpool", "scratch.img") in backend.volumes

    def test_batch_failure_exit_status(self, config_file, fake):
        backend, _runner = fake
        backend.fail("define_network", "devnet", 1, "internal error", times=None)
        assert main(["-c", str(config_file), "--addall"]) == 1

    def test_single_step_error(self, config_file, fake):
        backend, _runner = fake
        backend.add_network("devnet", "<network><name>devnet</name></network>")
        assert main(["-c", str(config_file), "--syncdns"]) == 1

    def test_delete_absent_is_success(self, config_file, fake):
        assert main(["-c", str(config_file), "--deldom"]) == 0

    def test_delpool_with_volumes(self, config_file, fake):
        backend, _runner = fake
        backend.add_pool("devpool")
        backend.add_volume("devpool", "debian-12.qcow2")
        backend.add_volume("devpool", "other.img")
        assert main(["-c", str(config_file), "--delpool", "--delpoolvols"]) == 0
        assert backend.volumes == {}
        assert "devpool" not in backend.pools

    def test_sshconfig(self, config_file, fake, tmp_path, capsys):
        backend, _runner = fake
        backend.add_domain("devbox")
        backend.interfaces["devbox"] = [GuestInterface("eth0", ipv4=["10.50.0.17"])]
        ssh_config = tmp_path / "ssh_config"
        ssh_config.write_text("Host github.com\n    User git\n")
        assert main(["-c", str(config_file), "--sshconfig", str(ssh_config)]) == 0
        out = capsys.readouterr().out
        assert "Host devbox\n    Hostname 10.50.0.17\n    User root\n" in out
        assert "Host github.com" in out

    def test_connect(self, config_file, fake):
        backend, runner = fake
        backend.add_domain("devbox")
        backend.interfaces["devbox"] = [GuestInterface("eth0", ipv4=["10.50.0.17"])]
        assert main(["-c", str(config_file)]) == 0
        assert runner.commands == [
            "ssh -oStrictHostKeyChecking=no -oUserKnownHostsFile=/dev/null root@10.50.0.17"
        ]

    def test_connect_without_address(self, config_file, fake):
        backend, _runner = fake
        backend.add_domain("devbox")
        assert main(["-c", str(config_file)]) == 1

    def test_addroutes(self, config_file, fake):
        backend, runner = fake
        config_file.write_text(
            config_file.read_text()
            + "connect: qemu+ssh://root@192.168.1.10/system\n"
        )
        backend.add_network("devnet", "<network><name>devnet</name><ip address='10.50.0.1' netmask='255.255.255.0'/></network>")
        assert main(["-c", str(config_file), "--addroutes"]) == 0
        assert runner.commands == ["sudo ip route add 10.50.0.0/24 via 192.168.1.10"]

    def test_sigterm_during_boot_wait(self, config_file, fake):
        backend, _runner = fake
        config = yaml.safe_load(config_file.read_text())
        config["wait_secs"] = 60
        config_file.write_text(yaml.safe_dump(config))

        def ping(request):
            os.kill(os.getpid(), signal.SIGTERM)
            raise HypervisorError(
                ErrorCode.AGENT_UNRESPONSIVE,
                "agent not responding",
                operation="agent command",
                target="devbox",
            )

        backend.agent_handlers["guest-ping"] = ping
        before = signal.getsignal(signal.SIGTERM)
        assert main(["-c", str(config_file), "--addall"]) == 130
        assert ("disconnect", "") in backend.calls
        assert signal.getsignal(signal.SIGTERM) is before
        assert {req["execute"] for _name, req, _t in backend.agent_log} == {"guest-ping"}

    def test_cancel_handlers(self):
        event = threading.Event()
        previous = install_cancel_handlers(event)
        try:
            os.kill(os.getpid(), signal.SIGINT)
            assert event.is_set()
            with pytest.raises(KeyboardInterrupt):
                os.kill(os.getpid(), signal.SIGINT)
        finally:
            restore_handlers(previous)
        assert signal.getsignal(signal.SIGINT) is previous[signal.SIGINT]
