#!/usr/bin/env python3
"""
Resource and session commands for libvirtdev CLI.

Every command takes the loaded orchestrator and the parsed arguments and
returns the process exit status.
"""

import sys
from pathlib import Path

from libvirtdev.backends.subprocess_runner import SubprocessRunner
from libvirtdev.cli.utils import console, print_error, print_failures, upload_progress
from libvirtdev.errors import ConfigurationError, VolumeSweepError
from libvirtdev.orchestrator import ResourceOrchestrator
from libvirtdev.session import InteractiveSession
from libvirtdev.ssh import build_rsync_command, build_ssh_command, render_ssh_config, to_shell


def cmd_addall(orch: ResourceOrchestrator, args) -> int:
    """Create network, pool, volumes and domain."""
    with upload_progress() as report:
        orch.upload_progress = report
        failures = orch.ensure_all()
    print_failures("addall", failures)
    return 1 if failures else 0


def cmd_delall(orch: ResourceOrchestrator, args) -> int:
    """Delete domain, volumes, pool and network."""
    failures = orch.delete_all()
    print_failures("delall", failures)
    return 1 if failures else 0


def cmd_adddom(orch: ResourceOrchestrator, args) -> int:
    orch.ensure_domain()
    console.print(f"[green]✅ Domain '{orch.config.name}' is running[/]")
    return 0


def cmd_deldom(orch: ResourceOrchestrator, args) -> int:
    orch.delete_domain()
    console.print(f"[green]✅ Domain '{orch.config.name}' deleted[/]")
    return 0


def cmd_addnet(orch: ResourceOrchestrator, args) -> int:
    orch.ensure_network()
    console.print(f"[green]✅ Network '{orch.config.net}' ready[/]")
    return 0


def cmd_delnet(orch: ResourceOrchestrator, args) -> int:
    orch.delete_network()
    console.print(f"[green]✅ Network '{orch.config.net}' deleted[/]")
    return 0


def cmd_addpool(orch: ResourceOrchestrator, args) -> int:
    orch.ensure_pool()
    console.print(f"[green]✅ Pool '{orch.config.pool}' ready[/]")
    return 0


def cmd_delpool(orch: ResourceOrchestrator, args) -> int:
    """Delete the pool, optionally sweeping its volumes first."""
    if args.delpoolvols:
        try:
            deleted = orch.delete_pool_volumes()
        except VolumeSweepError as e:
            # the pool cannot be removed while volumes remain
            print_error(str(e))
            return 1
        console.print(f"[dim]Deleted {len(deleted)} volume(s)[/]")
    orch.delete_pool()
    console.print(f"[green]✅ Pool '{orch.config.pool}' deleted[/]")
    return 0


def cmd_addbasevol(orch: ResourceOrchestrator, args) -> int:
    with upload_progress() as report:
        orch.upload_progress = report
        orch.ensure_base_volume()
    console.print(f"[green]✅ Base volume '{orch.config.base_volume}' ready[/]")
    return 0


def cmd_delbasevol(orch: ResourceOrchestrator, args) -> int:
    orch.delete_base_volume()
    console.print(f"[green]✅ Base volume '{orch.config.base_volume}' deleted[/]")
    return 0


def cmd_adddomvol(orch: ResourceOrchestrator, args) -> int:
    orch.ensure_domain_volume()
    console.print(f"[green]✅ Domain volume '{orch.config.disk}' ready[/]")
    return 0


def cmd_deldomvol(orch: ResourceOrchestrator, args) -> int:
    orch.delete_domain_volume()
    console.print(f"[green]✅ Domain volume '{orch.config.disk}' deleted[/]")
    return 0


def cmd_addroutes(orch: ResourceOrchestrator, args) -> int:
    orch.add_routes()
    console.print("[green]✅ Routes added[/]")
    return 0


def cmd_delroutes(orch: ResourceOrchestrator, args) -> int:
    orch.delete_routes()
    console.print("[green]✅ Routes deleted[/]")
    return 0


def cmd_syncdns(orch: ResourceOrchestrator, args) -> int:
    entries = orch.sync_dns()
    for name, addr in entries.items():
        console.print(f"  [cyan]{name}[/] → {addr}")
    console.print(f"[green]✅ {len(entries)} DNS host entr{'y' if len(entries) == 1 else 'ies'} written[/]")
    return 0


def cmd_restartall(orch: ResourceOrchestrator, args) -> int:
    orch.restart_all_domains()
    console.print("[green]✅ Network and domains restarted[/]")
    return 0


def cmd_sshconfig(orch: ResourceOrchestrator, args) -> int:
    """Print the ssh config file with this domain's Host block updated."""
    path = Path(args.sshconfig).expanduser()
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigurationError(f"cannot read ssh config {path}: {e}") from e
    addr = orch.domain_address()
    sys.stdout.write(render_ssh_config(text, orch.config.name, orch.config.username, addr))
    return 0


def cmd_connect(orch: ResourceOrchestrator, args) -> int:
    """Default action: ssh into the domain, or rsync a directory to it."""
    config = orch.config
    addr = orch.domain_address()
    user_host = f"{config.username}@{addr}"
    if args.sync:
        command = build_rsync_command(
            args.sync,
            user_host,
            remote_dir=config.remote_dir,
            options=config.rsync_options,
            verbose=config.verbose,
        )
        console.print(f"[cyan]Syncing '{args.sync}' to domain '{config.name}' at {user_host}[/]")
    else:
        command = build_ssh_command(user_host, verbose=config.verbose)
        console.print(f"[cyan]Connecting to domain '{config.name}' at {user_host}[/]")
    session = InteractiveSession(orch.runner or SubprocessRunner(), to_shell(command), done=orch.cancel_event)
    return session.run()
