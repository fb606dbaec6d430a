#!/usr/bin/env python3
"""
Argument parser and entry point for libvirtdev CLI.
"""

import argparse
import signal
import sys
import threading
from typing import Any, Dict, List, Optional

from libvirtdev import __version__
from libvirtdev.backends.libvirt_backend import LibvirtBackend
from libvirtdev.backends.subprocess_runner import SubprocessRunner
from libvirtdev.cli.commands import (
    cmd_addall,
    cmd_addbasevol,
    cmd_adddom,
    cmd_adddomvol,
    cmd_addnet,
    cmd_addpool,
    cmd_addroutes,
    cmd_connect,
    cmd_delall,
    cmd_delbasevol,
    cmd_deldom,
    cmd_deldomvol,
    cmd_delnet,
    cmd_delpool,
    cmd_delroutes,
    cmd_restartall,
    cmd_sshconfig,
    cmd_syncdns,
)
from libvirtdev.cli.utils import DEFAULT_CONFIG_FILE, console, print_error, resource_table
from libvirtdev.errors import LibvirtDevError, OperationCancelled
from libvirtdev.logging import configure_logging, get_logger
from libvirtdev.models import DevVMConfig
from libvirtdev.orchestrator import ResourceOrchestrator

log = get_logger(__name__)

CANCEL_SIGNALS = (signal.SIGINT, signal.SIGTERM)

ACTIONS = [
    ("--addall", cmd_addall, "Create storage, network, and domain"),
    ("--delall", cmd_delall, "Delete all storage, network, and domain"),
    ("--adddom", cmd_adddom, "Create domain"),
    ("--deldom", cmd_deldom, "Delete domain"),
    ("--addnet", cmd_addnet, "Create network"),
    ("--delnet", cmd_delnet, "Delete network"),
    ("--addpool", cmd_addpool, "Create storage pool"),
    ("--delpool", cmd_delpool, "Delete storage pool"),
    ("--addbasevol", cmd_addbasevol, "Create base volume"),
    ("--delbasevol", cmd_delbasevol, "Delete base volume"),
    ("--adddomvol", cmd_adddomvol, "Create domain volume"),
    ("--deldomvol", cmd_deldomvol, "Delete domain volume"),
    ("--addroutes", cmd_addroutes, "Add local routes to the network"),
    ("--delroutes", cmd_delroutes, "Delete local routes to the network"),
    ("--syncdns", cmd_syncdns, "Sync DNS between domains and network"),
    ("--restartall", cmd_restartall, "Restart the network and every domain"),
]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="libvirtdev",
        description="Provision a dev VM with its own network and storage on libvirt",
    )
    parser.add_argument("--version", action="version", version=f"libvirtdev {__version__}")

    actions = parser.add_mutually_exclusive_group()
    for flag, func, help_text in ACTIONS:
        actions.add_argument(flag, dest="func", action="store_const", const=func, help=help_text)
    actions.add_argument(
        "--sshconfig",
        metavar="FILE",
        help="Print FILE with a Host block for the domain added or replaced",
    )
    parser.set_defaults(func=None)

    parser.add_argument(
        "--delpoolvols",
        action="store_true",
        help="With --delpool, delete all volumes in the pool first",
    )
    parser.add_argument(
        "-c",
        "--config",
        default=DEFAULT_CONFIG_FILE,
        help=f"Config file, JSON or YAML (default: {DEFAULT_CONFIG_FILE})",
    )
    parser.add_argument("-n", "--name", help="libvirt domain name (VM name)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument(
        "--sync",
        metavar="DIR",
        help="rsync DIR to the domain's remote_dir instead of opening ssh",
    )
    parser.add_argument("--json-logs", action="store_true", help="Log as JSON lines")
    return parser


def resolve_command(args):
    if args.func is not None:
        return args.func
    if args.sshconfig:
        return cmd_sshconfig
    return cmd_connect


def install_cancel_handlers(event: threading.Event) -> Dict[int, Any]:
    """Route SIGINT/SIGTERM to *event*; returns the handlers to restore.

    A second signal while the event is already set raises KeyboardInterrupt.
    """

    def cancel(signum, frame):
        if event.is_set():
            raise KeyboardInterrupt
        log.info("cancel_requested", signal=signal.Signals(signum).name)
        event.set()

    return {signum: signal.signal(signum, cancel) for signum in CANCEL_SIGNALS}


def restore_handlers(previous: Dict[int, Any]) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(level="DEBUG" if args.verbose else "INFO", json_output=args.json_logs)

    if args.delpoolvols and args.func is not cmd_delpool:
        parser.error("--delpoolvols requires --delpool")

    try:
        config = DevVMConfig.load(args.config, name=args.name)
        if args.verbose:
            config = config.model_copy(update={"verbose": True})
    except LibvirtDevError as e:
        print_error(str(e))
        return 2

    command = resolve_command(args)
    orch = ResourceOrchestrator(config, LibvirtBackend(config.connect), runner=SubprocessRunner())
    previous = install_cancel_handlers(orch.cancel_event)
    try:
        with orch:
            if config.verbose:
                console.print(resource_table(orch.summary(), title=f"Domain '{config.name}'"))
            return command(orch, args)
    except OperationCancelled as e:
        console.print(f"\n[yellow]Interrupted.[/] [dim]{e}[/]")
        return 130
    except ImportError as e:
        print_error(str(e))
        return 1
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/]")
        return 130
    except LibvirtDevError as e:
        log.error("command_failed", command=command.__name__, error_kind=e.kind.value)
        print_error(str(e))
        return 1
    finally:
        restore_handlers(previous)


if __name__ == "__main__":
    sys.exit(main())
