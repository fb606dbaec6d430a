#!/usr/bin/env python3
"""
Shared utilities for libvirtdev CLI.
"""

from contextlib import contextmanager
from typing import Iterator, List, Optional, Tuple

from rich.console import Console
from rich.markup import escape
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from libvirtdev.volumes import ProgressCallback

console = Console()
DEFAULT_CONFIG_FILE = "libvirtdev.yaml"


@contextmanager
def upload_progress(description: str = "Uploading base volume") -> Iterator[ProgressCallback]:
    """Yield a ``(transferred, total)`` callback that drives a rich progress bar."""
    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        DownloadColumn(binary_units=True),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task(description, total=None)

        def report(transferred: int, total: int) -> None:
            progress.update(task, completed=transferred, total=total)

        yield report


def print_error(message: str) -> None:
    console.print(f"[red]❌ {escape(message)}[/]")


def print_failures(action: str, failures: List[Tuple[str, Exception]]) -> None:
    if not failures:
        console.print(f"[green]✅ {action} complete[/]")
        return
    console.print(f"[yellow]⚠️  {action} finished with {len(failures)} failed step(s):[/]")
    for step, err in failures:
        console.print(f"  [red]{escape(step)}[/]: {escape(str(err))}")


def resource_table(rows: List[Tuple[str, str, bool]], title: Optional[str] = None) -> Table:
    table = Table(title=title)
    table.add_column("Resource", style="cyan")
    table.add_column("Name")
    table.add_column("Present")
    for kind, name, present in rows:
        table.add_row(kind, name, "[green]yes[/]" if present else "[dim]no[/]")
    return table
