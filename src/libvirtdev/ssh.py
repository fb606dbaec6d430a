"""
SSH and rsync helpers for reaching the dev VM.

Builds the ssh/rsync command lines used by the interactive session and
renders ``Host`` blocks for ``~/.ssh/config``.
"""

import re
import shlex
from typing import List, Optional

# ── default SSH flags ────────────────────────────────────────────────────────

SSH_OPTIONS: List[str] = [
    "-oStrictHostKeyChecking=no",
    "-oUserKnownHostsFile=/dev/null",
]

RSYNC_OPTIONS: List[str] = ["-a"]

_SPACE = re.compile(r"\s+")


# ── command builders ─────────────────────────────────────────────────────────

def build_ssh_command(user_host: str, verbose: bool = False) -> List[str]:
    """ssh argv for an interactive login.

    >>> build_ssh_command("root@10.50.0.2")
    ['ssh', '-oStrictHostKeyChecking=no', '-oUserKnownHostsFile=/dev/null', 'root@10.50.0.2']
    """
    cmd = ["ssh"] + list(SSH_OPTIONS)
    if verbose:
        cmd.append("-v")
    cmd.append(user_host)
    return cmd


def build_rsync_command(
    local_dir: str,
    user_host: str,
    remote_dir: str = "",
    options: Optional[List[str]] = None,
    verbose: bool = False,
) -> List[str]:
    cmd = ["rsync"]
    if verbose:
        cmd.extend(["-v", "--progress"])
    cmd.extend(RSYNC_OPTIONS)
    cmd.extend(options or [])
    cmd.append("--rsh=" + " ".join(["ssh"] + SSH_OPTIONS))
    cmd.extend([local_dir, f"{user_host}:{remote_dir}"])
    return cmd


def to_shell(cmd: List[str]) -> str:
    return shlex.join(cmd)


# ── ssh_config ───────────────────────────────────────────────────────────────

def _parse_line(line: str):
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return "", ""
    parts = _SPACE.split(stripped, maxsplit=1)
    key = parts[0]
    value = parts[1].strip() if len(parts) > 1 else ""
    return key, value


def host_block(name: str, user: str, host: str) -> List[str]:
    return [
        f"Host {name}",
        f"    Hostname {host}",
        f"    User {user}",
        "    ForwardAgent yes",
        "    StrictHostKeyChecking no",
        "    UserKnownHostsFile /dev/null",
    ]


def _append_block(out: List[str], block: List[str]) -> None:
    if out and out[-1].strip():
        out.append("")
    out.extend(block)


def render_ssh_config(text: str, name: str, user: str, host: str) -> str:
    """Return *text* with the ``Host <name>`` block replaced, or appended if missing."""
    out: List[str] = []
    block_name = ""
    written = False
    for line in text.splitlines():
        key, value = _parse_line(line)
        if key.lower() in ("host", "match"):
            if block_name == name and out and out[-1].strip():
                out.append("")
            block_name = value
        if block_name == name:
            if not written:
                _append_block(out, host_block(name, user, host))
                written = True
            continue
        out.append(line)
    if not written:
        _append_block(out, host_block(name, user, host))
    return "\n".join(out) + "\n"
