"""
QEMU guest agent commands over the hypervisor's agent channel.

Requests are ``{"execute": <command>, "arguments": {...}}`` envelopes and
replies are ``{"return": <value>}``.
"""

import base64
import json
from typing import Any, List

from libvirtdev.errors import GuestAgentProtocolError, HypervisorError
from libvirtdev.interfaces.hypervisor import Handle, HypervisorBackend
from libvirtdev.logging import get_logger

log = get_logger(__name__)

# libvirt's VIR_DOMAIN_QEMU_AGENT_COMMAND_DEFAULT
AGENT_TIMEOUT_DEFAULT = -1


def build_request(command: str, *arguments: Any) -> str:
    """Encode *command* and a flat ``key, value, key, value`` argument list.

    >>> build_request("guest-ping")
    '{"execute": "guest-ping"}'
    """
    if len(arguments) % 2:
        raise ValueError(
            f"{command}: arguments must be key/value pairs, got {len(arguments)} items"
        )
    request = {"execute": command}
    if arguments:
        pairs = {}
        for key, value in zip(arguments[::2], arguments[1::2]):
            if not isinstance(key, str):
                raise TypeError(f"{command}: argument key {key!r} is not a string")
            pairs[key] = value
        request["arguments"] = pairs
    return json.dumps(request)


def parse_response(raw: str) -> Any:
    """Return the opaque ``return`` value of an agent reply."""
    try:
        reply = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise GuestAgentProtocolError(f"invalid guest agent reply {raw!r}: {e}") from e
    if not isinstance(reply, dict):
        raise GuestAgentProtocolError(f"guest agent reply is not an object: {raw!r}")
    return reply.get("return")


class GuestAgent:
    """Guest agent commands for one domain."""

    def __init__(self, backend: HypervisorBackend, domain: Handle, name: str):
        self.backend = backend
        self.domain = domain
        self.name = name

    def execute(self, command: str, *arguments: Any, timeout: int = AGENT_TIMEOUT_DEFAULT) -> Any:
        request = build_request(command, *arguments)
        log.debug("agent_command", domain=self.name, command=command)
        raw = self.backend.agent_command(self.domain, request, timeout)
        return parse_response(raw)

    def ping(self, timeout: int) -> None:
        self.execute("guest-ping", timeout=timeout)

    def add_authorized_keys(self, username: str, keys: List[str]) -> None:
        log.info(f"setting authorized keys for {username!r} on {self.name!r}")
        self.execute(
            "guest-ssh-add-authorized-keys",
            "username", username,
            "keys", list(keys),
            "reset", False,
        )

    def set_hostname(self, hostname: str) -> None:
        """Write *hostname* to /etc/hostname in the guest."""
        log.info(f"setting hostname for {self.name!r}")
        handle = self.execute("guest-file-open", "path", "/etc/hostname", "mode", "w")
        data = hostname.encode()
        try:
            self.execute(
                "guest-file-write",
                "handle", handle,
                "buf-b64", base64.b64encode(data).decode("ascii"),
                "count", len(data),
            )
        except HypervisorError:
            self._close(handle, quiet=True)
            raise
        self._close(handle, quiet=False)

    def _close(self, handle: Any, quiet: bool) -> None:
        try:
            self.execute("guest-file-close", "handle", handle)
        except HypervisorError as e:
            log.warning("guest_file_close_failed", domain=self.name, path="/etc/hostname", error=str(e))
            if not quiet:
                raise
