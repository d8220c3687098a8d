"""Listener port allocation for slapdctl instances."""
from __future__ import annotations

import re
import socket
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

from packaging.version import InvalidVersion, Version

from .config import PortsConfig
from .layout import InstanceIdentity, InstancePaths
from .state import InstanceState

PortProbe = Callable[[int], bool]

_VERSION_PATTERN = re.compile(r"(\d+)\.(\d+)")


class PortAllocationError(RuntimeError):
    """Raised when listener ports cannot be determined."""


@dataclass(frozen=True)
class PortAssignment:
    """Ports and local socket chosen for an instance."""

    ldap_port: int
    ldaps_port: int
    ldapi_socket: Path
    alternate: bool = False

    @property
    def ldap_uri(self) -> str:
        """Return the plaintext listener URI."""
        return f"ldap://localhost:{self.ldap_port}"

    @property
    def ldaps_uri(self) -> str:
        """Return the TLS listener URI."""
        return f"ldaps://localhost:{self.ldaps_port}"

    @property
    def ldapi_url(self) -> str:
        """Return the percent-encoded ldapi URI for the local socket."""
        return ldapi_url(self.ldapi_socket)

    @property
    def listener_urls(self) -> str:
        """Return the space separated ``-h`` argument passed to slapd."""
        return f"{self.ldap_uri} {self.ldaps_uri} {self.ldapi_url}"


def ldapi_url(socket_path: Path) -> str:
    """Return ``ldapi://`` followed by *socket_path* with ``/`` as ``%2F``."""
    return "ldapi://" + quote(str(socket_path), safe="")


def is_port_in_use(port: int, host: str = "127.0.0.1", timeout: float = 0.5) -> bool:
    """Return ``True`` when something accepts TCP connections on *port*."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        try:
            return sock.connect_ex((host, port)) == 0
        except OSError:
            return False


def version_offset(software_version: str, config: PortsConfig) -> int:
    """Return the alternate-port offset for the major.minor in *software_version*."""
    match = _VERSION_PATTERN.search(software_version)
    if match is None:
        return config.default_offset
    try:
        parsed = Version(match.group(0))
    except InvalidVersion:  # pragma: no cover - the pattern only yields valid versions
        return config.default_offset
    key = f"{parsed.major}.{parsed.minor}"
    return config.offsets.get(key, config.default_offset)


@dataclass(slots=True)
class PortAllocator:
    """Choose listener ports, preferring the protocol's well-known ports.

    The decision depends only on its inputs: the identity, the first
    registered instance on the host, the instance's own recorded state, and
    the occupancy reported by *probe*.
    """

    config: PortsConfig
    probe: PortProbe = is_port_in_use

    def allocate(
        self,
        identity: InstanceIdentity,
        paths: InstancePaths,
        *,
        first_instance: str | None,
        own_state: InstanceState | None = None,
        own_running: bool = False,
    ) -> PortAssignment:
        """Return the port assignment for *identity*."""
        if own_running and own_state is not None:
            # A live daemon keeps whatever it was started with.
            return PortAssignment(
                ldap_port=own_state.ldap_port,
                ldaps_port=own_state.ldaps_port,
                ldapi_socket=paths.ldapi_socket,
                alternate=own_state.ldap_port != self.config.ldap,
            )

        is_first = first_instance is None or first_instance == identity.name
        if not is_first and self.probe(self.config.ldap):
            offset = version_offset(identity.software_version, self.config)
            ldap_port = self.config.alternate_ldap_base + offset
            ldaps_port = self.config.alternate_ldaps_base + offset
            if ldap_port > 65535 or ldaps_port > 65535:
                raise PortAllocationError(
                    f"Alternate ports {ldap_port}/{ldaps_port} exceed the valid range."
                )
            return PortAssignment(
                ldap_port=ldap_port,
                ldaps_port=ldaps_port,
                ldapi_socket=paths.ldapi_socket,
                alternate=True,
            )

        return PortAssignment(
            ldap_port=self.config.ldap,
            ldaps_port=self.config.ldaps,
            ldapi_socket=paths.ldapi_socket,
            alternate=False,
        )


__all__ = [
    "PortAllocationError",
    "PortAllocator",
    "PortAssignment",
    "is_port_in_use",
    "ldapi_url",
    "version_offset",
]
