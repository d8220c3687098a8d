"""Explicit per-invocation instance context.

Everything a workflow needs to know about an instance (paths, installation
prefixes, listener ports and directory credentials) travels in one
:class:`InstanceContext`. Components never read process-wide globals.
"""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .config import AppConfig, DirectoryConfig
from .layout import InstanceIdentity, InstancePaths
from .ports import PortAssignment

LIBRARY_PATH_VAR = "LD_LIBRARY_PATH"


@dataclass(frozen=True)
class InstanceContext:
    """Resolved facts about one instance for the current invocation."""

    paths: InstancePaths
    prefix: Path
    crypto_prefix: Path
    ports: PortAssignment
    directory: DirectoryConfig

    @classmethod
    def create(
        cls,
        config: AppConfig,
        paths: InstancePaths,
        ports: PortAssignment,
    ) -> InstanceContext:
        """Build the context from application configuration."""
        identity = paths.identity
        return cls(
            paths=paths,
            prefix=installation_prefix(config, identity),
            crypto_prefix=config.crypto_root / identity.variant_tag,
            ports=ports,
            directory=config.directory,
        )

    @property
    def identity(self) -> InstanceIdentity:
        """Return the instance identity."""
        return self.paths.identity

    @property
    def name(self) -> str:
        """Return the instance name."""
        return self.paths.identity.name

    @property
    def slapd_bin(self) -> Path:
        """Return the daemon executable inside the installation prefix."""
        return self.prefix / "libexec" / "slapd"

    def client_bin(self, tool: str) -> Path:
        """Return the path of a client tool such as ``ldapsearch``."""
        return self.prefix / "bin" / tool

    def server_tool(self, tool: str) -> Path:
        """Return the path of a server tool such as ``slaptest``."""
        return self.prefix / "sbin" / tool

    @property
    def library_path(self) -> str:
        """Return the runtime library directories of slapd and its crypto library."""
        return f"{self.prefix / 'lib64'}:{self.crypto_prefix / 'lib64'}"

    def child_env(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        """Return the environment exported to slapd and the client tools."""
        env = dict(os.environ if base is None else base)
        inherited = env.get(LIBRARY_PATH_VAR, "")
        env[LIBRARY_PATH_VAR] = (
            f"{self.library_path}:{inherited}" if inherited else self.library_path
        )
        env["LDAPCONF"] = str(self.paths.client_config)
        return env

    @property
    def suffix_dc(self) -> str:
        """Return the value of the leading ``dc=`` component of the suffix."""
        first = self.directory.suffix.split(",", 1)[0]
        _, _, value = first.partition("=")
        return value.strip()

    def template_context(self, **extra: object) -> dict[str, object]:
        """Return the variables shared by every generated artifact."""
        paths = self.paths
        context: dict[str, object] = {
            "instance_name": self.name,
            "software_version": self.identity.software_version,
            "variant_tag": self.identity.variant_tag,
            "prefix": str(self.prefix),
            "crypto_prefix": str(self.crypto_prefix),
            "library_path": self.library_path,
            "data_dir": str(paths.data_dir),
            "config_dir": str(paths.config_dir),
            "ssl_dir": str(paths.ssl_dir),
            "run_dir": str(paths.run_dir),
            "certificate": str(paths.certificate),
            "private_key": str(paths.private_key),
            "pid_file": str(paths.pid_file),
            "args_file": str(paths.args_file),
            "client_config": str(paths.client_config),
            "ldap_port": self.ports.ldap_port,
            "ldaps_port": self.ports.ldaps_port,
            "ldap_uri": self.ports.ldap_uri,
            "ldaps_uri": self.ports.ldaps_uri,
            "ldapi_url": self.ports.ldapi_url,
            "ldapi_socket": str(self.ports.ldapi_socket),
            "suffix": self.directory.suffix,
            "suffix_dc": self.suffix_dc,
            "admin_dn": self.directory.admin_dn,
            "admin_password": self.directory.admin_password,
            "config_password": self.directory.config_password,
            "organization": self.directory.organization,
            "sasl_user": self.directory.sasl_user,
            "sasl_password": self.directory.sasl_password,
            "runtime_uid": os.getuid(),
            "runtime_gid": os.getgid(),
        }
        context.update(extra)
        return context


def installation_prefix(config: AppConfig, identity: InstanceIdentity) -> Path:
    """Return where the OpenLDAP build for *identity* is installed."""
    return config.install_root / identity.name


__all__ = ["InstanceContext", "LIBRARY_PATH_VAR", "installation_prefix"]
