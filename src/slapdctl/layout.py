"""Instance identity and on-disk layout.

Every path slapdctl touches for an instance is derived here from the
``(software_version, variant_tag)`` pair and a root directory::

    <root>/data/<instance>/
    <root>/etc/<instance>/{ssl/, slapd-bootstrap.conf, ldap.conf, ldap_env.sh, slapd.d/}
    <root>/run/<instance>/{instance.state, slapd.pid, slapd.args, ldapi}

Resolution is pure: no directories are created and nothing is read.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

VARIANT_PREFIX = "ssl"


class LayoutError(ValueError):
    """Raised when an instance identity cannot be mapped to a layout."""


@dataclass(frozen=True)
class InstanceIdentity:
    """The software version and crypto-library variant of an instance."""

    software_version: str
    variant_tag: str

    @property
    def name(self) -> str:
        """Return the unique instance name, e.g. ``openldap-2.6-ssl30``."""
        return f"{self.software_version}-{self.variant_tag}"


@dataclass(frozen=True)
class InstancePaths:
    """Filesystem paths associated with an instance."""

    identity: InstanceIdentity
    data_dir: Path
    config_dir: Path
    ssl_dir: Path
    run_dir: Path
    state_file: Path

    @property
    def bootstrap_config(self) -> Path:
        """Return the slapd.conf used by the throwaway bootstrap daemon."""
        return self.config_dir / "slapd-bootstrap.conf"

    @property
    def client_config(self) -> Path:
        """Return the client-side ldap.conf path."""
        return self.config_dir / "ldap.conf"

    @property
    def env_script(self) -> Path:
        """Return the sourceable shell environment descriptor."""
        return self.config_dir / "ldap_env.sh"

    @property
    def runtime_config_dir(self) -> Path:
        """Return the cn=config directory loaded by the final daemon."""
        return self.config_dir / "slapd.d"

    @property
    def certificate(self) -> Path:
        """Return the server certificate path."""
        return self.ssl_dir / "server.crt"

    @property
    def private_key(self) -> Path:
        """Return the server private key path."""
        return self.ssl_dir / "server.key"

    @property
    def pid_file(self) -> Path:
        """Return the PID file written by slapd."""
        return self.run_dir / "slapd.pid"

    @property
    def args_file(self) -> Path:
        """Return the args file written by slapd."""
        return self.run_dir / "slapd.args"

    @property
    def ldapi_socket(self) -> Path:
        """Return the ldapi socket path."""
        return self.run_dir / "ldapi"

    def directories(self) -> tuple[Path, ...]:
        """Return the directories that make up the instance tree."""
        return (self.data_dir, self.config_dir, self.ssl_dir, self.run_dir)


def normalize_variant(variant: str) -> str:
    """Return the canonical variant tag; a bare ``30`` becomes ``ssl30``."""
    tag = variant.strip()
    if tag.isdigit():
        return f"{VARIANT_PREFIX}{tag}"
    return tag


def make_identity(software_version: str, variant: str) -> InstanceIdentity:
    """Validate and build an :class:`InstanceIdentity`."""
    version = _validate_component(software_version, "software version")
    tag = _validate_component(normalize_variant(variant), "variant tag")
    return InstanceIdentity(software_version=version, variant_tag=tag)


def resolve(software_version: str, variant_tag: str, root_dir: Path) -> InstancePaths:
    """Map an instance identity onto its isolated directory tree."""
    identity = make_identity(software_version, variant_tag)
    name = identity.name
    config_dir = root_dir / "etc" / name
    run_dir = root_dir / "run" / name
    return InstancePaths(
        identity=identity,
        data_dir=root_dir / "data" / name,
        config_dir=config_dir,
        ssl_dir=config_dir / "ssl",
        run_dir=run_dir,
        state_file=run_dir / "instance.state",
    )


def _validate_component(value: str, label: str) -> str:
    text = value.strip() if isinstance(value, str) else ""
    if not text:
        raise LayoutError(f"The {label} must be a non-empty string.")
    if "/" in text or "\\" in text or text in {".", ".."} or ".." in text.split("-"):
        raise LayoutError(f"The {label} {value!r} must not contain path separators.")
    if any(char.isspace() for char in text):
        raise LayoutError(f"The {label} {value!r} must not contain whitespace.")
    return text


__all__ = [
    "InstanceIdentity",
    "InstancePaths",
    "LayoutError",
    "make_identity",
    "normalize_variant",
    "resolve",
]
