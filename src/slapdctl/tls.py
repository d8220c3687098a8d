"""Self-signed certificate provisioning and inspection for slapd instances."""
from __future__ import annotations

import ipaddress
import os
import shutil
import socket
import stat
import subprocess
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Protocol, cast

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .config import TLSConfig

CERTIFICATE_NAME = "server.crt"
KEY_NAME = "server.key"
CERTIFICATE_MODE = 0o644
KEY_MODE = 0o600
WARN_EXPIRY_DAYS = 30
LOOPBACK_ADDRESSES = ("127.0.0.1", "::1")

Runner = Callable[..., subprocess.CompletedProcess[str]]


class CertificateError(RuntimeError):
    """Raised when certificate material cannot be generated."""


@dataclass(frozen=True)
class CertificateMaterial:
    """Certificate and private key pair of one instance."""

    certificate: Path
    key: Path

    @classmethod
    def in_directory(cls, ssl_dir: Path) -> CertificateMaterial:
        """Return the canonical material locations under *ssl_dir*."""
        return cls(certificate=ssl_dir / CERTIFICATE_NAME, key=ssl_dir / KEY_NAME)

    def exists(self) -> bool:
        """Return ``True`` when both files are present."""
        return self.certificate.is_file() and self.key.is_file()


@dataclass(frozen=True)
class HostIdentity:
    """Names and addresses under which the local host is reachable."""

    hostnames: tuple[str, ...]
    addresses: tuple[str, ...]


HOSTNAME_NAME_FLAGS = ((), ("-a",), ("-A",), ("-f",))
HOSTNAME_ADDRESS_FLAGS = (("-i",), ("-I",))


def _hostname_words(runner: Runner, flags: tuple[str, ...]) -> list[str]:
    try:
        result = runner(  # noqa: S603
            ["hostname", *flags],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return []
    if result.returncode != 0:
        return []
    return (getattr(result, "stdout", "") or "").split()


def _is_address(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def discover_host_identity(runner: Runner = subprocess.run) -> HostIdentity:
    """Collect every name and address of the local host; lookup failures are skipped.

    Combines the output of ``hostname`` (plain, ``-a``, ``-A``, ``-f`` for
    names; ``-i``, ``-I`` for interface addresses) with the resolver's view
    of the host name and its aliases.
    """
    hostnames: set[str] = set()
    addresses: set[str] = set()
    for flags in HOSTNAME_NAME_FLAGS:
        hostnames.update(_hostname_words(runner, flags))
    for flags in HOSTNAME_ADDRESS_FLAGS:
        addresses.update(_hostname_words(runner, flags))

    try:
        hostname = socket.gethostname()
    except OSError:
        hostname = ""
    if hostname:
        hostnames.add(hostname)
        try:
            fqdn = socket.getfqdn(hostname)
        except OSError:
            fqdn = ""
        if fqdn:
            hostnames.add(fqdn)
        try:
            canonical, aliases, resolved = socket.gethostbyname_ex(hostname)
        except OSError:
            canonical, aliases, resolved = "", [], []
        hostnames.update(name for name in (canonical, *aliases) if name)
        addresses.update(resolved)
        try:
            infos = socket.getaddrinfo(hostname, None)
        except OSError:
            infos = []
        for info in infos:
            addresses.add(str(info[4][0]))

    addresses = {address.split("%", 1)[0] for address in addresses if address}
    # hostname -a may echo addresses back; keep those in the IP group.
    addresses.update(name for name in hostnames if _is_address(name))
    hostnames = {name for name in hostnames if name and not _is_address(name)}
    return HostIdentity(hostnames=tuple(sorted(hostnames)), addresses=tuple(sorted(addresses)))


def subject_alt_names(hostnames: Iterable[str], addresses: Iterable[str]) -> str:
    """Return the ``subjectAltName`` value for *hostnames* and *addresses*.

    DNS entries come first, then IP entries; each group is de-duplicated and
    sorted. The loopback addresses are always present. Entries that are not
    valid IP addresses are dropped from the IP group.
    """
    dns = sorted({name.strip() for name in hostnames if name and name.strip()})
    ips: set[str] = set(LOOPBACK_ADDRESSES)
    for address in addresses:
        candidate = address.strip()
        try:
            ipaddress.ip_address(candidate)
        except ValueError:
            continue
        ips.add(candidate)
    entries = [f"DNS:{name}" for name in dns] + [f"IP:{ip}" for ip in sorted(ips)]
    return ",".join(entries)


def resolve_openssl(config: TLSConfig, crypto_prefix: Path) -> str:
    """Return the openssl binary to use for *crypto_prefix*."""
    bundled = crypto_prefix / "bin" / "openssl"
    if bundled.is_file():
        return str(bundled)
    if config.openssl_bin:
        return config.openssl_bin
    return shutil.which("openssl") or "openssl"


@dataclass(slots=True)
class CertificateProvisioner:
    """Create the self-signed server certificate of an instance."""

    config: TLSConfig
    openssl: str
    organization: str
    env: Mapping[str, str] | None = None
    runner: Runner = subprocess.run
    host_identity: Callable[[], HostIdentity] = discover_host_identity

    def ensure(self, ssl_dir: Path, force_regenerate: bool = False) -> CertificateMaterial:
        """Return the material in *ssl_dir*, generating it when required.

        Existing material is returned untouched unless *force_regenerate* is
        set, in which case both files are replaced together.
        """
        material = CertificateMaterial.in_directory(ssl_dir)
        if material.exists() and not force_regenerate:
            return material

        ssl_dir.mkdir(parents=True, exist_ok=True)
        identity = self.host_identity()
        command = [
            self.openssl,
            "req",
            "-newkey",
            f"rsa:{self.config.key_size}",
            "-x509",
            "-nodes",
            "-days",
            str(self.config.days),
            "-out",
            str(material.certificate),
            "-keyout",
            str(material.key),
            "-subj",
            f"/C=US/ST=Test/L=Localhost/O={self.organization}/CN=localhost",
            "-addext",
            f"subjectAltName = {subject_alt_names(identity.hostnames, identity.addresses)}",
        ]
        try:
            result = self.runner(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
                env=dict(self.env) if self.env is not None else None,
            )
        except FileNotFoundError as exc:
            raise CertificateError(f"openssl not found: {exc}") from exc
        if result.returncode != 0:
            stderr = (getattr(result, "stderr", "") or "").strip()
            stdout = (getattr(result, "stdout", "") or "").strip()
            message = stderr or stdout or "no output"
            raise CertificateError(
                f"openssl req failed (exit {result.returncode}): {message}"
            )
        if not material.exists():
            raise CertificateError(f"openssl did not produce certificate material in {ssl_dir}.")

        material.certificate.chmod(CERTIFICATE_MODE)
        material.key.chmod(KEY_MODE)
        return material


class FindingSeverity(Enum):
    """Severities for certificate checks."""

    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class CertificateFinding:
    """Individual inspection check outcome."""

    scope: str
    check: str
    severity: FindingSeverity
    message: str
    path: Path | None = None


@dataclass(frozen=True)
class CertificateReport:
    """Aggregate inspection results for certificate material."""

    material: CertificateMaterial
    findings: tuple[CertificateFinding, ...]
    subject: str | None
    alt_names: tuple[str, ...]
    not_valid_before: datetime | None
    not_valid_after: datetime | None

    @property
    def has_errors(self) -> bool:
        """Return True when any finding is classified as an error."""
        return any(f.severity is FindingSeverity.ERROR for f in self.findings)

    @property
    def has_warnings(self) -> bool:
        """Return True when the report includes warning findings."""
        return any(f.severity is FindingSeverity.WARNING for f in self.findings)

    @property
    def status(self) -> FindingSeverity:
        """Return the overall status derived from the findings."""
        if self.has_errors:
            return FindingSeverity.ERROR
        if self.has_warnings:
            return FindingSeverity.WARNING
        return FindingSeverity.OK

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation of the report."""
        return {
            "certificate": str(self.material.certificate),
            "key": str(self.material.key),
            "status": self.status.value,
            "subject": self.subject,
            "alt_names": list(self.alt_names),
            "not_valid_before": (
                self.not_valid_before.isoformat() if self.not_valid_before else None
            ),
            "not_valid_after": (
                self.not_valid_after.isoformat() if self.not_valid_after else None
            ),
            "findings": [
                {
                    "scope": finding.scope,
                    "check": finding.check,
                    "severity": finding.severity.value,
                    "message": finding.message,
                    "path": str(finding.path) if finding.path is not None else None,
                }
                for finding in self.findings
            ],
        }


class PublicKeyProtocol(Protocol):
    """Protocol covering public keys exposing ``public_bytes``."""

    def public_bytes(
        self,
        *,
        encoding: serialization.Encoding,
        format: serialization.PublicFormat,
    ) -> bytes:
        """Return the public key bytes in the requested encoding/format."""


class PrivateKeyProtocol(Protocol):
    """Protocol for private keys that can provide a matching public key."""

    def public_key(self) -> PublicKeyProtocol:
        """Return the associated public key object."""


def inspect(
    material: CertificateMaterial,
    *,
    now: datetime | None = None,
    warn_expiry_days: int = WARN_EXPIRY_DAYS,
) -> CertificateReport:
    """Inspect *material* and return a structured report."""
    now = now or datetime.now(UTC)
    findings: list[CertificateFinding] = []

    cert_exists = _check_file(material.certificate, "certificate", findings)
    key_exists = _check_file(material.key, "key", findings)
    if cert_exists:
        _check_mode(material.certificate, "certificate", CERTIFICATE_MODE, findings)
    if key_exists:
        _check_mode(material.key, "key", KEY_MODE, findings)

    cert_obj: x509.Certificate | None = None
    key_obj: PrivateKeyProtocol | None = None
    if cert_exists:
        try:
            cert_obj = _load_certificate(material.certificate)
        except ValueError as exc:
            findings.append(
                CertificateFinding(
                    scope="certificate",
                    check="parse",
                    severity=FindingSeverity.ERROR,
                    message=f"Failed to parse certificate: {exc}",
                    path=material.certificate,
                )
            )
    if key_exists:
        try:
            key_obj = _load_private_key(material.key)
        except (ValueError, TypeError) as exc:
            findings.append(
                CertificateFinding(
                    scope="key",
                    check="parse",
                    severity=FindingSeverity.ERROR,
                    message=f"Failed to parse private key: {exc}",
                    path=material.key,
                )
            )

    if cert_obj is not None and key_obj is not None:
        matches = _public_keys_match(cert_obj, key_obj)
        findings.append(
            CertificateFinding(
                scope="certificate",
                check="match",
                severity=FindingSeverity.OK if matches else FindingSeverity.ERROR,
                message=(
                    "Certificate and key match."
                    if matches
                    else "Certificate does not match the private key."
                ),
                path=material.certificate,
            )
        )

    subject: str | None = None
    alt_names: tuple[str, ...] = ()
    not_before: datetime | None = None
    not_after: datetime | None = None
    if cert_obj is not None:
        subject = cert_obj.subject.rfc4514_string()
        alt_names = _alt_names(cert_obj)
        not_before = cert_obj.not_valid_before_utc
        not_after = cert_obj.not_valid_after_utc
        findings.append(_expiry_finding(material.certificate, not_after, now, warn_expiry_days))

    return CertificateReport(
        material=material,
        findings=tuple(findings),
        subject=subject,
        alt_names=alt_names,
        not_valid_before=not_before,
        not_valid_after=not_after,
    )


def _expiry_finding(
    path: Path,
    not_after: datetime,
    now: datetime,
    warn_expiry_days: int,
) -> CertificateFinding:
    if not_after <= now:
        return CertificateFinding(
            scope="certificate",
            check="expiry",
            severity=FindingSeverity.ERROR,
            message=f"Certificate expired on {not_after.isoformat()}",
            path=path,
        )
    days_remaining = (not_after - now).days
    if days_remaining <= warn_expiry_days:
        return CertificateFinding(
            scope="certificate",
            check="expiry",
            severity=FindingSeverity.WARNING,
            message=(
                "Certificate expires soon "
                f"({not_after.isoformat()}, {days_remaining} day(s) remaining)"
            ),
            path=path,
        )
    return CertificateFinding(
        scope="certificate",
        check="expiry",
        severity=FindingSeverity.OK,
        message=f"Certificate valid until {not_after.isoformat()}",
        path=path,
    )


def _check_file(path: Path, scope: str, findings: list[CertificateFinding]) -> bool:
    if not path.is_file():
        findings.append(
            CertificateFinding(
                scope=scope,
                check="exists",
                severity=FindingSeverity.ERROR,
                message="File does not exist.",
                path=path,
            )
        )
        return False
    if not os.access(path, os.R_OK):
        findings.append(
            CertificateFinding(
                scope=scope,
                check="readable",
                severity=FindingSeverity.ERROR,
                message="File is not readable by the current user.",
                path=path,
            )
        )
        return False
    return True


def _check_mode(
    path: Path,
    scope: str,
    expected: int,
    findings: list[CertificateFinding],
) -> None:
    actual = stat.S_IMODE(path.stat().st_mode)
    if actual == expected:
        return
    findings.append(
        CertificateFinding(
            scope=scope,
            check="permissions",
            severity=FindingSeverity.WARNING,
            message=f"Mode {actual:04o} differs from expected {expected:04o}.",
            path=path,
        )
    )


def _alt_names(cert: x509.Certificate) -> tuple[str, ...]:
    try:
        extension = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return ()
    names = [f"DNS:{name}" for name in extension.value.get_values_for_type(x509.DNSName)]
    names.extend(
        f"IP:{address}" for address in extension.value.get_values_for_type(x509.IPAddress)
    )
    return tuple(names)


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _load_private_key(path: Path) -> PrivateKeyProtocol:
    data = path.read_bytes()
    private_key = serialization.load_pem_private_key(data, password=None)
    return cast(PrivateKeyProtocol, private_key)


def _public_keys_match(cert: x509.Certificate, private_key: PrivateKeyProtocol) -> bool:
    cert_bytes = cert.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_bytes == key_bytes


__all__ = [
    "CERTIFICATE_MODE",
    "CertificateError",
    "CertificateFinding",
    "CertificateMaterial",
    "CertificateProvisioner",
    "CertificateReport",
    "FindingSeverity",
    "HostIdentity",
    "KEY_MODE",
    "discover_host_identity",
    "inspect",
    "resolve_openssl",
    "subject_alt_names",
]
