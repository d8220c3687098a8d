"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import signal
import subprocess
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from slapdctl.config import AppConfig, load_config
from slapdctl.context import InstanceContext
from slapdctl.layout import InstancePaths, resolve
from slapdctl.ports import PortAssignment
from slapdctl.templates import TemplateEngine

VERSION = "openldap-2.6"
VARIANT = "30"


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


Handler = Callable[[list[str], dict[str, Any]], DummyResult]


class RecordingRunner:
    """Callable replacing ``subprocess.run`` that records every invocation."""

    def __init__(self, handler: Handler | None = None) -> None:
        """Answer calls through *handler* (success when omitted)."""
        self.calls: list[tuple[list[str], dict[str, Any]]] = []
        self.handler = handler

    def __call__(self, args: Sequence[str], **kwargs: Any) -> DummyResult:
        """Record the call and return the handler's result."""
        command = [str(part) for part in args]
        self.calls.append((command, kwargs))
        if self.handler is not None:
            return self.handler(command, kwargs)
        return DummyResult()

    def tool_calls(self, tool: str) -> list[tuple[list[str], dict[str, Any]]]:
        """Return the calls whose executable is named *tool*."""
        return [call for call in self.calls if Path(call[0][0]).name == tool]


class FakeProcess:
    """Minimal stand-in for ``subprocess.Popen``."""

    def __init__(
        self,
        *,
        pid: int = 4321,
        exit_at_start: int | None = None,
        ignore_term: bool = False,
    ) -> None:
        self.pid = pid
        self.returncode: int | None = exit_at_start
        self.ignore_term = ignore_term
        self.terminated = False
        self.killed = False

    def poll(self) -> int | None:
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_term:
            self.returncode = 0

    def wait(self, timeout: float | None = None) -> int:
        if self.returncode is None:
            raise subprocess.TimeoutExpired("slapd", timeout or 0)
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9


class FakeSpawner:
    """Callable replacing ``subprocess.Popen`` that hands out one process."""

    def __init__(self, process: FakeProcess) -> None:
        self.process = process
        self.calls: list[tuple[list[str], dict[str, Any]]] = []

    def __call__(self, argv: list[str], **kwargs: Any) -> FakeProcess:
        self.calls.append((argv, kwargs))
        return self.process


class FakeKiller:
    """Callable replacing ``os.kill`` over a set of live pids."""

    def __init__(
        self,
        alive: set[int] | None = None,
        *,
        stubborn: set[int] | None = None,
        unkillable: set[int] | None = None,
    ) -> None:
        """Track *alive* pids; *stubborn* ones ignore SIGTERM, *unkillable* ones every signal."""
        self.alive = set(alive or ())
        self.stubborn = set(stubborn or ()) | set(unkillable or ())
        self.unkillable = set(unkillable or ())
        self.signals: list[tuple[int, int]] = []

    def __call__(self, pid: int, signum: int) -> None:
        """Deliver *signum* to *pid*."""
        self.signals.append((pid, signum))
        if pid not in self.alive:
            raise ProcessLookupError(pid)
        if pid in self.unkillable:
            return
        if signum == signal.SIGKILL or (signum == signal.SIGTERM and pid not in self.stubborn):
            self.alive.discard(pid)

    def sent(self) -> list[int]:
        """Return the non-probe signals delivered so far."""
        return [signum for _, signum in self.signals if signum != 0]


def write_self_signed(
    certificate: Path,
    key_path: Path,
    *,
    common_name: str = "localhost",
    valid_for: timedelta = timedelta(days=90),
    alt_names: Sequence[x509.GeneralName] = (),
) -> None:
    """Write a throwaway self-signed certificate and key."""
    now = datetime.now(UTC)
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + valid_for)
    )
    if alt_names:
        builder = builder.add_extension(x509.SubjectAlternativeName(list(alt_names)), critical=False)
    cert = builder.sign(key, hashes.SHA256())
    certificate.parent.mkdir(parents=True, exist_ok=True)
    key_path.parent.mkdir(parents=True, exist_ok=True)
    certificate.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )


def openssl_writes_material(command: list[str]) -> DummyResult:
    """Emulate ``openssl req`` by writing material to ``-out``/``-keyout``."""
    certificate = Path(command[command.index("-out") + 1])
    key_path = Path(command[command.index("-keyout") + 1])
    write_self_signed(certificate, key_path)
    return DummyResult()


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Return configuration rooted in the temporary directory with fast timings."""
    return load_config(
        tmp_path / "missing.yml",
        env={},
        overrides={
            "root_dir": str(tmp_path / "root"),
            "install_root": str(tmp_path / "install"),
            "crypto_root": str(tmp_path / "crypto"),
            "timing": {
                "bootstrap_attempts": 2,
                "bootstrap_interval": 0,
                "bootstrap_shutdown_timeout": 1,
                "startup_grace": 0,
                "stop_timeout": 3,
                "stop_interval": 1,
                "restart_pause": 0,
            },
        },
    )


@pytest.fixture
def instance_paths(app_config: AppConfig) -> InstancePaths:
    """Return the paths of the default test instance."""
    return resolve(VERSION, VARIANT, app_config.root_dir)


@pytest.fixture
def installed(app_config: AppConfig) -> Path:
    """Create a fake OpenLDAP installation and return its prefix."""
    prefix = app_config.install_root / f"{VERSION}-ssl{VARIANT}"
    slapd = prefix / "libexec" / "slapd"
    slapd.parent.mkdir(parents=True)
    slapd.write_text("#!/bin/sh\n", encoding="utf-8")
    slapd.chmod(0o755)
    return prefix


@pytest.fixture
def instance_context(app_config: AppConfig, instance_paths: InstancePaths) -> InstanceContext:
    """Return a context for the default instance on the standard ports."""
    ports = PortAssignment(
        ldap_port=389,
        ldaps_port=636,
        ldapi_socket=instance_paths.ldapi_socket,
    )
    return InstanceContext.create(app_config, instance_paths, ports)


@pytest.fixture
def engine() -> TemplateEngine:
    """Return the template engine with the packaged templates only."""
    return TemplateEngine.with_overrides(None)


def lifecycle_handler(command: list[str], kwargs: dict[str, Any]) -> DummyResult:
    """Answer every tool a full start invokes with success."""
    tool = Path(command[0]).name
    if tool == "openssl":
        return openssl_writes_material(command)
    if tool == "ldapsearch" and "cn=config" in command:
        return DummyResult(0, stdout="dn: olcDatabase={1}mdb,cn=config\n")
    return DummyResult(0, stdout="dn: dc=my-domain,dc=com\n")
