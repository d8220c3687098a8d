"""Provider wrapping the OpenLDAP binaries of one installation."""
from __future__ import annotations

import base64
import os
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Any, NoReturn

from ..context import InstanceContext

# LDAP result codes surfaced as ldapadd/ldapmodify exit statuses.
LDAP_TYPE_OR_VALUE_EXISTS = 20
LDAP_ALREADY_EXISTS = 68

DAEMON_DEBUG_LEVEL = "256"

Runner = Callable[..., subprocess.CompletedProcess[str]]
Spawner = Callable[..., subprocess.Popen[Any]]


class SlapdToolError(RuntimeError):
    """Raised when an OpenLDAP binary cannot be executed."""


class AdminOutcome(str, Enum):
    """Result of a best-effort administrative LDAP operation."""

    SUCCESS = "success"
    ALREADY_EXISTS = "already-exists"
    FAILED = "failed"


@dataclass(frozen=True)
class AdminResult:
    """Typed result for one ldapadd/ldapmodify invocation."""

    name: str
    outcome: AdminOutcome
    returncode: int
    detail: str = ""

    @property
    def ok(self) -> bool:
        """Return ``True`` unless the operation genuinely failed."""
        return self.outcome is not AdminOutcome.FAILED


def classify_admin_result(
    name: str,
    result: subprocess.CompletedProcess[str],
) -> AdminResult:
    """Map an ldapadd/ldapmodify exit status onto an :class:`AdminOutcome`."""
    stdout = (getattr(result, "stdout", "") or "").strip()
    stderr = (getattr(result, "stderr", "") or "").strip()
    detail = stderr or stdout
    if result.returncode == 0:
        outcome = AdminOutcome.SUCCESS
    elif result.returncode in {LDAP_ALREADY_EXISTS, LDAP_TYPE_OR_VALUE_EXISTS}:
        outcome = AdminOutcome.ALREADY_EXISTS
    elif "already exists" in detail.lower():
        outcome = AdminOutcome.ALREADY_EXISTS
    else:
        outcome = AdminOutcome.FAILED
    return AdminResult(name=name, outcome=outcome, returncode=result.returncode, detail=detail)


def parse_dns(output: str) -> list[str]:
    """Return the DNs listed in LDIF *output* (handles base64 ``dn::`` lines)."""
    dns: list[str] = []
    for line in output.splitlines():
        lowered = line.lower()
        if lowered.startswith("dn::"):
            encoded = line[4:].strip()
            try:
                dns.append(base64.b64decode(encoded).decode("utf-8"))
            except (ValueError, UnicodeDecodeError):
                continue
        elif lowered.startswith("dn:"):
            value = line[3:].strip()
            if value:
                dns.append(value)
    return dns


@dataclass(slots=True)
class SlapdTools:
    """Invoke slapd and the ldap* client tools for an instance."""

    context: InstanceContext
    runner: Runner = subprocess.run
    spawner: Spawner = subprocess.Popen

    # Daemon ------------------------------------------------------------
    def daemon_argv(self, config_args: Sequence[str]) -> list[str]:
        """Return the foreground slapd argument vector bound to all three listeners."""
        return [
            str(self.context.slapd_bin),
            *config_args,
            "-h",
            self.context.ports.listener_urls,
            "-d",
            DAEMON_DEBUG_LEVEL,
        ]

    def runtime_config_args(self) -> list[str]:
        """Return the arguments selecting the converted ``slapd.d`` directory."""
        return ["-F", str(self.context.paths.runtime_config_dir)]

    def bootstrap_config_args(self) -> list[str]:
        """Return the arguments for the bootstrap daemon.

        Passing both ``-f`` and ``-F`` makes slapd convert the bootstrap file
        into ``slapd.d`` on start, so live cn=config changes are persisted.
        """
        paths = self.context.paths
        return ["-f", str(paths.bootstrap_config), "-F", str(paths.runtime_config_dir)]

    def spawn_daemon(
        self,
        config_args: Sequence[str],
        *,
        log_file: IO[str] | None = None,
        new_session: bool = False,
    ) -> subprocess.Popen[Any]:
        """Start slapd in the foreground as a child process.

        With *new_session* the child leaves this process group, so it outlives
        the invoking terminal.
        """
        argv = self.daemon_argv(config_args)
        try:
            return self.spawner(  # noqa: S603
                argv,
                env=self.context.child_env(),
                stdout=log_file if log_file is not None else subprocess.DEVNULL,
                stderr=subprocess.STDOUT if log_file is not None else subprocess.DEVNULL,
                text=True,
                start_new_session=new_session,
            )
        except FileNotFoundError as exc:
            raise SlapdToolError(f"{argv[0]} not found: {exc}") from exc

    def exec_daemon(self) -> NoReturn:
        """Replace the current process with slapd in the foreground."""
        argv = self.daemon_argv(self.runtime_config_args())
        os.execve(argv[0], argv, self.context.child_env())  # noqa: S606

    # Configuration ----------------------------------------------------
    def slaptest(self, *args: str) -> subprocess.CompletedProcess[str]:
        """Run slaptest with *args*; never raises on a non-zero exit."""
        command = [str(self.context.server_tool("slaptest")), *args]
        return self._run_command(command, check=False, error_prefix="slaptest")

    # Client tools -----------------------------------------------------
    def ldapsearch(self, args: Sequence[str], *, check: bool = False) -> subprocess.CompletedProcess[str]:
        """Run ldapsearch with *args*."""
        command = [str(self.context.client_bin("ldapsearch")), *args]
        return self._run_command(command, check=check, error_prefix="ldapsearch")

    def probe_root_dse(self) -> bool:
        """Return ``True`` when an anonymous base search of the root DSE succeeds."""
        result = self.ldapsearch(["-H", self.context.ports.ldap_uri, "-x", "-s", "base", "-b", ""])
        return result.returncode == 0

    def find_database_dn(self) -> str | None:
        """Return the DN of the first cn=config database with a suffix and root DN."""
        result = self.ldapsearch(
            [
                "-Q",
                "-LLL",
                "-Y",
                "EXTERNAL",
                "-H",
                self.context.ports.ldapi_url,
                "-b",
                "cn=config",
                "(&(olcRootDN=*)(olcSuffix=*))",
                "dn",
            ]
        )
        if result.returncode != 0:
            return None
        dns = parse_dns(result.stdout or "")
        return dns[0] if dns else None

    def ldapmodify(self, name: str, ldif: str) -> AdminResult:
        """Apply *ldif* over ldapi with SASL EXTERNAL (host-trusted) auth."""
        command = [
            str(self.context.client_bin("ldapmodify")),
            "-Q",
            "-Y",
            "EXTERNAL",
            "-H",
            self.context.ports.ldapi_url,
        ]
        return classify_admin_result(name, self._run_ldif(command, ldif))

    def ldapadd(self, name: str, ldif: str, *, external: bool = False) -> AdminResult:
        """Add *ldif* over ldapi, as the admin DN unless *external* is set."""
        command = [str(self.context.client_bin("ldapadd")), "-H", self.context.ports.ldapi_url]
        if external:
            command.extend(["-Q", "-Y", "EXTERNAL"])
        else:
            command.extend(
                [
                    "-x",
                    "-D",
                    self.context.directory.admin_dn,
                    "-w",
                    self.context.directory.admin_password,
                ]
            )
        return classify_admin_result(name, self._run_ldif(command, ldif))

    # ------------------------------------------------------------------
    def _run_ldif(self, command: Sequence[str], ldif: str) -> subprocess.CompletedProcess[str]:
        return self._run_command(command, check=False, error_prefix=Path(command[0]).name, stdin=ldif)

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        stdin: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = self.runner(  # noqa: S603
                list(args),
                input=stdin,
                capture_output=True,
                text=True,
                check=False,
                env=self.context.child_env(),
            )
        except FileNotFoundError as exc:
            raise SlapdToolError(f"{args[0]} not found: {exc}") from exc
        except PermissionError as exc:
            raise SlapdToolError(f"{args[0]} is not executable: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SlapdToolError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = [
    "AdminOutcome",
    "AdminResult",
    "LDAP_ALREADY_EXISTS",
    "LDAP_TYPE_OR_VALUE_EXISTS",
    "SlapdToolError",
    "SlapdTools",
    "classify_admin_result",
    "parse_dns",
]
