"""PID-file based lifecycle management for slapd instances."""
from __future__ import annotations

import logging
import math
import os
import shutil
import signal
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, NoReturn

from .bootstrap import BootstrapOrchestrator, BootstrapReport, StepResult
from .config import AppConfig
from .configgen import ConfigGenerator
from .context import InstanceContext, installation_prefix
from .layout import InstancePaths
from .polling import wait_for
from .ports import PortAllocator, PortAssignment, PortProbe, is_port_in_use
from .providers.slapd import Runner, SlapdTools, Spawner
from .state import InstanceState, StateRegistry, StateStore
from .templates import TemplateEngine
from .tls import (
    CertificateMaterial,
    CertificateProvisioner,
    CertificateReport,
    inspect,
    resolve_openssl,
)

LOGGER = logging.getLogger(__name__)

DAEMON_LOG_NAME = "slapd.log"
KILL_CONFIRM_ATTEMPTS = 5

Killer = Callable[[int, int], None]


class SupervisorError(RuntimeError):
    """Raised when an instance lifecycle action fails."""


class InstallationNotFoundError(SupervisorError):
    """Raised when the OpenLDAP build for an instance is not installed."""


class InstanceNotRunningError(SupervisorError):
    """Raised when an action requires a running instance."""


class ProcessState(str, Enum):
    """Lifecycle states of an instance's daemon."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(frozen=True)
class Liveness:
    """Observed daemon state and the pid it was derived from."""

    state: ProcessState
    pid: int | None
    stale_pid_file: bool = False

    @property
    def running(self) -> bool:
        """Return ``True`` when the daemon process is alive."""
        return self.state in {ProcessState.STARTING, ProcessState.RUNNING}


@dataclass(slots=True)
class StartResult:
    """Outcome of :meth:`ProcessSupervisor.start`."""

    context: InstanceContext
    already_running: bool = False
    pid: int | None = None
    detached: bool = False
    ready: bool = True
    certificate_generated: bool = False
    registered: bool = False
    bootstrap: BootstrapReport | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def foreground_pending(self) -> bool:
        """Return ``True`` when the caller still has to exec the daemon."""
        return not self.already_running and not self.detached


@dataclass(frozen=True)
class StopResult:
    """Outcome of :meth:`ProcessSupervisor.stop`."""

    was_running: bool
    pid: int | None = None
    forced: bool = False
    state_cleared: bool = False


@dataclass(frozen=True)
class CleanResult:
    """Outcome of :meth:`ProcessSupervisor.clean`."""

    stop: StopResult
    removed: tuple[Path, ...]
    unregistered: bool


@dataclass(frozen=True)
class SmokeCheck:
    """One ldapsearch check run against a live instance."""

    name: str
    uri: str
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        """Return ``True`` when the search succeeded."""
        return self.returncode == 0


@dataclass(frozen=True)
class SmokeTestReport:
    """Results of the ``test`` action."""

    checks: tuple[SmokeCheck, ...]
    environment: dict[str, str]

    @property
    def ok(self) -> bool:
        """Return ``True`` when every check passed."""
        return all(check.ok for check in self.checks)


@dataclass(frozen=True)
class StatusReport:
    """Everything ``status`` reports about an instance."""

    context: InstanceContext
    installed: bool
    liveness: Liveness
    recorded: InstanceState | None
    registered: bool
    certificate: CertificateReport | None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        paths = self.context.paths
        ports = self.context.ports
        return {
            "instance": self.context.name,
            "state": self.liveness.state.value,
            "pid": self.liveness.pid,
            "installed": self.installed,
            "registered": self.registered,
            "prefix": str(self.context.prefix),
            "paths": {
                "data": str(paths.data_dir),
                "config": str(paths.config_dir),
                "ssl": str(paths.ssl_dir),
                "run": str(paths.run_dir),
                "env_script": str(paths.env_script),
            },
            "ports": {
                "ldap": ports.ldap_port,
                "ldaps": ports.ldaps_port,
                "ldapi_socket": str(ports.ldapi_socket),
                "ldapi_url": ports.ldapi_url,
            },
            "started_at": (
                self.recorded.started_at.isoformat(timespec="seconds")
                if self.recorded is not None
                else None
            ),
            "certificate": self.certificate.to_dict() if self.certificate is not None else None,
        }


@dataclass(slots=True)
class ProcessSupervisor:
    """Start, stop and inspect one instance using its PID file.

    Callers must not run lifecycle actions against the same instance
    concurrently; no locking is performed.
    """

    config: AppConfig
    paths: InstancePaths
    engine: TemplateEngine
    registry: StateRegistry
    store: StateStore = field(default_factory=StateStore)
    runner: Runner = subprocess.run
    spawner: Spawner = subprocess.Popen
    probe: PortProbe = is_port_in_use
    kill: Killer = os.kill
    sleep: Callable[[float], None] = time.sleep
    cancel: threading.Event | None = None
    on_step: Callable[[StepResult], None] | None = None

    # Introspection ----------------------------------------------------
    @property
    def name(self) -> str:
        """Return the instance name."""
        return self.paths.identity.name

    @property
    def prefix(self) -> Path:
        """Return the installation prefix of the instance."""
        return installation_prefix(self.config, self.paths.identity)

    def is_installed(self) -> bool:
        """Return ``True`` when the slapd binary exists in the prefix."""
        return (self.prefix / "libexec" / "slapd").is_file()

    def ensure_installed(self) -> None:
        """Raise :class:`InstallationNotFoundError` unless the build is present."""
        if not self.is_installed():
            raise InstallationNotFoundError(
                f"OpenLDAP installation not found at {self.prefix} "
                f"(expected {self.prefix / 'libexec' / 'slapd'})."
            )

    def liveness(self) -> Liveness:
        """Return the daemon state derived from the PID file and signal 0."""
        pid = self._read_pid_file()
        from_file = pid is not None
        if pid is None:
            recorded = self.store.load(self.paths)
            pid = recorded.pid if recorded is not None else None
        if pid is not None and self._alive(pid):
            # slapd writes its pid file once listeners are up.
            state = ProcessState.RUNNING if from_file else ProcessState.STARTING
            return Liveness(state=state, pid=pid)
        return Liveness(state=ProcessState.STOPPED, pid=pid, stale_pid_file=from_file)

    def current_ports(self, *, recorded: InstanceState | None = None) -> PortAssignment:
        """Return the ports the instance uses or would use on its next start."""
        running = self.liveness().running
        if recorded is None:
            recorded = self.store.load(self.paths)
        allocator = PortAllocator(self.config.ports, probe=self.probe)
        return allocator.allocate(
            self.paths.identity,
            self.paths,
            first_instance=self.registry.first_instance(),
            own_state=recorded,
            own_running=running,
        )

    def context_for(self, ports: PortAssignment) -> InstanceContext:
        """Return the instance context bound to *ports*."""
        return InstanceContext.create(self.config, self.paths, ports)

    def tools_for(self, context: InstanceContext) -> SlapdTools:
        """Return the tool provider for *context*."""
        return SlapdTools(context, runner=self.runner, spawner=self.spawner)

    # Lifecycle --------------------------------------------------------
    def start(self, *, reset: bool = False, detach: bool = False) -> StartResult:
        """Prepare and launch the instance.

        A running instance is left alone. For a foreground start the state
        record is written with the current pid and the caller must then call
        :meth:`exec_foreground`, which replaces this process with slapd.
        """
        liveness = self.liveness()
        if liveness.running:
            ports = self.current_ports()
            return StartResult(
                context=self.context_for(ports),
                already_running=True,
                pid=liveness.pid,
            )

        if reset:
            self._wipe()
        self.ensure_installed()

        ports = self.current_ports()
        context = self.context_for(ports)
        tools = self.tools_for(context)
        generator = ConfigGenerator(self.engine, context)
        result = StartResult(context=context, detached=detach)

        for directory in self.paths.directories():
            directory.mkdir(parents=True, exist_ok=True)
        if liveness.stale_pid_file:
            self.paths.pid_file.unlink(missing_ok=True)

        material = CertificateMaterial.in_directory(self.paths.ssl_dir)
        result.certificate_generated = reset or not material.exists()
        provisioner = CertificateProvisioner(
            config=self.config.tls,
            openssl=resolve_openssl(self.config.tls, context.crypto_prefix),
            organization=context.name,
            env=context.child_env(),
            runner=self.runner,
        )
        provisioner.ensure(self.paths.ssl_dir, force_regenerate=reset)
        generator.write_all()

        if result.certificate_generated or not self.paths.runtime_config_dir.is_dir():
            orchestrator = BootstrapOrchestrator(
                context=context,
                tools=tools,
                generator=generator,
                timing=self.config.timing,
                cancel=self.cancel,
                sleep=self.sleep,
                on_step=self.on_step,
            )
            result.bootstrap = orchestrator.run()
            result.warnings.extend(result.bootstrap.warnings)

        result.registered = self.registry.register_instance(
            context.name,
            {
                "software_version": self.paths.identity.software_version,
                "variant": self.paths.identity.variant_tag,
                "prefix": str(context.prefix),
                "ldap_port": ports.ldap_port,
                "ldaps_port": ports.ldaps_port,
            },
        )

        if detach:
            process = self._spawn_detached(tools)
            result.pid = process.pid
            self.store.save(self.paths, self._state(context, process.pid))
            result.ready = self._await_detached(process, tools, result)
        else:
            result.pid = os.getpid()
            self.store.save(self.paths, self._state(context, result.pid))
        return result

    def exec_foreground(self, result: StartResult) -> NoReturn:
        """Replace the current process with the instance's slapd."""
        self.tools_for(result.context).exec_daemon()

    def stop(self) -> StopResult:
        """Stop the daemon: SIGTERM, bounded wait, then SIGKILL."""
        liveness = self.liveness()
        pid = liveness.pid
        if not liveness.running or pid is None:
            if liveness.stale_pid_file:
                self.paths.pid_file.unlink(missing_ok=True)
            cleared = self.store.clear(self.paths)
            return StopResult(was_running=False, pid=liveness.pid, state_cleared=cleared)

        self._signal(pid, signal.SIGTERM)
        timing = self.config.timing
        attempts = max(1, math.ceil(timing.stop_timeout / timing.stop_interval))
        waited = wait_for(
            lambda: not self._alive(pid),
            attempts=attempts,
            interval=timing.stop_interval,
            sleep=self.sleep,
        )
        forced = False
        if not waited.satisfied:
            LOGGER.warning("slapd pid %s ignored SIGTERM; sending SIGKILL", pid)
            self._signal(pid, signal.SIGKILL)
            forced = True
            reaped = wait_for(
                lambda: not self._alive(pid),
                attempts=KILL_CONFIRM_ATTEMPTS,
                interval=timing.stop_interval,
                sleep=self.sleep,
            )
            if not reaped.satisfied:
                raise SupervisorError(
                    f"slapd pid {pid} is still alive after SIGKILL; state left in place."
                )
        self.paths.pid_file.unlink(missing_ok=True)
        cleared = self.store.clear(self.paths)
        return StopResult(was_running=True, pid=pid, forced=forced, state_cleared=cleared)

    def restart(self, *, detach: bool = False) -> tuple[StopResult, StartResult]:
        """Stop, pause, then start the instance."""
        stopped = self.stop()
        self.sleep(self.config.timing.restart_pause)
        return stopped, self.start(detach=detach)

    def clean(self) -> CleanResult:
        """Stop the instance and delete its data, configuration and runtime files."""
        stopped = self.stop()
        removed = self._wipe()
        unregistered = self.registry.remove_instance(self.name)
        return CleanResult(stop=stopped, removed=removed, unregistered=unregistered)

    def status(self) -> StatusReport:
        """Collect the status report of the instance."""
        recorded = self.store.load(self.paths)
        liveness = self.liveness()
        context = self.context_for(self.current_ports(recorded=recorded))
        material = CertificateMaterial.in_directory(self.paths.ssl_dir)
        certificate = inspect(material) if material.exists() else None
        return StatusReport(
            context=context,
            installed=self.is_installed(),
            liveness=liveness,
            recorded=recorded,
            registered=self.registry.get_instance(self.name) is not None,
            certificate=certificate,
        )

    def smoke_test(self) -> SmokeTestReport:
        """Run searches over both listeners and the seed lookup."""
        if not self.liveness().running:
            raise InstanceNotRunningError(
                f"Instance {self.name} is not running; start it first."
            )
        context = self.context_for(self.current_ports())
        tools = self.tools_for(context)
        directory = context.directory
        bind = ["-x", "-D", directory.admin_dn, "-w", directory.admin_password]
        searches = (
            ("ldap", context.ports.ldap_uri, "(objectClass=*)", ["dn"]),
            ("ldaps", context.ports.ldaps_uri, "(objectClass=*)", ["dn"]),
            ("seed", context.ports.ldap_uri, f"(cn={directory.sasl_user})", ["cn", "sn"]),
        )
        checks: list[SmokeCheck] = []
        for name, uri, search_filter, attributes in searches:
            completed = tools.ldapsearch(
                ["-H", uri, *bind, "-b", directory.suffix, search_filter, *attributes]
            )
            output = (completed.stdout or "").strip() or (completed.stderr or "").strip()
            checks.append(
                SmokeCheck(name=name, uri=uri, returncode=completed.returncode, output=output)
            )
        return SmokeTestReport(checks=tuple(checks), environment=binding_test_environment(context))

    # Internals --------------------------------------------------------
    def _read_pid_file(self) -> int | None:
        try:
            text = self.paths.pid_file.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        try:
            pid = int(text.split()[0]) if text else 0
        except ValueError:
            return None
        return pid if pid > 0 else None

    def _alive(self, pid: int) -> bool:
        try:
            self.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # The pid exists but belongs to another user.
            return True
        return True

    def _signal(self, pid: int, signum: int) -> None:
        try:
            self.kill(pid, signum)
        except ProcessLookupError:
            LOGGER.debug("pid %s exited before signal %s", pid, signum)
        except PermissionError as exc:
            raise SupervisorError(f"Not permitted to signal pid {pid}: {exc}") from exc

    def _wipe(self) -> tuple[Path, ...]:
        removed: list[Path] = []
        for directory in (self.paths.data_dir, self.paths.config_dir, self.paths.run_dir):
            if directory.exists():
                shutil.rmtree(directory)
                removed.append(directory)
        return tuple(removed)

    def _state(self, context: InstanceContext, pid: int) -> InstanceState:
        ports = context.ports
        return InstanceState(
            ldap_port=ports.ldap_port,
            ldaps_port=ports.ldaps_port,
            socket_path=ports.ldapi_socket,
            started_at=datetime.now(tz=UTC),
            pid=pid,
            instance=context.name,
            prefix=str(context.prefix),
            variant=context.identity.variant_tag,
            ldapi_url=ports.ldapi_url,
            ldap_uri=ports.ldap_uri,
        )

    def _spawn_detached(self, tools: SlapdTools) -> subprocess.Popen[Any]:
        log_path = self.paths.run_dir / DAEMON_LOG_NAME
        with log_path.open("a", encoding="utf-8") as log_file:
            return tools.spawn_daemon(
                tools.runtime_config_args(),
                log_file=log_file,
                new_session=True,
            )

    def _await_detached(
        self,
        process: subprocess.Popen[Any],
        tools: SlapdTools,
        result: StartResult,
    ) -> bool:
        def ready() -> bool:
            if process.poll() is not None:
                raise SupervisorError(
                    f"slapd exited with status {process.returncode}; "
                    f"see {self.paths.run_dir / DAEMON_LOG_NAME}."
                )
            return tools.probe_root_dse()

        timing = self.config.timing
        try:
            waited = wait_for(
                ready,
                attempts=timing.bootstrap_attempts,
                interval=timing.bootstrap_interval,
                backoff=timing.bootstrap_backoff,
                cancel=self.cancel,
                sleep=self.sleep,
            )
        except SupervisorError:
            self.store.clear(self.paths)
            raise
        if not waited.satisfied:
            message = f"slapd (pid {process.pid}) did not answer after {waited.attempts} attempt(s)."
            LOGGER.warning(message)
            result.warnings.append(message)
        return waited.satisfied


def binding_test_environment(context: InstanceContext) -> dict[str, str]:
    """Return the ``LDAP_TEST_*`` variables for binding test suites."""
    directory = context.directory
    return {
        "LDAP_TEST_HOST": "localhost",
        "LDAP_TEST_PORT": str(context.ports.ldap_port),
        "LDAP_TEST_URI": context.ports.ldap_uri,
        "LDAP_TEST_BASE": directory.suffix,
        "LDAP_TEST_USER": directory.admin_dn,
        "LDAP_TEST_PASSWD": directory.admin_password,
        "LDAP_TEST_SASL_USER": directory.sasl_user,
        "LDAP_TEST_SASL_PASSWD": directory.sasl_password,
        "LDAP_TEST_OPT_PROTOCOL_VERSION": "3",
    }


__all__ = [
    "CleanResult",
    "InstallationNotFoundError",
    "InstanceNotRunningError",
    "Liveness",
    "ProcessState",
    "ProcessSupervisor",
    "SmokeCheck",
    "SmokeTestReport",
    "StartResult",
    "StatusReport",
    "StopResult",
    "SupervisorError",
    "binding_test_environment",
]
