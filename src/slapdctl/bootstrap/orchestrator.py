"""First-run initialisation of an instance's directory and runtime config."""
from __future__ import annotations

import logging
import shutil
import subprocess
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any

from ..config import TimingConfig
from ..configgen import ConfigGenerator
from ..context import InstanceContext
from ..polling import wait_for
from ..providers.slapd import AdminOutcome, AdminResult, SlapdToolError, SlapdTools, parse_dns
from ..templates import TemplateRenderError

LOGGER = logging.getLogger(__name__)

OPTIONAL_MODULES = ("sssvlv", "ppolicy", "dds")
DEFAULT_DATABASE_DN = "olcDatabase={1}mdb,cn=config"
BOOTSTRAP_LOG_NAME = "bootstrap.log"


class BootstrapError(RuntimeError):
    """Raised when an instance cannot be initialised."""


class RuntimeConfigSource(str, Enum):
    """How the final ``slapd.d`` tree came to be."""

    PERSISTED = "persisted"
    CONVERTED = "converted"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class StepResult:
    """Outcome of one administrative bootstrap step."""

    name: str
    outcome: AdminOutcome
    detail: str = ""

    @classmethod
    def from_admin(cls, result: AdminResult) -> StepResult:
        """Convert a provider result into a step result."""
        return cls(name=result.name, outcome=result.outcome, detail=result.detail)


@dataclass(slots=True)
class BootstrapReport:
    """Everything the bootstrap did, in order."""

    steps: list[StepResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    ready: bool = False
    database_dn: str = DEFAULT_DATABASE_DN
    runtime_config: RuntimeConfigSource | None = None

    @property
    def failures(self) -> list[StepResult]:
        """Return the steps that genuinely failed."""
        return [step for step in self.steps if step.outcome is AdminOutcome.FAILED]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable summary."""
        return {
            "ready": self.ready,
            "database_dn": self.database_dn,
            "runtime_config": self.runtime_config.value if self.runtime_config else None,
            "warnings": list(self.warnings),
            "steps": [
                {"name": step.name, "outcome": step.outcome.value, "detail": step.detail}
                for step in self.steps
            ],
        }


def split_ldif_entries(text: str) -> list[str]:
    """Split LDIF *text* into individual entry blocks."""
    blocks: list[str] = []
    current: list[str] = []
    for line in text.splitlines():
        if line.strip():
            current.append(line)
            continue
        if current:
            blocks.append("\n".join(current) + "\n")
            current = []
    if current:
        blocks.append("\n".join(current) + "\n")
    return blocks


def entry_dn(block: str) -> str:
    """Return the DN of an LDIF entry block (empty when absent)."""
    dns = parse_dns(block.splitlines()[0] if block else "")
    return dns[0] if dns else ""


@dataclass(slots=True)
class BootstrapOrchestrator:
    """Run a temporary daemon, configure it over ldapi and seed the directory.

    Administrative LDAP steps are best-effort: each yields a typed
    :class:`StepResult` and never raises. Launch failures, an early daemon
    exit and missing binaries raise :class:`BootstrapError`; the partial
    ``slapd.d`` tree is removed first so the next start re-initialises.
    """

    context: InstanceContext
    tools: SlapdTools
    generator: ConfigGenerator
    timing: TimingConfig
    cancel: threading.Event | None = None
    sleep: Callable[[float], None] = time.sleep
    on_step: Callable[[StepResult], None] | None = None

    def run(self) -> BootstrapReport:
        """Bootstrap the instance and return the report."""
        runtime_dir = self.context.paths.runtime_config_dir
        if runtime_dir.exists():
            shutil.rmtree(runtime_dir)
        runtime_dir.mkdir(parents=True)
        self.context.paths.run_dir.mkdir(parents=True, exist_ok=True)

        report = BootstrapReport()
        try:
            with self._bootstrap_log() as log_file:
                process = self._launch(log_file)
                try:
                    report.ready = self._await_ready(process, report)
                    self._configure_server(report)
                    self._seed_directory(report)
                finally:
                    self._shutdown(process, report)
            report.runtime_config = self._finalize_runtime_config(report)
        except (SlapdToolError, TemplateRenderError, OSError) as exc:
            shutil.rmtree(runtime_dir, ignore_errors=True)
            raise BootstrapError(str(exc)) from exc
        except BaseException:
            shutil.rmtree(runtime_dir, ignore_errors=True)
            raise
        return report

    # Daemon lifecycle -------------------------------------------------
    @property
    def log_path(self) -> Path:
        """Return where the bootstrap daemon's output is captured."""
        return self.context.paths.run_dir / BOOTSTRAP_LOG_NAME

    @contextmanager
    def _bootstrap_log(self) -> Iterator[IO[str]]:
        with self.log_path.open("w", encoding="utf-8") as handle:
            yield handle

    def _launch(self, log_file: IO[str]) -> subprocess.Popen[Any]:
        process = self.tools.spawn_daemon(self.tools.bootstrap_config_args(), log_file=log_file)
        LOGGER.debug("bootstrap slapd started with pid %s", process.pid)
        self.sleep(self.timing.startup_grace)
        returncode = process.poll()
        if returncode is not None:
            raise BootstrapError(
                f"Bootstrap slapd exited immediately with status {returncode}. "
                f"{self._log_tail()}"
            )
        return process

    def _await_ready(self, process: subprocess.Popen[Any], report: BootstrapReport) -> bool:
        def probe() -> bool:
            if process.poll() is not None:
                raise BootstrapError(
                    f"Bootstrap slapd exited with status {process.returncode} while starting. "
                    f"{self._log_tail()}"
                )
            return self.tools.probe_root_dse()

        result = wait_for(
            probe,
            attempts=self.timing.bootstrap_attempts,
            interval=self.timing.bootstrap_interval,
            backoff=self.timing.bootstrap_backoff,
            cancel=self.cancel,
            sleep=self.sleep,
        )
        if result.cancelled:
            raise BootstrapError("Bootstrap cancelled while waiting for slapd.")
        if not result.satisfied:
            message = (
                f"slapd did not answer after {result.attempts} attempt(s); continuing anyway."
            )
            LOGGER.warning(message)
            report.warnings.append(message)
        return result.satisfied

    def _shutdown(self, process: subprocess.Popen[Any], report: BootstrapReport) -> None:
        if process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=self.timing.bootstrap_shutdown_timeout)
        except subprocess.TimeoutExpired:
            message = (
                f"Bootstrap slapd (pid {process.pid}) ignored SIGTERM for "
                f"{self.timing.bootstrap_shutdown_timeout:g}s; killing it."
            )
            LOGGER.warning(message)
            report.warnings.append(message)
            process.kill()
            process.wait()

    # Administrative steps ---------------------------------------------
    def _configure_server(self, report: BootstrapReport) -> None:
        self._record(report, self.tools.ldapmodify("tls", self.generator.render("ldif/tls.ldif.j2")))
        for module in OPTIONAL_MODULES:
            ldif = self.generator.render("ldif/module.ldif.j2", module=module)
            self._record(report, self.tools.ldapmodify(f"module:{module}", ldif))

        report.database_dn = self.tools.find_database_dn() or DEFAULT_DATABASE_DN
        overlays = self.generator.render("ldif/overlays.ldif.j2", db_dn=report.database_dn)
        for block in split_ldif_entries(overlays):
            name = f"overlay:{entry_dn(block).split(',', 1)[0].partition('=')[2]}"
            self._record(report, self.tools.ldapadd(name, block, external=True))

        index = self.generator.render("ldif/index.ldif.j2", db_dn=report.database_dn)
        self._record(report, self.tools.ldapmodify("index:entryExpireTimestamp", index))

    def _seed_directory(self, report: BootstrapReport) -> None:
        entries = split_ldif_entries(self.generator.render("ldif/base.ldif.j2"))
        entries.extend(split_ldif_entries(self.generator.render("ldif/seed.ldif.j2")))
        for block in entries:
            self._record(report, self.tools.ldapadd(f"entry:{entry_dn(block)}", block))

    def _record(self, report: BootstrapReport, result: AdminResult) -> None:
        step = StepResult.from_admin(result)
        report.steps.append(step)
        if step.outcome is AdminOutcome.FAILED:
            LOGGER.warning("bootstrap step %s failed: %s", step.name, step.detail or "no output")
        else:
            LOGGER.debug("bootstrap step %s: %s", step.name, step.outcome.value)
        if self.on_step is not None:
            self.on_step(step)

    # Runtime configuration --------------------------------------------
    def _finalize_runtime_config(self, report: BootstrapReport) -> RuntimeConfigSource:
        paths = self.context.paths
        runtime_dir = paths.runtime_config_dir
        if (runtime_dir / "cn=config.ldif").is_file():
            returncode = self._slaptest(report, "-F", str(runtime_dir), "-u")
            if returncode is None:
                self._warn(report, "Keeping the persisted configuration without validation.")
                return RuntimeConfigSource.PERSISTED
            if returncode == 0:
                return RuntimeConfigSource.PERSISTED
            LOGGER.warning("slaptest rejected the persisted configuration; reconverting.")

        self._reset_dir(runtime_dir)
        returncode = self._slaptest(report, "-f", str(paths.bootstrap_config), "-F", str(runtime_dir))
        if returncode == 0:
            return RuntimeConfigSource.CONVERTED

        if returncode is not None:
            LOGGER.warning(
                "slaptest conversion failed (exit %s); writing a minimal configuration.",
                returncode,
            )
        self._reset_dir(runtime_dir)
        self.generator.write_minimal_runtime_config()
        return RuntimeConfigSource.FALLBACK

    def _slaptest(self, report: BootstrapReport, *args: str) -> int | None:
        """Run slaptest; ``None`` when the binary cannot be executed."""
        try:
            return self.tools.slaptest(*args).returncode
        except SlapdToolError as exc:
            self._warn(report, f"slaptest unavailable: {exc}")
            return None

    @staticmethod
    def _warn(report: BootstrapReport, message: str) -> None:
        LOGGER.warning(message)
        report.warnings.append(message)

    @staticmethod
    def _reset_dir(path: Path) -> None:
        shutil.rmtree(path, ignore_errors=True)
        path.mkdir(parents=True)

    def _log_tail(self, lines: int = 20) -> str:
        try:
            text = self.log_path.read_text(encoding="utf-8")
        except OSError:
            return ""
        tail = "\n".join(text.splitlines()[-lines:])
        return f"Last output:\n{tail}" if tail else f"See {self.log_path}."


__all__ = [
    "BootstrapError",
    "BootstrapOrchestrator",
    "BootstrapReport",
    "DEFAULT_DATABASE_DN",
    "OPTIONAL_MODULES",
    "RuntimeConfigSource",
    "StepResult",
    "entry_dn",
    "split_ldif_entries",
]
