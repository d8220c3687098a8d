"""Tests for the slapdctl command line."""
from __future__ import annotations

import json
import sys
import threading
from pathlib import Path

import pytest
from conftest import FakeKiller, FakeProcess, FakeSpawner, RecordingRunner, lifecycle_handler
from typer.testing import CliRunner

from slapdctl import __version__, cli
from slapdctl.cli import app
from slapdctl.layout import InstancePaths
from slapdctl.logging import OperationScope
from slapdctl.supervisor import ProcessSupervisor, StartResult

runner = CliRunner()

VERSION = "openldap-2.6"


@pytest.fixture
def env(tmp_path: Path) -> dict[str, str]:
    """Environment pointing slapdctl at throwaway directories."""
    return {
        "SLAPDCTL_CONFIG_FILE": str(tmp_path / "absent.yml"),
        "SLAPDCTL_ROOT_DIR": str(tmp_path / "root"),
        "SLAPDCTL_INSTALL_ROOT": str(tmp_path / "install"),
        "SLAPDCTL_CRYPTO_ROOT": str(tmp_path / "crypto"),
    }


def _operations(tmp_path: Path) -> list[dict[str, object]]:
    log = tmp_path / "root" / "logs" / "operations.jsonl"
    return [json.loads(line) for line in log.read_text(encoding="utf-8").splitlines()]


def _install(tmp_path: Path) -> None:
    slapd = tmp_path / "install" / f"{VERSION}-ssl30" / "libexec" / "slapd"
    slapd.parent.mkdir(parents=True)
    slapd.write_text("#!/bin/sh\n", encoding="utf-8")


def test_version_flag() -> None:
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert f"slapdctl {__version__}" in result.stdout


def test_unknown_action_exits_one(tmp_path: Path, env: dict[str, str]) -> None:
    result = runner.invoke(app, [VERSION, "explode"], env=env)

    assert result.exit_code == 1
    assert "Unknown action 'explode'" in result.stdout
    (record,) = _operations(tmp_path)
    assert record["command"] == "explode"
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert record["result"]["rc"] == 1  # type: ignore[index]


def test_invalid_version_exits_one(env: dict[str, str]) -> None:
    result = runner.invoke(app, ["../etc", "status"], env=env)

    assert result.exit_code == 1
    assert "path separators" in result.stdout


def test_configuration_error_exits_one(tmp_path: Path, env: dict[str, str]) -> None:
    config = tmp_path / "bad.yml"
    config.write_text("ports:\n  ldap: 0\n", encoding="utf-8")

    result = runner.invoke(app, [VERSION, "status", "--config-file", str(config)], env=env)

    assert result.exit_code == 1
    assert "Configuration error" in result.stdout


def test_status_of_fresh_instance(tmp_path: Path, env: dict[str, str]) -> None:
    result = runner.invoke(app, [VERSION, "status"], env=env)

    assert result.exit_code == 0
    assert "openldap-2.6-ssl30" in result.stdout
    assert "stopped" in result.stdout
    assert "Certificate: not generated yet." in result.stdout
    (record,) = _operations(tmp_path)
    assert record["command"] == "status"
    assert record["args"]["variant"] == "30"  # type: ignore[index]
    assert record["result"]["context"]["ports"]["ldap"] == 389  # type: ignore[index]


def test_variant_argument_selects_instance(env: dict[str, str]) -> None:
    result = runner.invoke(app, [VERSION, "status", "libressl"], env=env)

    assert result.exit_code == 0
    assert "openldap-2.6-libressl" in result.stdout


def test_stop_when_not_running(env: dict[str, str]) -> None:
    result = runner.invoke(app, [VERSION, "stop"], env=env)

    assert result.exit_code == 0
    assert "is not running" in result.stdout


def test_start_without_installation_fails(tmp_path: Path, env: dict[str, str]) -> None:
    result = runner.invoke(app, [VERSION, "start"], env=env)

    assert result.exit_code == 1
    assert "installation not found" in result.stdout
    (record,) = _operations(tmp_path)
    assert record["result"]["status"] == "error"  # type: ignore[index]


def test_smoke_test_requires_running_instance(env: dict[str, str]) -> None:
    result = runner.invoke(app, [VERSION, "test"], env=env)

    assert result.exit_code == 1
    assert "start it first" in result.stdout


def test_start_bootstraps_then_execs_foreground(
    tmp_path: Path,
    env: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A foreground start logs the operation before exec replaces the process."""
    _install(tmp_path)
    executed: list[StartResult] = []

    def fake_build(
        runtime: cli.RuntimeContext,
        paths: InstancePaths,
        op: OperationScope,
        cancel: threading.Event,
    ) -> ProcessSupervisor:
        return ProcessSupervisor(
            config=runtime.config,
            paths=paths,
            engine=runtime.templates,
            store=runtime.store,
            registry=runtime.registry,
            runner=RecordingRunner(lifecycle_handler),  # type: ignore[arg-type]
            spawner=FakeSpawner(FakeProcess()),  # type: ignore[arg-type]
            probe=lambda port: False,
            kill=FakeKiller(),
            sleep=lambda _: None,
            cancel=cancel,
            on_step=cli._step_reporter(op),
        )

    def fake_exec(self: ProcessSupervisor, result: StartResult) -> None:
        assert _operations(tmp_path)[-1]["command"] == "start"
        executed.append(result)

    monkeypatch.setattr(cli, "_build_supervisor", fake_build)
    monkeypatch.setattr(ProcessSupervisor, "exec_foreground", fake_exec)

    result = runner.invoke(app, [VERSION, "start"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "ldap://localhost:389" in result.stdout
    assert "Generated certificate" in result.stdout
    assert len(executed) == 1
    (record,) = _operations(tmp_path)
    assert record["result"]["message"] == "Launching foreground daemon."  # type: ignore[index]
    step_names = [step["name"] for step in record["steps"]]  # type: ignore[union-attr]
    assert "bootstrap.tls" in step_names
    assert "bootstrap.entry:dc=my-domain,dc=com" in step_names


def test_main_maps_usage_errors_to_one(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(sys, "argv", ["slapdctl"])

    with pytest.raises(SystemExit) as excinfo:
        cli.main()

    assert excinfo.value.code == 1
