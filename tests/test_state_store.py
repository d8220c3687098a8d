"""Runtime state record tests."""
from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from slapdctl.layout import InstancePaths, resolve
from slapdctl.state import InstanceState, StateStore


def _paths(tmp_path: Path) -> InstancePaths:
    return resolve("openldap-2.6", "30", tmp_path)


def _state(paths: InstancePaths, **overrides: object) -> InstanceState:
    values: dict[str, object] = {
        "ldap_port": 3399,
        "ldaps_port": 6373,
        "socket_path": paths.ldapi_socket,
        "started_at": datetime(2026, 10, 18, 12, 0, tzinfo=UTC),
        "pid": 4242,
        "instance": paths.identity.name,
        "prefix": "/usr/local/ldap/openldap-2.6-ssl30",
        "variant": "ssl30",
        "ldapi_url": "ldapi://%2Fsrv%2Fldapi",
        "ldap_uri": "ldap://localhost:3399",
    }
    values.update(overrides)
    return InstanceState(**values)  # type: ignore[arg-type]


def test_save_creates_run_dir_and_writes_key_values(tmp_path: Path) -> None:
    """Saving creates the run directory and writes ``key=value`` lines."""
    paths = _paths(tmp_path)
    store = StateStore()

    target = store.save(paths, _state(paths))

    assert target == paths.state_file
    lines = target.read_text(encoding="utf-8").splitlines()
    assert "ldap_port=3399" in lines
    assert "ldaps_port=6373" in lines
    assert f"ldapi_socket={paths.ldapi_socket}" in lines
    assert "started_at=2026-10-18T12:00:00+00:00" in lines
    assert "pid=4242" in lines
    assert "instance=openldap-2.6-ssl30" in lines
    assert not [p for p in paths.run_dir.iterdir() if p.name.startswith(".")]


def test_load_returns_saved_state(tmp_path: Path) -> None:
    """A saved record loads back with the same values."""
    paths = _paths(tmp_path)
    store = StateStore()
    state = _state(paths)
    store.save(paths, state)

    assert store.load(paths) == state


def test_save_overwrites_previous_record(tmp_path: Path) -> None:
    """Each start replaces the record wholesale."""
    paths = _paths(tmp_path)
    store = StateStore()
    store.save(paths, _state(paths))
    store.save(paths, _state(paths, ldap_port=389, ldaps_port=636, pid=None))

    loaded = store.load(paths)
    assert loaded is not None
    assert loaded.ldap_port == 389
    assert loaded.pid is None


def test_load_missing_or_malformed_returns_none(tmp_path: Path) -> None:
    """Absent and corrupt records are reported as no state."""
    paths = _paths(tmp_path)
    store = StateStore()

    assert store.load(paths) is None

    paths.run_dir.mkdir(parents=True)
    paths.state_file.write_text("ldap_port=abc\nthis is not a record\n", encoding="utf-8")
    assert store.load(paths) is None

    paths.state_file.write_text("ldap_port=389\n", encoding="utf-8")
    assert store.load(paths) is None


def test_clear_is_idempotent(tmp_path: Path) -> None:
    """Clearing removes the record and tolerates a missing file."""
    paths = _paths(tmp_path)
    store = StateStore()
    store.save(paths, _state(paths))

    assert store.clear(paths) is True
    assert not paths.state_file.exists()
    assert store.clear(paths) is False
