"""Per-instance runtime state record.

The record lives at ``run/<instance>/instance.state`` as ``key=value`` lines so
that shell users can ``grep`` or ``source``-parse it::

    instance=openldap-2.6-ssl30
    prefix=/usr/local/ldap/openldap-2.6-ssl30
    variant=ssl30
    ldap_port=389
    ldaps_port=636
    ldapi_socket=/work/run/openldap-2.6-ssl30/ldapi
    ldapi_url=ldapi://%2Fwork%2Frun%2Fopenldap-2.6-ssl30%2Fldapi
    ldap_uri=ldap://localhost:389
    started_at=2026-10-18T12:00:00+00:00
    pid=4242

Missing or malformed records are a normal first-run condition, so
:meth:`StateStore.load` returns ``None`` instead of raising.
"""
from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from ..layout import InstancePaths

_REQUIRED_KEYS = ("ldap_port", "ldaps_port", "ldapi_socket", "started_at")


@dataclass(frozen=True)
class InstanceState:
    """Runtime facts recorded when an instance starts."""

    ldap_port: int
    ldaps_port: int
    socket_path: Path
    started_at: datetime
    pid: int | None = None
    instance: str = ""
    prefix: str = ""
    variant: str = ""
    ldapi_url: str = ""
    ldap_uri: str = ""

    def to_lines(self) -> list[str]:
        """Return the ``key=value`` lines persisted for this record."""
        fields = [
            ("instance", self.instance),
            ("prefix", self.prefix),
            ("variant", self.variant),
            ("ldap_port", str(self.ldap_port)),
            ("ldaps_port", str(self.ldaps_port)),
            ("ldapi_socket", str(self.socket_path)),
            ("ldapi_url", self.ldapi_url),
            ("ldap_uri", self.ldap_uri),
            ("started_at", self.started_at.isoformat(timespec="seconds")),
            ("pid", "" if self.pid is None else str(self.pid)),
        ]
        return [f"{key}={value}" for key, value in fields]

    @classmethod
    def from_lines(cls, lines: list[str]) -> InstanceState:
        """Parse ``key=value`` lines; raise ``ValueError`` when malformed."""
        values: dict[str, str] = {}
        for raw in lines:
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            key, sep, value = line.partition("=")
            if not sep:
                raise ValueError(f"Malformed state line: {raw!r}")
            values[key.strip()] = value.strip()

        missing = [key for key in _REQUIRED_KEYS if not values.get(key)]
        if missing:
            raise ValueError(f"State record missing keys: {', '.join(missing)}")

        pid_text = values.get("pid", "")
        return cls(
            ldap_port=int(values["ldap_port"]),
            ldaps_port=int(values["ldaps_port"]),
            socket_path=Path(values["ldapi_socket"]),
            started_at=datetime.fromisoformat(values["started_at"]),
            pid=int(pid_text) if pid_text else None,
            instance=values.get("instance", ""),
            prefix=values.get("prefix", ""),
            variant=values.get("variant", ""),
            ldapi_url=values.get("ldapi_url", ""),
            ldap_uri=values.get("ldap_uri", ""),
        )


class StateStore:
    """Persist, read and clear :class:`InstanceState` records."""

    def save(self, paths: InstancePaths, state: InstanceState) -> Path:
        """Atomically write *state* and flush it to disk before returning."""
        paths.run_dir.mkdir(parents=True, exist_ok=True)
        target = paths.state_file
        payload = "\n".join(state.to_lines()) + "\n"

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(paths.run_dir), prefix=f".{target.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, target)
            os.chmod(target, 0o644)
            _fsync_directory(paths.run_dir)
        finally:
            tmp_path.unlink(missing_ok=True)
        return target

    def load(self, paths: InstancePaths) -> InstanceState | None:
        """Return the recorded state, or ``None`` if absent or unreadable."""
        try:
            text = paths.state_file.read_text(encoding="utf-8")
        except OSError:
            return None
        try:
            return InstanceState.from_lines(text.splitlines())
        except ValueError:
            return None

    def clear(self, paths: InstancePaths) -> bool:
        """Remove the record; return ``True`` when a file was deleted."""
        try:
            paths.state_file.unlink()
        except FileNotFoundError:
            return False
        return True


def _fsync_directory(directory: Path) -> None:
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:  # pragma: no cover - platform without directory fds
        return
    try:
        os.fsync(fd)
    except OSError:  # pragma: no cover - some filesystems reject directory fsync
        pass
    finally:
        os.close(fd)


__all__ = ["InstanceState", "StateStore"]
