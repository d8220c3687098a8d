"""Host-wide instance registry for slapdctl.

The registry directory (``<root>/registry`` by default) stores
``instances.yml``, an ordered list of the instances this tool has started on
the host. Entries are appended on first start and removed by ``clean``; the
order is the registration order. The port allocator uses the first entry to
decide which instance keeps the well-known ports, so registration order is
the only tie-break and it never depends on directory listing order.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage slapdctl state. Install with `pip install slapdctl`."
    ) from exc

INSTANCES_FILE = "instances.yml"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Instance helpers -------------------------------------------------
    def read_instances(self) -> Mapping[str, object]:
        """Return the contents of ``instances.yml`` (empty mapping if missing)."""
        value = self.read(INSTANCES_FILE, default={"instances": []})
        return value if isinstance(value, Mapping) else {"instances": []}

    def write_instances(self, instances: Iterable[object]) -> None:
        """Persist instance entries to ``instances.yml``."""
        self.write(INSTANCES_FILE, {"instances": list(instances)})

    def list_instances(self) -> list[dict[str, Any]]:
        """Return registered instances in registration order."""
        raw_instances = self.read_instances().get("instances", [])
        entries: list[dict[str, Any]] = []
        if not isinstance(raw_instances, list):
            return entries
        for item in raw_instances:
            if isinstance(item, Mapping) and str(item.get("name", "")).strip():
                entries.append(dict(item))
        return entries

    def get_instance(self, name: str) -> dict[str, Any] | None:
        """Return the instance mapping for *name* if registered."""
        for entry in self.list_instances():
            if entry.get("name") == name:
                return entry
        return None

    def first_instance(self) -> str | None:
        """Return the name of the earliest registered instance, if any."""
        entries = self.list_instances()
        if not entries:
            return None
        return str(entries[0]["name"])

    def register_instance(self, name: str, metadata: Mapping[str, object]) -> bool:
        """Append *name* to the registry; return ``False`` if already present.

        Existing entries keep their position so re-registration never changes
        which instance counts as first.
        """
        normalized = _normalize_name(name)
        entries = self.list_instances()
        for entry in entries:
            if entry.get("name") == normalized:
                entry.update({key: value for key, value in metadata.items() if value is not None})
                self.write_instances(entries)
                return False
        entry = {"name": normalized, "registered_at": _timestamp()}
        entry.update({key: value for key, value in metadata.items() if value is not None})
        entries.append(entry)
        self.write_instances(entries)
        return True

    def remove_instance(self, name: str) -> bool:
        """Remove *name* from the registry; return ``False`` if it was absent."""
        normalized = _normalize_name(name)
        entries = self.list_instances()
        filtered = [entry for entry in entries if entry.get("name") != normalized]
        if len(filtered) == len(entries):
            return False
        self.write_instances(filtered)
        return True


def _timestamp() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _normalize_name(name: str) -> str:
    normalized = name.strip()
    if not normalized:
        raise StateRegistryError("Instance name must be a non-empty string.")
    return normalized


__all__ = ["StateRegistry", "StateRegistryError"]
