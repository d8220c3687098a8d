"""Configuration loader for slapdctl.

Configuration values are merged from several sources, later ones winning:

1. Built-in defaults.
2. ``~/.config/slapdctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``SLAPDCTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SLAPDCTL_PORTS__LDAP=1389
    export SLAPDCTL_TIMING__BOOTSTRAP_ATTEMPTS=20

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.

Version offset keys such as ``2.6`` must be quoted in YAML files, otherwise
YAML reads them as floats (``2.10`` would collapse to ``2.1``). A source that
sets ``ports.offsets`` replaces the whole table rather than extending it.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load slapdctl configuration. Install with "
        "`pip install slapdctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "SLAPDCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """Listener port defaults and the per-version alternate offset table."""

    ldap: int = 389
    ldaps: int = 636
    alternate_ldap_base: int = 3389
    alternate_ldaps_base: int = 6363
    offsets: Mapping[str, int] = field(
        default_factory=lambda: {"2.5": 0, "2.6": 10, "2.7": 20}
    )
    default_offset: int = 30

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ldap": self.ldap,
            "ldaps": self.ldaps,
            "alternate_ldap_base": self.alternate_ldap_base,
            "alternate_ldaps_base": self.alternate_ldaps_base,
            "offsets": dict(self.offsets),
            "default_offset": self.default_offset,
        }


@dataclass(frozen=True)
class TLSConfig:
    """Self-signed certificate generation parameters."""

    key_size: int = 4096
    days: int = 3650
    openssl_bin: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "key_size": self.key_size,
            "days": self.days,
            "openssl_bin": self.openssl_bin,
        }


@dataclass(frozen=True)
class DirectoryConfig:
    """Directory naming and the credentials seeded into every instance."""

    suffix: str = "dc=my-domain,dc=com"
    admin_dn: str = "cn=Manager,dc=my-domain,dc=com"
    admin_password: str = "secret"
    config_password: str = "secret"
    organization: str = "php ldap tests"
    sasl_user: str = "userA"
    sasl_password: str = "oops"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "suffix": self.suffix,
            "admin_dn": self.admin_dn,
            "admin_password": self.admin_password,
            "config_password": self.config_password,
            "organization": self.organization,
            "sasl_user": self.sasl_user,
            "sasl_password": self.sasl_password,
        }


@dataclass(frozen=True)
class TimingConfig:
    """Bounded polling parameters used during bootstrap and shutdown."""

    bootstrap_attempts: int = 10
    bootstrap_interval: float = 2.0
    bootstrap_backoff: float = 1.0
    bootstrap_shutdown_timeout: float = 10.0
    startup_grace: float = 1.0
    stop_timeout: float = 10.0
    stop_interval: float = 1.0
    restart_pause: float = 2.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "bootstrap_attempts": self.bootstrap_attempts,
            "bootstrap_interval": self.bootstrap_interval,
            "bootstrap_backoff": self.bootstrap_backoff,
            "bootstrap_shutdown_timeout": self.bootstrap_shutdown_timeout,
            "startup_grace": self.startup_grace,
            "stop_timeout": self.stop_timeout,
            "stop_interval": self.stop_interval,
            "restart_pause": self.restart_pause,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for slapdctl."""

    config_file: Path
    root_dir: Path
    install_root: Path
    crypto_root: Path
    default_variant: str
    logs_dir: Path
    templates_dir: Path | None
    ports: PortsConfig
    tls: TLSConfig
    directory: DirectoryConfig
    timing: TimingConfig

    @property
    def registry_dir(self) -> Path:
        """Return the directory holding the host instance registry."""
        return self.root_dir / "registry"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "root_dir": str(self.root_dir),
            "install_root": str(self.install_root),
            "crypto_root": str(self.crypto_root),
            "default_variant": self.default_variant,
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir) if self.templates_dir else None,
            "ports": self.ports.to_dict(),
            "tls": self.tls.to_dict(),
            "directory": self.directory.to_dict(),
            "timing": self.timing.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/slapdctl/config.yml",
    "root_dir": ".",
    "install_root": "/usr/local/ldap",
    "crypto_root": "/usr/local",
    "default_variant": "30",
    "logs_dir": None,  # derived from root_dir when absent
    "templates_dir": None,
    "ports": {
        "ldap": 389,
        "ldaps": 636,
        "alternate_ldap_base": 3389,
        "alternate_ldaps_base": 6363,
        "offsets": {"2.5": 0, "2.6": 10, "2.7": 20},
        "default_offset": 30,
    },
    "tls": {
        "key_size": 4096,
        "days": 3650,
        "openssl_bin": None,
    },
    "directory": {
        "suffix": "dc=my-domain,dc=com",
        "admin_dn": "cn=Manager,dc=my-domain,dc=com",
        "admin_password": "secret",
        "config_password": "secret",
        "organization": "php ldap tests",
        "sasl_user": "userA",
        "sasl_password": "oops",
    },
    "timing": {
        "bootstrap_attempts": 10,
        "bootstrap_interval": 2.0,
        "bootstrap_backoff": 1.0,
        "bootstrap_shutdown_timeout": 10.0,
        "startup_grace": 1.0,
        "stop_timeout": 10.0,
        "stop_interval": 1.0,
        "restart_pause": 2.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
# A layer that sets one of these replaces the table instead of extending it.
REPLACED_TABLES = (("ports", "offsets"),)
_SECTION_KEYS: dict[str, set[str]] = {
    "ports": {
        "ldap",
        "ldaps",
        "alternate_ldap_base",
        "alternate_ldaps_base",
        "offsets",
        "default_offset",
    },
    "tls": {"key_size", "days", "openssl_bin"},
    "directory": {
        "suffix",
        "admin_dn",
        "admin_password",
        "config_password",
        "organization",
        "sasl_user",
        "sasl_password",
    },
    "timing": {
        "bootstrap_attempts",
        "bootstrap_interval",
        "bootstrap_backoff",
        "bootstrap_shutdown_timeout",
        "startup_grace",
        "stop_timeout",
        "stop_interval",
        "restart_pause",
    },
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _merge_layer(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _merge_layer(merged, env_values)

    if overrides:
        _merge_layer(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    variant = raw.get("default_variant")
    if variant is not None and not str(variant).strip():
        raise ConfigError("default_variant must be a non-empty string.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    root_dir = _to_path(raw.get("root_dir")).resolve()
    install_root = _to_path(raw.get("install_root"))
    crypto_root = _to_path(raw.get("crypto_root"))

    logs_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_value) if logs_value else root_dir / "logs"

    templates_value = raw.get("templates_dir")
    templates_dir = _to_path(templates_value) if templates_value else None

    return AppConfig(
        config_file=config_file,
        root_dir=root_dir,
        install_root=install_root,
        crypto_root=crypto_root,
        default_variant=str(raw.get("default_variant", "30")).strip(),
        logs_dir=logs_dir,
        templates_dir=templates_dir,
        ports=_build_ports(_as_dict(raw.get("ports"), "ports")),
        tls=_build_tls(_as_dict(raw.get("tls"), "tls")),
        directory=_build_directory(_as_dict(raw.get("directory"), "directory")),
        timing=_build_timing(_as_dict(raw.get("timing"), "timing")),
    )


def _build_ports(mapping: Mapping[str, object]) -> PortsConfig:
    defaults = PortsConfig()
    ports = PortsConfig(
        ldap=_expect_port(mapping.get("ldap"), "ports.ldap", default=defaults.ldap),
        ldaps=_expect_port(mapping.get("ldaps"), "ports.ldaps", default=defaults.ldaps),
        alternate_ldap_base=_expect_port(
            mapping.get("alternate_ldap_base"),
            "ports.alternate_ldap_base",
            default=defaults.alternate_ldap_base,
        ),
        alternate_ldaps_base=_expect_port(
            mapping.get("alternate_ldaps_base"),
            "ports.alternate_ldaps_base",
            default=defaults.alternate_ldaps_base,
        ),
        offsets=_build_offsets(mapping.get("offsets"), defaults.offsets),
        default_offset=_expect_int(
            mapping.get("default_offset"),
            "ports.default_offset",
            default=defaults.default_offset,
        ),
    )
    if ports.ldap == ports.ldaps:
        raise ConfigError("ports.ldap and ports.ldaps must differ.")
    if ports.default_offset < 0:
        raise ConfigError("ports.default_offset must be non-negative.")
    if ports.default_offset in ports.offsets.values():
        raise ConfigError("ports.default_offset must not reuse a versioned offset.")
    return ports


def _build_offsets(value: object | None, default: Mapping[str, int]) -> dict[str, int]:
    if value is None:
        return dict(default)
    if not isinstance(value, Mapping):
        raise ConfigError(
            f"Expected ports.offsets to be a mapping. Got {type(value).__name__}."
        )
    offsets: dict[str, int] = {}
    for key, item in value.items():
        # YAML turns unquoted 2.6 into a float; accept it but store the text form.
        label = str(key).strip()
        if not label:
            raise ConfigError("ports.offsets keys must be non-empty version strings.")
        offset = _expect_int(item, f"ports.offsets.{label}", default=0)
        if offset < 0:
            raise ConfigError(f"ports.offsets.{label} must be non-negative.")
        offsets[label] = offset
    if len(set(offsets.values())) != len(offsets):
        raise ConfigError("ports.offsets values must be unique so instances never overlap.")
    return offsets


def _build_tls(mapping: Mapping[str, object]) -> TLSConfig:
    defaults = TLSConfig()
    key_size = _expect_int(mapping.get("key_size"), "tls.key_size", default=defaults.key_size)
    if key_size < 2048:
        raise ConfigError("tls.key_size must be at least 2048 bits.")
    days = _expect_int(mapping.get("days"), "tls.days", default=defaults.days)
    if days <= 0:
        raise ConfigError("tls.days must be greater than zero.")
    openssl_raw = mapping.get("openssl_bin")
    openssl_bin = str(openssl_raw).strip() if openssl_raw else None
    return TLSConfig(key_size=key_size, days=days, openssl_bin=openssl_bin or None)


def _build_directory(mapping: Mapping[str, object]) -> DirectoryConfig:
    defaults = DirectoryConfig()
    values: dict[str, str] = {}
    for key in _SECTION_KEYS["directory"]:
        raw = mapping.get(key, getattr(defaults, key))
        text = str(raw).strip() if raw is not None else ""
        if not text:
            raise ConfigError(f"directory.{key} must be a non-empty string.")
        values[key] = text
    return DirectoryConfig(**values)


def _build_timing(mapping: Mapping[str, object]) -> TimingConfig:
    defaults = TimingConfig()
    attempts = _expect_int(
        mapping.get("bootstrap_attempts"),
        "timing.bootstrap_attempts",
        default=defaults.bootstrap_attempts,
    )
    if attempts < 1:
        raise ConfigError("timing.bootstrap_attempts must be at least 1.")
    floats: dict[str, float] = {}
    for key in (
        "bootstrap_interval",
        "bootstrap_backoff",
        "bootstrap_shutdown_timeout",
        "startup_grace",
        "stop_timeout",
        "stop_interval",
        "restart_pause",
    ):
        floats[key] = _expect_non_negative_float(
            mapping.get(key),
            f"timing.{key}",
            default=getattr(defaults, key),
        )
    if floats["stop_interval"] <= 0:
        raise ConfigError("timing.stop_interval must be greater than zero.")
    if floats["bootstrap_backoff"] < 1.0:
        raise ConfigError("timing.bootstrap_backoff must be at least 1.0.")
    return TimingConfig(bootstrap_attempts=attempts, **floats)


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _merge_layer(target: MutableMapping[str, object], layer: Mapping[str, object]) -> None:
    """Merge *layer* into *target*; tables in ``REPLACED_TABLES`` are swapped whole."""
    for section, key in REPLACED_TABLES:
        values = layer.get(section)
        current = target.get(section)
        if isinstance(values, Mapping) and key in values and isinstance(current, MutableMapping):
            current.pop(key, None)
    _deep_merge(target, layer)


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, {str(k): v for k, v in value.items()})
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_port(value: object | None, label: str, *, default: int) -> int:
    port = _expect_int(value, label, default=default)
    if not 1 <= port <= 65535:
        raise ConfigError(f"{label} must be between 1 and 65535. Got {port}.")
    return port


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DirectoryConfig",
    "PortsConfig",
    "TLSConfig",
    "TimingConfig",
    "load_config",
]
