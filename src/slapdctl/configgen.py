"""Render the configuration artifacts of an instance."""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from .context import InstanceContext
from .templates import TemplateEngine, write_if_changed

ENV_SCRIPT_MODE = 0o755
RUNTIME_FILE_MODE = 0o600

# (template, path relative to slapd.d) for the minimal runtime tree.
MINIMAL_RUNTIME_FILES: tuple[tuple[str, str], ...] = (
    ("slapd.d/config.ldif.j2", "cn=config.ldif"),
    ("slapd.d/schema.ldif.j2", "cn=config/cn=schema.ldif"),
    ("slapd.d/module.ldif.j2", "cn=config/cn=module{0}.ldif"),
    ("slapd.d/config_db.ldif.j2", "cn=config/olcDatabase={0}config.ldif"),
    ("slapd.d/mdb_db.ldif.j2", "cn=config/olcDatabase={1}mdb.ldif"),
)
CORE_SCHEMA_TARGET = "cn=config/cn=schema/cn={0}core.ldif"

_DN_LINE = re.compile(r"^dn:\s*cn=core,cn=schema,cn=config[ \t]*$", re.IGNORECASE | re.MULTILINE)
_CN_LINE = re.compile(r"^cn:\s*core[ \t]*$", re.IGNORECASE | re.MULTILINE)


@dataclass(slots=True)
class ConfigGenerator:
    """Produce the bootstrap, client and runtime configuration of an instance.

    Output depends only on the context, so rendering twice with identical
    parameters yields byte-identical files.
    """

    engine: TemplateEngine
    context: InstanceContext

    def render(self, template_name: str, **extra: object) -> str:
        """Render *template_name* with the instance variables plus *extra*."""
        return self.engine.render_to_string(template_name, self.context.template_context(**extra))

    def write_bootstrap_config(self) -> bool:
        """Write ``slapd-bootstrap.conf``."""
        return self._write("slapd/bootstrap.conf.j2", self.context.paths.bootstrap_config)

    def write_client_config(self) -> bool:
        """Write the client ``ldap.conf``."""
        return self._write("client/ldap.conf.j2", self.context.paths.client_config)

    def write_env_script(self) -> bool:
        """Write the executable ``ldap_env.sh``."""
        return self._write(
            "client/ldap_env.sh.j2",
            self.context.paths.env_script,
            mode=ENV_SCRIPT_MODE,
        )

    def write_all(self) -> list[Path]:
        """Write every generated file and return those that changed."""
        paths = self.context.paths
        changed: list[Path] = []
        if self.write_bootstrap_config():
            changed.append(paths.bootstrap_config)
        if self.write_client_config():
            changed.append(paths.client_config)
        if self.write_env_script():
            changed.append(paths.env_script)
        return changed

    def write_minimal_runtime_config(self) -> list[Path]:
        """Hand-assemble a minimal ``slapd.d`` tree.

        The tree holds the global entry, the schema container, the module
        list, the config database and the primary mdb database. When the
        installation ships ``core.ldif`` it is added as the first schema.
        """
        root = self.context.paths.runtime_config_dir
        root.mkdir(parents=True, exist_ok=True)
        written: list[Path] = []
        for template_name, relative in MINIMAL_RUNTIME_FILES:
            destination = root / relative
            self._write(template_name, destination, mode=RUNTIME_FILE_MODE)
            written.append(destination)

        core = self.context.prefix / "etc" / "openldap" / "schema" / "core.ldif"
        if core.is_file():
            destination = root / CORE_SCHEMA_TARGET
            write_if_changed(
                destination,
                relativize_core_schema(core.read_text(encoding="utf-8")),
                mode=RUNTIME_FILE_MODE,
            )
            written.append(destination)
        return written

    def _write(self, template_name: str, destination: Path, *, mode: int = 0o644) -> bool:
        return self.engine.render_to_path(
            template_name,
            destination,
            self.context.template_context(),
            mode=mode,
        )


def relativize_core_schema(text: str) -> str:
    """Rewrite the distribution ``core.ldif`` into its ``slapd.d`` entry form."""
    text = _DN_LINE.sub("dn: cn={0}core", text, count=1)
    return _CN_LINE.sub("cn: {0}core", text, count=1)


__all__ = [
    "ConfigGenerator",
    "ENV_SCRIPT_MODE",
    "MINIMAL_RUNTIME_FILES",
    "relativize_core_schema",
]
