"""Tests for generated configuration artifacts."""
from __future__ import annotations

from pathlib import Path

import pytest

from slapdctl.configgen import ConfigGenerator, relativize_core_schema
from slapdctl.context import InstanceContext
from slapdctl.templates import TemplateEngine, TemplateRenderError


@pytest.fixture
def generator(engine: TemplateEngine, instance_context: InstanceContext) -> ConfigGenerator:
    return ConfigGenerator(engine, instance_context)


def test_bootstrap_config_declares_databases(
    generator: ConfigGenerator,
    instance_context: InstanceContext,
) -> None:
    """The bootstrap file loads mdb and config with the instance paths."""
    generator.write_bootstrap_config()

    text = instance_context.paths.bootstrap_config.read_text(encoding="utf-8")
    prefix = instance_context.prefix
    assert f"include {prefix}/etc/openldap/schema/core.schema" in text
    assert f"modulepath {prefix}/libexec/openldap" in text
    assert "moduleload back_mdb" in text
    assert f"pidfile {instance_context.paths.pid_file}" in text
    assert 'suffix "dc=my-domain,dc=com"' in text
    assert 'rootdn "cn=Manager,dc=my-domain,dc=com"' in text
    assert f"directory {instance_context.paths.data_dir}" in text
    assert "cn=peercred,cn=external,cn=auth" in text
    assert f"TLSCACertificateFile {instance_context.paths.certificate}" in text
    assert f"TLSCertificateFile {instance_context.paths.certificate}" in text
    assert f"TLSCertificateKeyFile {instance_context.paths.private_key}" in text
    assert "TLSVerifyClient never" in text


def test_client_config_trusts_self_signed_certificate(
    generator: ConfigGenerator,
    instance_context: InstanceContext,
) -> None:
    """ldap.conf points at the instance certificate and is marked test-only."""
    generator.write_client_config()

    text = instance_context.paths.client_config.read_text(encoding="utf-8")
    assert f"TLS_CACERT {instance_context.paths.certificate}" in text
    assert "TLS_REQCERT never" in text
    assert "TEST ENVIRONMENT ONLY" in text


def test_env_script_is_executable_and_exports_test_variables(
    generator: ConfigGenerator,
    instance_context: InstanceContext,
) -> None:
    """ldap_env.sh exports library paths, LDAPCONF and the LDAP_TEST_* set."""
    generator.write_env_script()

    script = instance_context.paths.env_script
    assert (script.stat().st_mode & 0o777) == 0o755
    text = script.read_text(encoding="utf-8")
    assert text.startswith("#!/bin/bash\n")
    assert f'export LDAPCONF="{instance_context.paths.client_config}"' in text
    assert instance_context.library_path in text
    assert 'export LDAP_TEST_PORT="389"' in text
    assert 'export LDAP_TEST_URI="ldap://localhost:389"' in text
    assert 'export LDAP_TEST_BASE="dc=my-domain,dc=com"' in text
    assert 'export LDAP_TEST_SASL_USER="userA"' in text
    assert "alias ldapsearch-tls=" in text
    assert "ldaps://localhost:636" in text


def test_write_all_is_deterministic(generator: ConfigGenerator) -> None:
    """A second pass with identical parameters changes nothing."""
    first = generator.write_all()
    second = generator.write_all()

    assert len(first) == 3
    assert second == []


def test_write_all_reports_changed_ports(
    engine: TemplateEngine,
    instance_context: InstanceContext,
) -> None:
    """Rendering again with other ports rewrites the client artifacts."""
    ConfigGenerator(engine, instance_context).write_all()
    moved = InstanceContext(
        paths=instance_context.paths,
        prefix=instance_context.prefix,
        crypto_prefix=instance_context.crypto_prefix,
        ports=type(instance_context.ports)(
            ldap_port=3399,
            ldaps_port=6373,
            ldapi_socket=instance_context.ports.ldapi_socket,
            alternate=True,
        ),
        directory=instance_context.directory,
    )

    changed = ConfigGenerator(engine, moved).write_all()

    assert instance_context.paths.env_script in changed
    assert instance_context.paths.bootstrap_config not in changed


def test_minimal_runtime_tree(
    generator: ConfigGenerator,
    instance_context: InstanceContext,
) -> None:
    """The fallback tree holds the global, schema, module and database entries."""
    written = generator.write_minimal_runtime_config()

    root = instance_context.paths.runtime_config_dir
    names = {path.relative_to(root).as_posix() for path in written}
    assert names == {
        "cn=config.ldif",
        "cn=config/cn=schema.ldif",
        "cn=config/cn=module{0}.ldif",
        "cn=config/olcDatabase={0}config.ldif",
        "cn=config/olcDatabase={1}mdb.ldif",
    }
    mdb = (root / "cn=config" / "olcDatabase={1}mdb.ldif").read_text(encoding="utf-8")
    assert "olcSuffix: dc=my-domain,dc=com" in mdb
    assert f"olcDbDirectory: {instance_context.paths.data_dir}" in mdb
    assert ((root / "cn=config.ldif").stat().st_mode & 0o777) == 0o600


def test_minimal_runtime_tree_includes_core_schema(
    generator: ConfigGenerator,
    instance_context: InstanceContext,
) -> None:
    """A shipped core.ldif becomes the first schema entry."""
    schema_dir = instance_context.prefix / "etc" / "openldap" / "schema"
    schema_dir.mkdir(parents=True)
    (schema_dir / "core.ldif").write_text(
        "dn: cn=core,cn=schema,cn=config\nobjectClass: olcSchemaConfig\ncn: core\n",
        encoding="utf-8",
    )

    generator.write_minimal_runtime_config()

    core = instance_context.paths.runtime_config_dir / "cn=config" / "cn=schema" / "cn={0}core.ldif"
    assert core.read_text(encoding="utf-8") == (
        "dn: cn={0}core\nobjectClass: olcSchemaConfig\ncn: {0}core\n"
    )


def test_relativize_core_schema_leaves_other_lines() -> None:
    """Only the entry DN and cn are rewritten."""
    text = "dn: cn=core,cn=schema,cn=config\ncn: core\nolcAttributeTypes: ( 2.5.4.3 NAME 'cn' )\n"

    result = relativize_core_schema(text)

    assert result.splitlines() == [
        "dn: cn={0}core",
        "cn: {0}core",
        "olcAttributeTypes: ( 2.5.4.3 NAME 'cn' )",
    ]


def test_overlays_and_index_render_against_database_dn(generator: ConfigGenerator) -> None:
    """Overlay and index LDIF target the discovered database entry."""
    db_dn = "olcDatabase={2}mdb,cn=config"

    overlays = generator.render("ldif/overlays.ldif.j2", db_dn=db_dn)
    index = generator.render("ldif/index.ldif.j2", db_dn=db_dn)

    assert f"dn: olcOverlay=sssvlv,{db_dn}" in overlays
    assert f"dn: olcOverlay=ppolicy,{db_dn}" in overlays
    assert f"dn: olcOverlay=dds,{db_dn}" in overlays
    assert index.startswith(f"dn: {db_dn}\n")
    assert "olcDbIndex: entryExpireTimestamp eq" in index


def test_missing_variable_raises_render_error(generator: ConfigGenerator) -> None:
    """Templates reject undefined variables instead of rendering blanks."""
    with pytest.raises(TemplateRenderError):
        generator.render("ldif/index.ldif.j2")


def test_override_directory_shadows_packaged_template(
    tmp_path: Path,
    instance_context: InstanceContext,
) -> None:
    """Templates in the override directory win over packaged ones."""
    override = tmp_path / "overrides" / "ldif"
    override.mkdir(parents=True)
    (override / "seed.ldif.j2").write_text("dn: o=custom,{{ suffix }}\no: custom\n", encoding="utf-8")

    generator = ConfigGenerator(TemplateEngine.with_overrides(tmp_path / "overrides"), instance_context)

    assert generator.render("ldif/seed.ldif.j2") == "dn: o=custom,dc=my-domain,dc=com\no: custom\n"
    assert "dn: dc=my-domain,dc=com" in generator.render("ldif/base.ldif.j2")
