"""Tests for the bampctl command line interface."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner, Result

from bampctl import __version__
from bampctl.backups import BackupsRegistry
from bampctl.cli import RuntimeContext, app
from bampctl.config import AppConfig
from bampctl.locking import LockManager
from bampctl.logging import StructuredLogger
from bampctl.templates import TemplateEngine

from conftest import FakeRunner

runner = CliRunner()


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _records(config: AppConfig) -> list[dict[str, object]]:
    path = config.logs_dir / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


@pytest.fixture
def runtime(
    config: AppConfig,
    fake_runner: FakeRunner,
    registry: BackupsRegistry,
) -> RuntimeContext:
    """Runtime wired to the simulated host; reused across invocations."""
    return RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
        backups=registry,
        runner=fake_runner,
        sleep=lambda seconds: None,
    )


def _invoke(runtime: RuntimeContext, *args: str, input: str | None = None) -> Result:  # noqa: A002
    return runner.invoke(app, list(args), obj=runtime, input=input)


@pytest.fixture
def installed_runtime(runtime: RuntimeContext) -> RuntimeContext:
    """Runtime after a successful ``bampctl install``."""
    result = _invoke(runtime, "install")
    assert result.exit_code == 0, result.stdout
    return runtime


def test_version_flag(runtime: RuntimeContext, config: AppConfig) -> None:
    """--version prints the package version and logs the call."""
    result = _invoke(runtime, "--version")

    assert result.exit_code == 0
    assert f"bampctl {__version__}" in result.stdout
    record = _records(config)[-1]
    assert record["command"] == "root --version"
    assert record["result"]["status"] == "success"  # type: ignore[index]


def test_install_reports_url(runtime: RuntimeContext, config: AppConfig) -> None:
    """install converges the stack and logs every journalled step."""
    result = _invoke(runtime, "install")

    assert result.exit_code == 0, result.stdout
    assert "Stack installed with PHP 8.2" in result.stdout
    record = _records(config)[-1]
    assert record["command"] == "install"
    assert record["result"]["status"] == "success"  # type: ignore[index]
    assert "lock_wait_ms" in record
    step_names = {step["name"] for step in record["steps"]}  # type: ignore[union-attr]
    assert {"package.httpd", "php.info"} <= step_names


def test_status_json(installed_runtime: RuntimeContext) -> None:
    """status --json reports services and the active PHP version."""
    result = _invoke(installed_runtime, "status", "--json")

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["php_version"] == "8.2"
    assert payload["services"]["httpd"]["state"] == "running"  # type: ignore[index]
    assert payload["mysql"]["reachable"] is True  # type: ignore[index]


def test_status_table_on_bare_host(runtime: RuntimeContext) -> None:
    """The status table reports missing components."""
    result = _invoke(runtime, "status")

    assert result.exit_code == 0, result.stdout
    assert "not_installed" in result.stdout
    assert "unreachable" in result.stdout
    assert "missing" in result.stdout


def test_create_and_list_sites(installed_runtime: RuntimeContext, config: AppConfig) -> None:
    """create-site prints the URL and the site appears in list-sites."""
    result = _invoke(installed_runtime, "create-site", "blog")

    assert result.exit_code == 0, result.stdout
    assert "Site ready: https://blog.test" in result.stdout
    assert (config.paths.vhosts_dir / "blog.test.conf").is_file()

    listing = _invoke(installed_runtime, "list-sites", "--json")
    assert listing.exit_code == 0, listing.stdout
    sites = _extract_json(listing.stdout)["sites"]
    assert [site["domain"] for site in sites] == ["blog.test"]  # type: ignore[union-attr, index]
    assert sites[0]["https_port"] == 443  # type: ignore[index]


def test_list_sites_empty(runtime: RuntimeContext) -> None:
    """An empty vhost directory renders a placeholder row or an empty list."""
    table = _invoke(runtime, "list-sites")
    assert table.exit_code == 0
    assert "(none)" in table.stdout

    as_json = _invoke(runtime, "list-sites", "--json")
    assert _extract_json(as_json.stdout) == {"sites": []}


def test_create_site_invalid_name_exits_validation(runtime: RuntimeContext, config: AppConfig) -> None:
    """Invalid names exit 2 and are logged as errors."""
    result = _invoke(runtime, "create-site", "bad name")

    assert result.exit_code == 2
    assert "Invalid project name" in result.stdout
    record = _records(config)[-1]
    assert record["command"] == "create-site"
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert record["result"]["rc"] == 2  # type: ignore[index]


def test_create_site_without_httpd_exits_environment(runtime: RuntimeContext) -> None:
    """Missing prerequisites exit 3 with a remediation hint."""
    result = _invoke(runtime, "create-site", "blog")

    assert result.exit_code == 3
    assert "bampctl install" in result.stdout


def test_dry_run_create_site_changes_nothing(
    installed_runtime: RuntimeContext,
    config: AppConfig,
    fake_runner: FakeRunner,
) -> None:
    """--dry-run previews the steps and writes no vhost."""
    mutations = len(fake_runner.mutating_calls())

    result = _invoke(installed_runtime, "--dry-run", "create-site", "shop")

    assert result.exit_code == 0, result.stdout
    assert "Dry run" in result.stdout
    assert "nothing was changed" in result.stdout
    assert "skipped" in result.stdout
    assert not (config.paths.vhosts_dir / "shop.test.conf").exists()
    assert len(fake_runner.mutating_calls()) == mutations

    # The flag does not leak into the next invocation on the same runtime.
    real = _invoke(installed_runtime, "create-site", "shop")
    assert real.exit_code == 0, real.stdout
    assert (config.paths.vhosts_dir / "shop.test.conf").is_file()


def test_remove_site_prompts(installed_runtime: RuntimeContext, config: AppConfig) -> None:
    """remove-site asks first; --force skips the prompt."""
    assert _invoke(installed_runtime, "create-site", "blog").exit_code == 0
    vhost = config.paths.vhosts_dir / "blog.test.conf"

    declined = _invoke(installed_runtime, "remove-site", "blog", input="n\n")
    assert declined.exit_code == 0, declined.stdout
    assert "Kept site blog.test." in declined.stdout
    assert vhost.is_file()

    forced = _invoke(installed_runtime, "remove-site", "blog", "--force")
    assert forced.exit_code == 0, forced.stdout
    assert "Removed site blog.test." in forced.stdout
    assert not vhost.exists()


def test_remove_unknown_site_exits_validation(installed_runtime: RuntimeContext) -> None:
    """Unknown sites are reported without changing anything."""
    result = _invoke(installed_runtime, "remove-site", "ghost", "--force")

    assert result.exit_code == 2
    assert "ghost.test" in result.stdout


def test_php_versions_json(installed_runtime: RuntimeContext) -> None:
    """php-versions --json flags the active version."""
    result = _invoke(installed_runtime, "php-versions", "--json")

    assert result.exit_code == 0, result.stdout
    versions = _extract_json(result.stdout)["versions"]
    active = [entry["version"] for entry in versions if entry["active"]]  # type: ignore[union-attr, index]
    assert active == ["8.2"]


def test_switch_version_failure_reports_backup(
    installed_runtime: RuntimeContext,
    fake_runner: FakeRunner,
    config: AppConfig,
) -> None:
    """A failed httpd -t exits 5 and names the preserved backup."""
    fake_runner.install("php@8.3")
    fake_runner.httpd_ok = False

    result = _invoke(installed_runtime, "switch-version", "8.3")

    assert result.exit_code == 5
    assert "Pre-change backup preserved at" in result.stdout
    record = _records(config)[-1]
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert record["result"]["backups"]  # type: ignore[index]


def test_restart_all_reports_warnings(
    installed_runtime: RuntimeContext,
    fake_runner: FakeRunner,
    config: AppConfig,
) -> None:
    """A service that fails to restart is a warning, not a failure."""
    fake_runner.never_start.add("mysql@8.4")

    result = _invoke(installed_runtime, "restart-all")

    assert result.exit_code == 0, result.stdout
    assert "warning:" in result.stdout
    record = _records(config)[-1]
    assert record["result"]["status"] == "warning"  # type: ignore[index]
    assert fake_runner.service_state["dnsmasq"] == "started"


def test_stop_all(installed_runtime: RuntimeContext, fake_runner: FakeRunner) -> None:
    """stop-all stops httpd and mysql."""
    result = _invoke(installed_runtime, "stop-all")

    assert result.exit_code == 0, result.stdout
    assert "Services stopped." in result.stdout
    assert fake_runner.service_state["httpd"] == "none"


def test_lock_contention_exits_environment(installed_runtime: RuntimeContext) -> None:
    """A held lock makes mutating commands fail with exit 3."""
    installed_runtime.locks = LockManager(installed_runtime.config.runtime_dir, 0.1)

    with installed_runtime.locks.mutate():
        result = _invoke(installed_runtime, "create-site", "blog")

    assert result.exit_code == 3
    assert "lock" in result.stdout.lower()


def test_db_commands(
    installed_runtime: RuntimeContext,
    fake_runner: FakeRunner,
    tmp_path: Path,
) -> None:
    """db create, list, dump and drop work end to end."""
    created = _invoke(installed_runtime, "db", "create", "shop")
    assert created.exit_code == 0, created.stdout
    assert "Database 'shop' created." in created.stdout

    duplicate = _invoke(installed_runtime, "db", "create", "shop")
    assert duplicate.exit_code == 2
    assert "already exists" in duplicate.stdout

    table = _invoke(installed_runtime, "db", "list")
    assert table.exit_code == 0, table.stdout
    assert "shop" in table.stdout
    assert "1.50" in table.stdout

    listing = _invoke(installed_runtime, "db", "list", "--json")
    assert _extract_json(listing.stdout) == {
        "databases": [{"name": "shop", "size_mb": 1.5, "tables": 3}]
    }

    dump = tmp_path / "shop.sql"
    dumped = _invoke(installed_runtime, "db", "dump", "shop", "--output", str(dump))
    assert dumped.exit_code == 0, dumped.stdout
    assert dump.read_text(encoding="utf-8").startswith("-- MySQL dump of shop")

    imported = _invoke(installed_runtime, "db", "import", "copy", str(dump))
    assert imported.exit_code == 0, imported.stdout
    assert "copy" in fake_runner.databases

    system = _invoke(installed_runtime, "db", "drop", "mysql", "--force")
    assert system.exit_code == 2

    dropped = _invoke(installed_runtime, "db", "drop", "shop", input="y\n")
    assert dropped.exit_code == 0, dropped.stdout
    assert "Database 'shop' dropped." in dropped.stdout
    assert "shop" not in fake_runner.databases


def test_db_list_unreachable_server(provisioned: FakeRunner, runtime: RuntimeContext) -> None:
    """Client failures surface as provider errors."""
    provisioned.mysql_reachable = False

    result = _invoke(runtime, "db", "list")

    assert result.exit_code == 4
    assert "2002" in result.stdout


def test_db_dump_all_then_import_gzip(
    installed_runtime: RuntimeContext,
    fake_runner: FakeRunner,
    tmp_path: Path,
) -> None:
    """dump-all writes one .sql.gz per database and import reads it back."""
    fake_runner.databases.update({"blog", "shop"})
    target = tmp_path / "dumps"

    result = _invoke(installed_runtime, "db", "dump-all", str(target))

    assert result.exit_code == 0, result.stdout
    assert "Dumped 2 database(s)" in result.stdout
    archive = next(target.glob("shop_*.sql.gz"))

    imported = _invoke(installed_runtime, "db", "import", "copy", str(archive))

    assert imported.exit_code == 0, imported.stdout
    assert fake_runner.inputs[-1] == b"-- MySQL dump of shop\nCREATE TABLE t (id INT);\n"


def test_db_reset_password_prompt_and_force(
    installed_runtime: RuntimeContext,
    config: AppConfig,
) -> None:
    """The new password is prompted for unless --force picks the default."""
    credentials = config.paths.credentials_file

    prompted = _invoke(installed_runtime, "db", "reset-password", input="n3w\nn3w\n")

    assert prompted.exit_code == 0, prompted.stdout
    assert "password = n3w" in credentials.read_text(encoding="utf-8")

    forced = _invoke(installed_runtime, "db", "reset-password", "--force")

    assert forced.exit_code == 0, forced.stdout
    assert "password = root" in credentials.read_text(encoding="utf-8")
    assert credentials.stat().st_mode & 0o777 == 0o600


def test_failed_switch_backup_is_listed(
    installed_runtime: RuntimeContext,
    fake_runner: FakeRunner,
) -> None:
    """The snapshot kept by a failed self-test shows up in backups."""
    fake_runner.install("php@8.3")
    fake_runner.httpd_ok = False

    failed = _invoke(installed_runtime, "switch-version", "8.3")
    assert failed.exit_code == 5

    listing = _invoke(installed_runtime, "backups", "--json")
    operations = [entry["operation"] for entry in _extract_json(listing.stdout)["backups"]]  # type: ignore[union-attr, index]
    assert "switch-version" in operations


def test_backups_lists_config_snapshots(installed_runtime: RuntimeContext, config: AppConfig) -> None:
    """backups --json lists httpd.conf snapshots taken by install."""
    result = _invoke(installed_runtime, "backups", "--json")

    assert result.exit_code == 0, result.stdout
    entries = _extract_json(result.stdout)["backups"]
    kinds = {entry["kind"] for entry in entries}  # type: ignore[union-attr, index]
    assert kinds == {"config"}

    filtered = _invoke(
        installed_runtime, "backups", "--json", "--source", str(config.paths.httpd_conf)
    )
    sources = {entry["source"] for entry in _extract_json(filtered.stdout)["backups"]}  # type: ignore[union-attr, index]
    assert sources == {str(config.paths.httpd_conf)}


def test_backups_empty_table(runtime: RuntimeContext) -> None:
    """No recorded backups renders a placeholder row."""
    result = _invoke(runtime, "backups")

    assert result.exit_code == 0
    assert "(none)" in result.stdout


def test_uninstall_cancelled_then_forced(
    installed_runtime: RuntimeContext,
    fake_runner: FakeRunner,
    config: AppConfig,
) -> None:
    """Declining keeps the stack; --force removes it after a backup."""
    cancelled = _invoke(installed_runtime, "uninstall", input="n\n")
    assert cancelled.exit_code == 0, cancelled.stdout
    assert "Uninstall cancelled." in cancelled.stdout
    assert config.paths.httpd_conf.exists()

    forced = _invoke(installed_runtime, "uninstall", "--force", "--keep-data")
    assert forced.exit_code == 0, forced.stdout
    assert "Stack uninstalled." in forced.stdout
    assert fake_runner.installed == {}
    assert not config.paths.httpd_conf.exists()
    assert config.paths.credentials_file.exists()
