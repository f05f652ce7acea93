"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from bampctl.backups import BackupsRegistry
from bampctl.config import AppConfig, load_config
from bampctl.orchestrator import Orchestrator
from bampctl.policy import ReconciliationPolicy
from bampctl.providers import CommandResult, CommandRunner

STOCK_HTTPD_CONF = """\
ServerRoot "/opt/homebrew/opt/httpd"
Listen 8080
LoadModule mpm_prefork_module lib/httpd/modules/mod_mpm_prefork.so
LoadModule authz_core_module lib/httpd/modules/mod_authz_core.so
#LoadModule socache_shmcb_module lib/httpd/modules/mod_socache_shmcb.so
#LoadModule ssl_module lib/httpd/modules/mod_ssl.so
#LoadModule rewrite_module lib/httpd/modules/mod_rewrite.so
#ServerName www.example.com:8080
DocumentRoot "/opt/homebrew/var/www"
<Directory "/opt/homebrew/var/www">
    Options Indexes FollowSymLinks
    AllowOverride None
    Require all granted
</Directory>
<IfModule dir_module>
    DirectoryIndex index.html
</IfModule>
"""

STOCK_PHP_INI = """\
[PHP]
display_errors = Off
error_reporting = E_ALL & ~E_DEPRECATED
memory_limit = 128M
;upload_max_filesize = 2M
"""

SYSTEM_SCHEMAS = ("information_schema", "mysql", "performance_schema", "sys")


def write_certificate(
    cert_path: Path,
    key_path: Path,
    *,
    subjects: Sequence[str] = ("example.test",),
    days: int = 825,
    key_mode: int = 0o644,
) -> datetime:
    """Write a self-signed certificate/key pair and return its expiry."""
    now = datetime.now(UTC).replace(microsecond=0)
    not_after = now + timedelta(days=days)
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subjects[0])])
    dns_names = [x509.DNSName(subject) for subject in subjects if ":" not in subject]
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(not_after)
    )
    if dns_names:
        builder = builder.add_extension(x509.SubjectAlternativeName(dns_names), critical=False)
    cert = builder.sign(key, hashes.SHA256())
    cert_path.parent.mkdir(parents=True, exist_ok=True)
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    cert_path.chmod(0o644)
    key_path.chmod(key_mode)
    return not_after


class FakeRunner(CommandRunner):
    """In-memory stand-in for brew, httpd, mkcert, mysql and pgrep.

    Packages, services and databases are tracked as plain state so multi-step
    operations behave like they would against a real host. ``script`` registers
    canned results for argv prefixes and takes precedence over the simulation.
    """

    def __init__(self, brew_prefix: Path, httpd_conf: Path | None = None) -> None:
        super().__init__()
        self.brew_prefix = brew_prefix
        self.httpd_conf = httpd_conf or brew_prefix / "etc" / "httpd" / "httpd.conf"
        self.calls: list[list[str]] = []
        self.inputs: list[str | bytes | None] = []
        self.installed: dict[str, str] = {}
        self.service_state: dict[str, str] = {}
        self.never_start: set[str] = set()
        self.processes: set[str] = set()
        self.httpd_ok = True
        self.httpd_error = "AH00526: Syntax error on line 1"
        self.mkcert_available = True
        self.mysql_reachable = True
        self.databases: set[str] = set(SYSTEM_SCHEMAS)
        self.dump_payload: bytes | None = None
        self.failing_dumps: set[str] = set()
        self._scripted: list[tuple[tuple[str, ...], CommandResult]] = []

    # Scripting ----------------------------------------------------------
    def script(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        missing: bool = False,
    ) -> None:
        """Return a canned result for commands starting with *prefix*."""
        result = CommandResult(prefix, returncode, stdout=stdout, stderr=stderr, missing=missing)
        self._scripted.insert(0, (prefix, result))

    def install(self, *packages: str, running: bool = False) -> None:
        """Mark *packages* installed (and optionally started)."""
        for package in packages:
            self._install(package)
            if running:
                self.service_state[package] = "started"

    def commands(self, tool: str) -> list[list[str]]:
        """Calls whose executable name is *tool*."""
        return [call for call in self.calls if Path(call[0]).name == tool]

    def mutating_calls(self) -> list[list[str]]:
        """Calls that would change host state."""
        mutating: list[list[str]] = []
        for call in self.calls:
            tool = Path(call[0]).name
            if tool == "brew" and len(call) > 1 and call[1] in {"install", "uninstall", "link"}:
                mutating.append(call)
            elif tool == "brew" and call[1:2] == ["services"] and call[2:3] != ["list"]:
                mutating.append(call)
            elif tool == "mkcert" and "-version" not in call:
                mutating.append(call)
            elif tool == "mysql" and any(
                word in " ".join(call) for word in ("CREATE", "DROP", "ALTER")
            ):
                mutating.append(call)
        return mutating

    # Dispatch -----------------------------------------------------------
    def run(
        self,
        args: Sequence[str],
        *,
        timeout: float | None = None,
        input: str | bytes | None = None,  # noqa: A002
        binary: bool = False,
    ) -> CommandResult:
        result = self._dispatch(args, input)
        if binary and not result.raw_stdout:
            result = replace(result, stdout="", raw_stdout=result.stdout.encode("utf-8"))
        return result

    def _dispatch(self, args: Sequence[str], input: str | bytes | None) -> CommandResult:  # noqa: A002
        argv = tuple(str(arg) for arg in args)
        self.calls.append(list(argv))
        self.inputs.append(input)
        for prefix, response in self._scripted:
            if argv[: len(prefix)] == prefix:
                return replace(response, args=argv)
        handler = {
            "brew": self._brew,
            "httpd": self._httpd,
            "mkcert": self._mkcert,
            "mysql": self._mysql,
            "mysqldump": self._mysqldump,
            "pgrep": self._pgrep,
        }.get(Path(argv[0]).name)
        if handler is None:
            return CommandResult(argv, 127, stderr="not found", missing=True)
        return handler(argv)

    @staticmethod
    def _ok(argv: tuple[str, ...], stdout: str = "") -> CommandResult:
        return CommandResult(argv, 0, stdout=stdout)

    @staticmethod
    def _fail(argv: tuple[str, ...], stderr: str, returncode: int = 1) -> CommandResult:
        return CommandResult(argv, returncode, stderr=stderr)

    def _install(self, package: str) -> None:
        self.installed[package] = "1.0"
        self.service_state.setdefault(package, "none")
        if package.startswith("php@"):
            module = self.brew_prefix / "opt" / package / "lib" / "httpd" / "modules" / "libphp.so"
            module.parent.mkdir(parents=True, exist_ok=True)
            module.write_bytes(b"\x7fELF")
            php_ini = self.brew_prefix / "etc" / "php" / package.removeprefix("php@") / "php.ini"
            php_ini.parent.mkdir(parents=True, exist_ok=True)
            php_ini.write_text(STOCK_PHP_INI, encoding="utf-8")
        if package == "httpd" and not self.httpd_conf.exists():
            self.httpd_conf.parent.mkdir(parents=True, exist_ok=True)
            self.httpd_conf.write_text(STOCK_HTTPD_CONF, encoding="utf-8")

    def _brew(self, argv: tuple[str, ...]) -> CommandResult:
        command = argv[1:]
        if command[:1] == ("--version",):
            return self._ok(argv, "Homebrew 4.4.0\n")
        if command[:2] == ("list", "--versions"):
            package = command[2]
            if package in self.installed:
                return self._ok(argv, f"{package} {self.installed[package]}\n")
            return self._fail(argv, "", returncode=1)
        if command[:1] == ("install",):
            self._install(command[1])
            return self._ok(argv)
        if command[:1] == ("uninstall",):
            self.installed.pop(command[1], None)
            self.service_state.pop(command[1], None)
            return self._ok(argv)
        if command[:1] == ("link",):
            return self._ok(argv)
        if command[:2] == ("services", "list"):
            rows = ["Name Status User File"]
            rows.extend(f"{name} {state}" for name, state in sorted(self.service_state.items()))
            return self._ok(argv, "\n".join(rows) + "\n")
        if command[:1] == ("services",):
            action, package = command[1], command[2]
            if package not in self.installed:
                return self._fail(argv, f"Error: Formula `{package}` is not installed.")
            if action == "stop":
                self.service_state[package] = "none"
            elif action in {"start", "restart"}:
                self.service_state[package] = "error" if package in self.never_start else "started"
            return self._ok(argv)
        return self._fail(argv, f"unsupported brew command: {' '.join(command)}")

    def _httpd(self, argv: tuple[str, ...]) -> CommandResult:
        if self.httpd_ok:
            return CommandResult(argv, 0, stderr="Syntax OK\n")
        return self._fail(argv, self.httpd_error)

    def _mkcert(self, argv: tuple[str, ...]) -> CommandResult:
        if not self.mkcert_available:
            return CommandResult(argv, 127, stderr="mkcert: not found", missing=True)
        if "-version" in argv or "-install" in argv:
            return self._ok(argv, "v1.4.4\n")
        cert = Path(argv[argv.index("-cert-file") + 1])
        key = Path(argv[argv.index("-key-file") + 1])
        subjects = argv[argv.index("-key-file") + 2 :]
        write_certificate(cert, key, subjects=subjects)
        return self._ok(argv)

    def _mysql(self, argv: tuple[str, ...]) -> CommandResult:
        if not self.mysql_reachable:
            return self._fail(argv, "ERROR 2002 (HY000): Can't connect to local MySQL server")
        if "-e" not in argv:
            return self._ok(argv)
        sql = argv[argv.index("-e") + 1]
        if sql.startswith("SELECT 1"):
            return self._ok(argv, "1\n")
        if sql.startswith("SELECT VERSION()"):
            return self._ok(argv, "8.4.3\n")
        if sql.startswith("SHOW DATABASES"):
            return self._ok(argv, "\n".join(sorted(self.databases)) + "\n")
        if sql.startswith("CREATE DATABASE"):
            self.databases.add(sql.split("`")[1])
            return self._ok(argv)
        if sql.startswith("DROP DATABASE"):
            self.databases.discard(sql.split("`")[1])
            return self._ok(argv)
        if "information_schema.tables" in sql:
            return self._ok(argv, "1.50\t3\n")
        return self._ok(argv)

    def _mysqldump(self, argv: tuple[str, ...]) -> CommandResult:
        if not self.mysql_reachable:
            return self._fail(argv, "mysqldump: Got error: 2002")
        if argv[-1] in self.failing_dumps:
            return self._fail(argv, f"mysqldump: Got error: 1044: Access denied to {argv[-1]}", returncode=2)
        if self.dump_payload is not None:
            return CommandResult(argv, 0, raw_stdout=self.dump_payload)
        return self._ok(argv, f"-- MySQL dump of {argv[-1]}\nCREATE TABLE t (id INT);\n")

    def _pgrep(self, argv: tuple[str, ...]) -> CommandResult:
        if argv[-1] in self.processes:
            return self._ok(argv, "4242\n")
        return self._fail(argv, "", returncode=1)


def build_config(tmp_path: Path, **overrides: object) -> AppConfig:
    """Return an :class:`AppConfig` rooted entirely under *tmp_path*."""
    prefix = tmp_path / "homebrew"
    base: dict[str, object] = {
        "brew_prefix": str(prefix),
        "webroot": str(tmp_path / "www"),
        "state_dir": str(tmp_path / "state"),
        "templates_dir": str(tmp_path / "templates"),
        "lock_timeout": 1.0,
        "paths": {
            "resolver_dir": str(tmp_path / "resolver"),
            "credentials_file": str(tmp_path / "home" / ".my.cnf"),
        },
        "services": {"restart_poll_interval": 0.01, "restart_poll_attempts": 3},
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = {**base[key], **value}  # type: ignore[dict-item]
        else:
            base[key] = value
    return load_config(config_file=tmp_path / "missing.yml", env={}, overrides=base)


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    """Configuration rooted under the test's temporary directory."""
    return build_config(tmp_path)


@pytest.fixture
def fake_runner(config: AppConfig) -> FakeRunner:
    """Fresh simulated host with nothing installed."""
    return FakeRunner(config.brew_prefix, config.paths.httpd_conf)


@pytest.fixture
def registry(config: AppConfig) -> BackupsRegistry:
    """Backup registry under the configured state directory."""
    return BackupsRegistry(config.backups.root, config.backups.index)


@pytest.fixture
def sleeps() -> list[float]:
    """Collects the delays requested by restart polling."""
    return []


@pytest.fixture
def make_orchestrator(
    config: AppConfig,
    fake_runner: FakeRunner,
    registry: BackupsRegistry,
    sleeps: list[float],
) -> Callable[..., Orchestrator]:
    """Factory for orchestrators sharing the simulated host."""

    def factory(
        *,
        dry_run: bool = False,
        force: bool = False,
        confirm: Callable[[str], bool] | None = None,
    ) -> Orchestrator:
        return Orchestrator(
            config,
            ReconciliationPolicy(dry_run=dry_run, force=force),
            runner=fake_runner,
            backups=registry,
            confirm=confirm,
            sleep=sleeps.append,
        )

    return factory


@pytest.fixture
def provisioned(config: AppConfig, fake_runner: FakeRunner) -> FakeRunner:
    """Host with httpd, mkcert, mysql and dnsmasq installed and running."""
    fake_runner.install("httpd", "mysql@8.4", "dnsmasq", running=True)
    fake_runner.install("mkcert", "nss", "php@8.2")
    return fake_runner
