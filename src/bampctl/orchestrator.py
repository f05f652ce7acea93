"""Reconciliation orchestrator: the operations behind every CLI command.

Each operation is an explicit sequence of :class:`Step` objects run by
:func:`run_steps`. The first failing step aborts the sequence unless it is
marked ``tolerant``, in which case the failure is journalled and the next step
runs. Components receive the invocation's :class:`ReconciliationPolicy` and
:class:`ActionJournal` explicitly, so dry-run reaches every primitive.
"""
from __future__ import annotations

import functools
import gzip
import re
import shutil
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from packaging.version import Version

from .backups import BackupEntryBuilder, BackupError, BackupsRegistry, copy_into
from .certificates import CertificatePair, CertificateProvisioner, CertificateStore
from .config import AppConfig
from .directives import DirectivePatcher, HttpdDirectives, Verifier, php_ini_directives
from .dns import DnsConfigurator
from .entities import EntityStore, VHostEntry, validate_domain
from .errors import (
    AlreadyExists,
    AlreadySatisfied,
    BampError,
    EntityNotFound,
    MutationFailure,
    PreconditionError,
    ValidationError,
    VerificationFailure,
)
from .policy import ActionJournal, JournalStep, ReconciliationPolicy, StepStatus
from .providers import (
    CommandRunner,
    HomebrewProvider,
    HttpdProvider,
    MkcertProvider,
    MySQLClient,
)
from .providers.mysql import SYSTEM_DATABASES, DatabaseInfo
from .services import ServiceController, ServiceState, default_descriptors
from .templates import TemplateEngine, write_if_changed

PROJECT_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
DATABASE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")
LOCALHOST_VHOST = "00-localhost.conf"
SERVICE_ORDER = ("httpd", "mysql", "dnsmasq")
STOP_ORDER = ("httpd", "mysql")
TOOL_PACKAGES = ("mkcert", "nss")
GZIP_LEVEL = 6
GZIP_MAGIC = b"\x1f\x8b"

ConfirmCallback = Callable[[str], bool]


@dataclass(slots=True)
class Step:
    """One named action in an operation."""

    name: str
    action: Callable[[], object]
    tolerant: bool = False


def run_steps(journal: ActionJournal, steps: Sequence[Step]) -> list[str]:
    """Run *steps* in order; return messages of tolerated failures.

    A step raising :class:`AlreadySatisfied` is journalled as a no-op.
    """
    tolerated: list[str] = []
    for step in steps:
        try:
            step.action()
        except AlreadySatisfied as exc:
            journal.noop(step.name, exc.message)
        except BampError as exc:
            if not step.tolerant:
                raise
            journal.failed(step.name, exc.message)
            tolerated.append(f"{step.name}: {exc.message}")
    return tolerated


@dataclass(slots=True)
class OperationReport:
    """Outcome of one orchestrator operation."""

    operation: str
    steps: list[JournalStep] = field(default_factory=list)
    backups: list[Path] = field(default_factory=list)
    data: dict[str, object] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def changed(self) -> int:
        """Number of steps that changed host state."""
        return sum(1 for step in self.steps if step.status is StepStatus.SUCCESS)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "operation": self.operation,
            "changed": self.changed,
            "steps": [step.to_dict() for step in self.steps],
            "backups": [str(path) for path in self.backups],
            "warnings": list(self.warnings),
            "data": self.data,
        }


def validate_project_name(name: str) -> str:
    """Return *name* or raise :class:`ValidationError`."""
    candidate = name.strip()
    if not PROJECT_NAME_PATTERN.match(candidate):
        raise ValidationError(
            f"Invalid project name '{name}'. Use letters, digits, hyphens and underscores only."
        )
    return candidate


def validate_database_name(name: str) -> str:
    """Return *name* or raise :class:`ValidationError`."""
    candidate = name.strip()
    if not DATABASE_NAME_PATTERN.match(candidate):
        raise ValidationError(
            f"Invalid database name '{name}'. Use only letters, numbers, and underscores."
        )
    return candidate


def _timestamp() -> str:
    return f"{datetime.now():%Y%m%d_%H%M%S}"


def _dump_name(database: str, stamp: str, *, compress: bool) -> str:
    return f"{database}_{stamp}.sql.gz" if compress else f"{database}_{stamp}.sql"


def _read_sql(source: Path) -> bytes:
    """Return the SQL in *source*, decompressing gzip files."""
    payload = source.read_bytes()
    if source.suffix != ".gz" and not payload.startswith(GZIP_MAGIC):
        return payload
    try:
        return gzip.decompress(payload)
    except (OSError, EOFError) as exc:
        raise ValidationError(f"{source} is not a readable gzip file: {exc}") from exc


def _indexes_backups_on_failure(
    operation: str,
) -> Callable[[Callable[..., OperationReport]], Callable[..., OperationReport]]:
    """Record the journal's backups in the index even when *operation* fails."""

    def decorator(method: Callable[..., OperationReport]) -> Callable[..., OperationReport]:
        @functools.wraps(method)
        def wrapper(self: Orchestrator, *args: object, **kwargs: object) -> OperationReport:
            try:
                return method(self, *args, **kwargs)
            except BampError:
                self._record_backups(operation)
                raise

        return wrapper

    return decorator


class Orchestrator:
    """Converge the host toward the requested state, one operation at a time."""

    def __init__(
        self,
        config: AppConfig,
        policy: ReconciliationPolicy,
        *,
        runner: CommandRunner | None = None,
        templates: TemplateEngine | None = None,
        backups: BackupsRegistry | None = None,
        confirm: ConfirmCallback | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.policy = policy
        self.journal = ActionJournal()
        self.runner = runner or CommandRunner(default_timeout=config.services.command_timeout)
        self.templates = templates or TemplateEngine.with_overrides(config.templates_dir)
        self.backups = backups
        self._confirm = confirm
        binaries = config.binaries
        paths = config.paths

        self.brew = HomebrewProvider(runner=self.runner, brew_bin=binaries.brew)
        self.httpd = HttpdProvider(
            brew_prefix=config.brew_prefix,
            runner=self.runner,
            httpd_bin=binaries.httpd,
            config_path=paths.httpd_conf,
        )
        self.mkcert = MkcertProvider(runner=self.runner, mkcert_bin=binaries.mkcert)
        self.mysql = MySQLClient(
            runner=self.runner,
            mysql_bin=binaries.mysql,
            mysqldump_bin=binaries.mysqldump,
            credentials_file=paths.credentials_file,
            user=config.mysql.user,
            host=config.mysql.host,
            port=config.ports.mysql,
        )
        self.patcher = DirectivePatcher(policy, self.journal)
        self.store = EntityStore(paths.vhosts_dir, policy, self.journal)
        self.certificates = CertificateProvisioner(
            CertificateStore(paths.cert_dir),
            self.mkcert,
            policy,
            self.journal,
            suffix=config.domain_suffix,
        )
        self.services = ServiceController(
            self.brew,
            policy,
            self.journal,
            descriptors=default_descriptors(config.mysql.formulas),
            runner=self.runner,
            pgrep_bin=binaries.pgrep,
            poll_interval=config.services.restart_poll_interval,
            max_attempts=config.services.restart_poll_attempts,
            sleep=sleep,
        )
        self.dns = DnsConfigurator(
            self.patcher,
            self.templates,
            dnsmasq_conf=paths.dnsmasq_conf,
            resolver_dir=paths.resolver_dir,
            suffix=config.domain_suffix,
            dns_port=config.ports.dns,
        )
        self.directives = HttpdDirectives(
            brew_prefix=config.brew_prefix,
            vhosts_dir=paths.vhosts_dir,
            webroot=config.webroot,
            http_port=config.ports.http,
            https_port=config.ports.https,
        )
        self._pending_packages: set[str] = set()
        self._installed_now: set[str] = set()

    # ------------------------------------------------------------------
    # Sites
    # ------------------------------------------------------------------
    @_indexes_backups_on_failure("create-site")
    def create_site(
        self,
        name: str,
        document_root: Path | None = None,
        *,
        suffix: str | None = None,
    ) -> OperationReport:
        """Create a TLS-enabled virtual host ``<name>.<suffix>``."""
        self._begin()
        project = validate_project_name(name)
        domain = validate_domain(f"{project}.{suffix or self.config.domain_suffix}")
        root = (document_root or self.config.webroot / project).expanduser().absolute()
        state: dict[str, object] = {}

        def reject_existing() -> None:
            if self.store.exists(domain):
                raise ValidationError(
                    f"Site '{domain}' already exists.",
                    remediation=f"Remove it first with: bampctl remove-site {project}",
                )

        def write_entry() -> None:
            pair = state["certificate"]
            assert isinstance(pair, CertificatePair)
            entry = VHostEntry(
                domain=domain,
                path=self.store.path_for(domain),
                document_root=root,
                http_port=self.config.ports.http,
                https_port=self.config.ports.https,
                certificate=pair.certificate,
                certificate_key=pair.key,
            )
            content = self.templates.render_to_string(
                "httpd/vhost.conf.j2",
                {
                    "domain": domain,
                    "document_root": str(root),
                    "http_port": entry.http_port,
                    "https_port": entry.https_port,
                    "certificate": str(pair.certificate),
                    "certificate_key": str(pair.key),
                    "log_dir": str(self.config.paths.httpd_log_dir),
                },
            )
            try:
                state["vhost"] = self.store.write(entry, content)
            except AlreadyExists as exc:
                raise ValidationError(exc.message) from exc

        def resolve_certificate() -> None:
            state["certificate"] = self.certificates.resolve_for_domain(domain)

        def verify_listed() -> None:
            if self.policy.dry_run:
                return
            if domain not in {entry.domain for entry in self.store.list()}:
                raise VerificationFailure(f"Site '{domain}' is not listed after creation.")
            self.journal.success("vhost.verify", f"{domain} listed")

        run_steps(
            self.journal,
            [
                Step("validate", reject_existing),
                Step("prerequisites", self._ensure_site_prerequisites),
                Step("document_root", lambda: self._ensure_document_root(root, project)),
                Step("certificate", resolve_certificate),
                Step("vhost.write", write_entry),
                Step("httpd.self_test", lambda: self._self_test(state.get("vhost"))),
                Step("httpd.restart", lambda: self.services.restart("httpd")),
                Step("vhost.verify", verify_listed),
            ],
        )
        pair = state.get("certificate")
        return self._finish(
            "create-site",
            data={
                "domain": domain,
                "document_root": str(root),
                "vhost": str(state.get("vhost", self.store.path_for(domain))),
                "certificate": pair.to_dict() if isinstance(pair, CertificatePair) else None,
                "url": f"https://{domain}",
            },
        )

    def remove_site(self, name: str, *, suffix: str | None = None) -> OperationReport:
        """Delete the vhost for *name* after confirmation and restart httpd."""
        self._begin()
        project = validate_project_name(name)
        domain = validate_domain(f"{project}.{suffix or self.config.domain_suffix}")
        entry = self.store.get(domain)
        if not self._confirmed(f"Remove site {domain} ({entry.path})?"):
            self.journal.skipped("vhost.remove", "declined by operator")
            return self._finish("remove-site", data={"domain": domain, "removed": False})
        run_steps(
            self.journal,
            [
                Step("vhost.remove", lambda: self.store.remove(domain)),
                Step("httpd.restart", lambda: self.services.restart("httpd")),
            ],
        )
        return self._finish(
            "remove-site",
            data={"domain": domain, "removed": not self.policy.dry_run, "path": str(entry.path)},
        )

    def list_sites(self) -> list[VHostEntry]:
        """Return the registered sites sorted by domain."""
        return sorted(self.store.list(), key=lambda entry: entry.domain)

    # ------------------------------------------------------------------
    # PHP
    # ------------------------------------------------------------------
    @_indexes_backups_on_failure("switch-version")
    def switch_version(self, php_version: str) -> OperationReport:
        """Load PHP *php_version* in httpd, replacing any previous module."""
        self._begin()
        run_steps(self.journal, [Step("php.switch", lambda: self._switch_php(php_version))])
        return self._finish(
            "switch-version",
            data={"php_version": php_version, "module": str(self.httpd.php_module_path(php_version))},
        )

    def php_versions(self) -> list[dict[str, object]]:
        """Return supported PHP versions with installed and active flags."""
        active = self.httpd.active_php_version(self.config.paths.httpd_conf)
        versions = sorted(self.config.php.versions, key=Version)
        return [
            {
                "version": version,
                "installed": self.brew.is_installed(f"php@{version}"),
                "active": version == active,
                "default": version == self.config.php.default,
            }
            for version in versions
        ]

    def _validate_php_version(self, php_version: str) -> str:
        if php_version not in self.config.php.versions:
            supported = ", ".join(sorted(self.config.php.versions, key=Version))
            raise ValidationError(
                f"Unsupported PHP version '{php_version}'. Supported versions: {supported}."
            )
        return php_version

    def _switch_php(self, php_version: str) -> None:
        version = self._validate_php_version(php_version)
        module = self.httpd.php_module_path(version)
        package = f"php@{version}"
        if package in self._pending_packages:
            self.journal.planned("php.switch", f"load {module} once {package} is installed")
            return
        if not module.exists():
            raise PreconditionError(
                f"PHP {version} module not found at {module}.",
                remediation=f"Install it with: bampctl install {version}",
            )
        directive = self.directives.php_module(version)
        with self.patcher.mutate(self.config.paths.httpd_conf, verify=self._verifier()) as document:
            self.patcher.remove(document, HttpdDirectives.PHP_MODULE_PATTERN, keep=directive)
            self.patcher.ensure(document, directive)
            self.patcher.ensure(document, self.directives.php_handler())
        if not document.changed:
            raise AlreadySatisfied(f"PHP {version} already active")
        self.services.restart("httpd")

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------
    @_indexes_backups_on_failure("install")
    def install(self, php_version: str | None = None) -> OperationReport:
        """Provision the complete stack with PHP *php_version*."""
        self._begin()
        version = self._validate_php_version(php_version or self.config.php.default)
        mysql_formula = self.config.mysql.formulas[0]

        warnings = run_steps(
            self.journal,
            [
                Step("webroot", lambda: self._ensure_document_root(self.config.webroot, "bampctl", index=True)),
                Step("httpd.package", lambda: self._ensure_package("httpd")),
                Step("httpd.configure", self._configure_httpd),
                Step("mysql.package", self._ensure_mysql_package),
                Step("mysql.start", lambda: self._start_if_installed("mysql"), tolerant=True),
                Step("mysql.security", self._secure_mysql, tolerant=True),
                Step("mysql.credentials", self._ensure_credentials_file),
                Step("dnsmasq.package", lambda: self._ensure_package("dnsmasq")),
                Step("dnsmasq.link", self._link_dnsmasq, tolerant=True),
                Step("dnsmasq.configure", self.dns.ensure_forwarder),
                Step("resolver.configure", self.dns.ensure_resolver, tolerant=True),
                Step("dnsmasq.start", lambda: self._start_if_installed("dnsmasq"), tolerant=True),
                Step("mkcert.package", lambda: self._ensure_packages(TOOL_PACKAGES)),
                Step("mkcert.install_ca", self._install_ca),
                Step("certificate.wildcard", self._ensure_wildcard),
                Step("vhost.localhost", self._ensure_localhost_vhost),
                Step("php.package", lambda: self._ensure_package(f"php@{version}")),
                Step("php.ini", lambda: self._configure_php_ini(version), tolerant=True),
                Step("php.switch", lambda: self._switch_php(version)),
                Step("php.info", self._ensure_info_page),
                Step("services.verify", self._verify_services, tolerant=True),
            ],
        )
        return self._finish(
            "install",
            data={
                "php_version": version,
                "mysql_formula": self.services.resolve("mysql") or mysql_formula,
                "webroot": str(self.config.webroot),
                "url": f"http://localhost:{self.config.ports.http}/info.php",
            },
            warnings=warnings,
        )

    def _ensure_package(self, package: str) -> None:
        step = f"package.{package}"
        if self.brew.is_installed(package):
            self.journal.noop(step, "already installed")
            return
        if self.policy.dry_run:
            self._pending_packages.add(package)
            self.journal.planned(step, f"brew install {package}")
            return
        self.brew.install(package)
        self.journal.success(step, f"installed {package}")
        self._installed_now.add(package)

    def _ensure_packages(self, packages: Sequence[str]) -> None:
        for package in packages:
            self._ensure_package(package)

    def _ensure_mysql_package(self) -> None:
        installed = self.services.resolve("mysql")
        if installed is not None:
            self.journal.noop("package.mysql", f"{installed} already installed")
            return
        self._ensure_package(self.config.mysql.formulas[0])

    def _start_if_installed(self, name: str) -> None:
        if self.services.resolve(name) is None:
            self.journal.skipped(f"service.{name}.start", "package not installed yet")
            return
        if self.services.status(name) is ServiceState.RUNNING:
            self.journal.noop(f"service.{name}.start", "already running")
            return
        self.services.start(name)

    def _secure_mysql(self) -> None:
        step = "mysql.security"
        if self.config.paths.credentials_file.exists():
            self.journal.noop(step, "credentials file already present")
            return
        if self.policy.dry_run:
            self.journal.planned(step, f"set the {self.config.mysql.user} password when it is empty")
            return
        # Only an account reachable without a password is changed.
        if not self.mysql.ping():
            self.journal.noop(step, "password already set")
            return
        self.mysql.set_password(self.config.mysql.password)
        self.journal.success(step, f"password set for {self.config.mysql.user}@{self.config.mysql.host}")

    def _link_dnsmasq(self) -> None:
        if "dnsmasq" in self._pending_packages:
            self.journal.planned("dnsmasq.link", "brew link dnsmasq")
            return
        if "dnsmasq" not in self._installed_now:
            self.journal.noop("dnsmasq.link", "already linked")
            return
        try:
            self.brew.link("dnsmasq")
        except BampError:
            self.brew.link("dnsmasq", force=True)
        self.journal.success("dnsmasq.link", "dnsmasq")

    def _configure_httpd(self) -> None:
        conf = self.config.paths.httpd_conf
        if "httpd" in self._pending_packages:
            self.journal.planned("httpd.configure", f"patch {conf} after httpd is installed")
            return
        block = self.templates.render_to_string(
            "httpd/directory.conf.j2", {"webroot": str(self.config.webroot)}
        ).splitlines()
        with self.patcher.mutate(conf, verify=self._verifier()) as document:
            for directive in (*self.directives.base(), *self.directives.https()):
                self.patcher.ensure(document, directive)
            self.patcher.ensure_block(document, self.directives.webroot_block(block))
        self._ensure_directory(self.config.paths.vhosts_dir)

    def _ensure_credentials_file(self) -> None:
        path = self.config.paths.credentials_file
        step = "mysql.credentials"
        if path.exists():
            self.journal.noop(step, f"{path} present")
            if not self.policy.dry_run and (path.stat().st_mode & 0o777) != 0o600:
                path.chmod(0o600)
                self.journal.success(step, f"{path} mode set to 0600")
            return
        self._write_credentials(self.config.mysql.password)

    def _write_credentials(self, password: str) -> None:
        path = self.config.paths.credentials_file
        step = "mysql.credentials"
        if self.policy.dry_run:
            self.journal.planned(step, f"write {path} (mode 0600)")
            return
        content = self.templates.render_to_string(
            "mysql/my.cnf.j2",
            {
                "user": self.config.mysql.user,
                "password": password,
                "host": self.config.mysql.host,
                "port": self.config.ports.mysql,
            },
        )
        try:
            changed = write_if_changed(path, content, mode=0o600)
        except OSError as exc:
            raise MutationFailure(f"Failed to write {path}: {exc}") from exc
        if changed:
            self.journal.success(step, f"wrote {path}")
        else:
            self.journal.noop(step, f"{path} already up to date")

    def _install_ca(self) -> None:
        if "mkcert" in self._pending_packages:
            self.journal.planned("mkcert.install_ca", "run mkcert -install after mkcert is installed")
            return
        self.certificates.install_ca()

    def _ensure_wildcard(self) -> CertificatePair | None:
        if "mkcert" in self._pending_packages:
            self.journal.planned(
                "certificate.wildcard", f"issue {self.certificates.wildcard_subject} after mkcert is installed"
            )
            return None
        self._ensure_directory(self.config.paths.cert_dir)
        return self.certificates.ensure_certificate(self.certificates.wildcard_subject)

    def _ensure_localhost_vhost(self) -> None:
        path = self.config.paths.vhosts_dir / LOCALHOST_VHOST
        step = "vhost.localhost"
        if path.exists():
            self.journal.noop(step, f"{path} present")
            return
        if "mkcert" in self._pending_packages:
            self.journal.planned(step, f"write {path} after mkcert is installed")
            return
        pair = self.certificates.ensure_certificate("localhost")
        content = self.templates.render_to_string(
            "httpd/localhost.conf.j2",
            {
                "webroot": str(self.config.webroot),
                "http_port": self.config.ports.http,
                "https_port": self.config.ports.https,
                "certificate": str(pair.certificate),
                "certificate_key": str(pair.key),
                "log_dir": str(self.config.paths.httpd_log_dir),
            },
        )
        if self.policy.dry_run:
            self.journal.planned(step, f"write {path}")
            return
        write_if_changed(path, content, mode=0o644)
        self.journal.success(step, f"wrote {path}")

    def _configure_php_ini(self, php_version: str) -> None:
        php_ini = self.config.paths.php_etc_dir / php_version / "php.ini"
        if f"php@{php_version}" in self._pending_packages:
            self.journal.planned("php.ini", f"patch {php_ini} after php@{php_version} is installed")
            return
        with self.patcher.mutate(php_ini) as document:
            for directive in php_ini_directives():
                self.patcher.ensure(document, directive)

    def _ensure_info_page(self) -> None:
        path = self.config.webroot / "info.php"
        if path.exists():
            self.journal.noop("php.info", f"{path} present")
            return
        if self.policy.dry_run:
            self.journal.planned("php.info", f"write {path}")
            return
        write_if_changed(path, self.templates.render_to_string("web/info.php.j2", {}), mode=0o644)
        self.journal.success("php.info", f"wrote {path}")

    def _verify_services(self) -> None:
        if self.policy.dry_run:
            self.journal.skipped("services.verify", "dry-run")
            return
        failures: list[str] = []
        for name in SERVICE_ORDER:
            state = self.services.status(name)
            if state is ServiceState.RUNNING:
                self.journal.success(f"services.verify.{name}", "running")
            else:
                failures.append(f"{name} {state.value}")
        if failures:
            raise VerificationFailure(
                "Services not running after install: " + ", ".join(failures),
                remediation="Run: bampctl restart-all",
            )

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------
    def status(self) -> dict[str, object]:
        """Collect live service state, PHP version, MySQL reachability and sites."""
        services: dict[str, dict[str, object]] = {}
        for name in SERVICE_ORDER:
            state = self.services.status(name)
            services[name] = {"state": state.value, "package": self.services.resolve(name)}
        mysql_state = services["mysql"]["state"]
        mysql_reachable = mysql_state == ServiceState.RUNNING.value and self.mysql.ping()
        wildcard = self.certificates.store.pair_for(self.certificates.wildcard_subject)
        return {
            "services": services,
            "php_version": self.httpd.active_php_version(self.config.paths.httpd_conf),
            "mysql": {
                "reachable": mysql_reachable,
                "version": self.mysql.version() if mysql_reachable else None,
            },
            "sites": len(self.store.list()),
            "wildcard_certificate": wildcard.to_dict() if wildcard.exists() else None,
        }

    def restart_all(self) -> OperationReport:
        """Restart installed services in order httpd, mysql, dnsmasq."""
        self._begin()
        steps = []
        for name in SERVICE_ORDER:
            if self.services.resolve(name) is None:
                self.journal.skipped(f"service.{name}.restart", "not installed")
                continue
            steps.append(Step(f"service.{name}.restart", self._restarter(name), tolerant=True))
        warnings = run_steps(self.journal, steps)
        return self._finish("restart-all", warnings=warnings)

    def stop_all(self) -> OperationReport:
        """Stop httpd and mysql."""
        self._begin()
        warnings = run_steps(
            self.journal,
            [Step(f"service.{name}.stop", self._stopper(name), tolerant=True) for name in STOP_ORDER],
        )
        return self._finish("stop-all", warnings=warnings)

    def _restarter(self, name: str) -> Callable[[], None]:
        return lambda: self.services.restart(name)

    def _stopper(self, name: str) -> Callable[[], None]:
        return lambda: self.services.stop(name)

    # ------------------------------------------------------------------
    # Uninstall
    # ------------------------------------------------------------------
    def uninstall(self, *, keep_data: bool = False, backup: bool = True) -> OperationReport:
        """Back up, stop and remove the stack."""
        self._begin()
        if not self._confirmed("Uninstall the stack and remove its configuration?"):
            self.journal.skipped("uninstall", "declined by operator")
            return self._finish("uninstall", data={"uninstalled": False})

        state: dict[str, object] = {}

        def take_backup() -> None:
            if not backup:
                self.journal.skipped("uninstall.backup", "disabled by --no-backup")
                return
            state["backup_dir"] = self._uninstall_backup(keep_data=keep_data)

        steps = [
            Step("uninstall.backup", take_backup),
            *[
                Step(f"service.{name}.stop", self._stopper(name), tolerant=True)
                for name in SERVICE_ORDER
            ],
            *[
                Step(f"package.{package}.uninstall", self._uninstaller(package), tolerant=True)
                for package in self._installed_packages()
            ],
            *[
                Step(f"remove.{path.name}", self._remover(path), tolerant=True)
                for path in self._removal_paths(keep_data=keep_data)
            ],
        ]
        warnings = run_steps(self.journal, steps)
        backup_dir = state.get("backup_dir")
        return self._finish(
            "uninstall",
            data={
                "uninstalled": not self.policy.dry_run,
                "keep_data": keep_data,
                "backup_dir": str(backup_dir) if backup_dir else None,
            },
            warnings=warnings,
        )

    def _installed_packages(self) -> list[str]:
        candidates = [
            *(f"php@{version}" for version in self.config.php.versions),
            "httpd",
            *self.config.mysql.formulas,
            "dnsmasq",
            *TOOL_PACKAGES,
        ]
        return [package for package in candidates if self.brew.is_installed(package)]

    def _config_paths(self) -> list[Path]:
        paths = self.config.paths
        return [
            paths.httpd_conf.parent,
            paths.php_etc_dir,
            paths.dnsmasq_conf,
            self.dns.resolver_path,
            paths.credentials_file,
        ]

    def _removal_paths(self, *, keep_data: bool) -> list[Path]:
        paths = [
            path
            for path in self._config_paths()
            if not (keep_data and path == self.config.paths.credentials_file)
        ]
        paths.extend(
            path
            for path in (self.config.paths.cert_dir, self.config.paths.vhosts_dir)
            if not _is_within(path, self.config.paths.httpd_conf.parent)
        )
        if not keep_data:
            paths.append(self.config.paths.mysql_data_dir)
        return [path for path in paths if path.exists()]

    def _uninstall_backup(self, *, keep_data: bool) -> Path | None:
        if self.backups is None:
            raise BackupError("No backup registry configured.")
        target = self.backups.archive_directory("uninstall")
        sources = [path for path in self._config_paths() if path.exists()]
        databases: list[str] = []
        if not keep_data and self.services.status("mysql") is ServiceState.RUNNING:
            databases = self.mysql.list_user_databases()
        if self.policy.dry_run:
            for source in sources:
                self.journal.planned("uninstall.backup", f"copy {source} into {target}")
            for database in databases:
                self.journal.planned("uninstall.backup", f"dump database {database}")
            return target

        entries: list[dict[str, str]] = []
        for source in sources:
            name = f"{source.name}_config" if source.is_dir() else source.name
            copy_into(source, target / name)
            entries.append({"source": str(source), "name": name})
            self.journal.success("uninstall.backup", f"{source} -> {target / name}")
        for database in databases:
            dump_path = target / "mysql_databases" / f"{database}.sql"
            dump_path.parent.mkdir(parents=True, exist_ok=True)
            dump_path.write_bytes(self.mysql.dump(database))
            self.journal.success("uninstall.backup", f"dumped {database} -> {dump_path}")
        guide = self.templates.render_to_string(
            "backups/RESTORE_GUIDE.md.j2",
            {
                "created_at": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
                "entries": entries,
                "databases": databases,
                "mysql_formula": self.services.resolve("mysql") or self.config.mysql.formulas[0],
                "httpd_etc": str(self.config.paths.httpd_conf.parent),
                "php_etc": str(self.config.paths.php_etc_dir),
                "dnsmasq_conf": str(self.config.paths.dnsmasq_conf),
                "mysql_data_dir": str(self.config.paths.mysql_data_dir),
            },
        )
        write_if_changed(target / "RESTORE_GUIDE.md", guide, mode=0o644)
        self.journal.add_backup(target)
        self.backups.record(
            BackupEntryBuilder(
                kind="uninstall",
                source=self.config.brew_prefix,
                backup_path=target,
                operation="uninstall",
                message=f"{len(entries)} path(s), {len(databases)} database dump(s)",
            )
        )
        return target

    def _uninstaller(self, package: str) -> Callable[[], None]:
        def action() -> None:
            step = f"package.{package}.uninstall"
            if self.policy.dry_run:
                self.journal.planned(step, f"brew uninstall {package}")
                return
            self.brew.uninstall(package)
            self.journal.success(step, package)

        return action

    def _remover(self, path: Path) -> Callable[[], None]:
        def action() -> None:
            step = f"remove.{path.name}"
            if self.policy.dry_run:
                self.journal.planned(step, f"delete {path}")
                return
            try:
                if path.is_dir() and not path.is_symlink():
                    shutil.rmtree(path)
                else:
                    path.unlink()
            except OSError as exc:
                raise MutationFailure(f"Failed to remove {path}: {exc}") from exc
            self.journal.success(step, str(path))

        return action

    # ------------------------------------------------------------------
    # Databases
    # ------------------------------------------------------------------
    def db_list(self) -> list[DatabaseInfo]:
        """Return user databases with size and table count."""
        return [self.mysql.database_info(name) for name in self.mysql.list_user_databases()]

    def db_create(self, name: str) -> OperationReport:
        """Create database *name*."""
        self._begin()
        database = validate_database_name(name)
        if self.mysql.database_exists(database):
            raise ValidationError(f"Database '{database}' already exists.")
        self._db_create(database)
        return self._finish("db create", data={"database": database})

    def _db_create(self, database: str) -> None:
        if self.policy.dry_run:
            self.journal.planned("db.create", f"create database {database}")
            return
        self.mysql.create_database(database)
        self.journal.success("db.create", database)

    def db_drop(self, name: str) -> OperationReport:
        """Drop database *name* after confirmation."""
        self._begin()
        database = validate_database_name(name)
        if database in SYSTEM_DATABASES:
            raise ValidationError(f"Cannot drop system database '{database}'.")
        if not self.mysql.database_exists(database):
            raise EntityNotFound(f"Database '{database}' does not exist.")
        if not self._confirmed(f"Permanently delete database '{database}' and all its data?"):
            self.journal.skipped("db.drop", "declined by operator")
            return self._finish("db drop", data={"database": database, "dropped": False})
        if self.policy.dry_run:
            self.journal.planned("db.drop", f"drop database {database}")
        else:
            self.mysql.drop_database(database)
            self.journal.success("db.drop", database)
        return self._finish("db drop", data={"database": database, "dropped": not self.policy.dry_run})

    def db_dump(
        self,
        name: str,
        output: Path | None = None,
        *,
        compress: bool = False,
    ) -> OperationReport:
        """Write a SQL dump of *name* to *output*, gzip-compressed when *compress* is set."""
        self._begin()
        database = validate_database_name(name)
        if not self.mysql.database_exists(database):
            raise EntityNotFound(f"Database '{database}' does not exist.")
        target = output or Path.cwd() / _dump_name(database, _timestamp(), compress=compress)
        self._dump_to(database, target, compress=compress)
        return self._finish(
            "db dump",
            data={"database": database, "path": str(target), "compressed": compress},
        )

    def db_dump_all(
        self,
        output_dir: Path | None = None,
        *,
        compress: bool = True,
    ) -> OperationReport:
        """Dump every user database into *output_dir*; a failed dump does not stop the rest."""
        self._begin()
        stamp = _timestamp()
        directory = output_dir or Path.cwd() / f"mysql_backups_{stamp}"
        databases = self.mysql.list_user_databases()
        targets = {
            database: directory / _dump_name(database, stamp, compress=compress)
            for database in databases
        }
        if not databases:
            self.journal.noop("db.dump_all", "no user databases found")
        warnings = run_steps(
            self.journal,
            [
                Step(f"db.dump.{database}", self._dumper(database, target, compress), tolerant=True)
                for database, target in targets.items()
            ],
        )
        return self._finish(
            "db dump-all",
            data={
                "directory": str(directory),
                "databases": databases,
                "files": [
                    str(target)
                    for target in targets.values()
                    if self.policy.dry_run or target.is_file()
                ],
                "compressed": compress,
            },
            warnings=warnings,
        )

    def db_import(self, name: str, source: Path) -> OperationReport:
        """Import SQL from *source* (plain or gzip) into *name*, creating it if needed."""
        self._begin()
        database = validate_database_name(name)
        if not source.is_file():
            raise ValidationError(f"SQL file does not exist: {source}")
        payload = _read_sql(source)
        if not self.mysql.database_exists(database):
            self._db_create(database)
        if self.policy.dry_run:
            self.journal.planned("db.import", f"import {source} into {database}")
        else:
            self.mysql.restore(database, payload)
            self.journal.success("db.import", f"{source} -> {database}")
        return self._finish("db import", data={"database": database, "source": str(source)})

    def db_reset_password(self, password: str | None = None) -> OperationReport:
        """Change the MySQL account password and rewrite the credentials file to match."""
        self._begin()
        new_password = self.config.mysql.password if password is None else password
        account = f"{self.config.mysql.user}@{self.config.mysql.host}"

        def alter_user() -> None:
            if self.policy.dry_run:
                self.journal.planned("mysql.password", f"set the password for {account}")
                return
            self.mysql.set_password(new_password)
            self.journal.success("mysql.password", f"password changed for {account}")

        run_steps(
            self.journal,
            [
                Step("mysql.password", alter_user),
                Step("mysql.credentials", lambda: self._write_credentials(new_password)),
            ],
        )
        return self._finish(
            "db reset-password",
            data={"account": account, "credentials_file": str(self.config.paths.credentials_file)},
        )

    def _dumper(self, database: str, target: Path, compress: bool) -> Callable[[], None]:
        return lambda: self._dump_to(database, target, compress=compress, step=f"db.dump.{database}")

    def _dump_to(self, database: str, target: Path, *, compress: bool, step: str = "db.dump") -> None:
        if self.policy.dry_run:
            self.journal.planned(step, f"dump {database} to {target}")
            return
        payload = self.mysql.dump(database)
        if compress:
            payload = gzip.compress(payload, compresslevel=GZIP_LEVEL)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(payload)
        except OSError as exc:
            raise MutationFailure(f"Failed to write {target}: {exc}") from exc
        self.journal.success(step, f"{database} -> {target}")

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------
    def _begin(self) -> None:
        self.journal.steps.clear()
        self.journal.backups.clear()
        self._pending_packages.clear()
        self._installed_now.clear()

    def _finish(
        self,
        operation: str,
        *,
        data: dict[str, object] | None = None,
        warnings: Sequence[str] = (),
    ) -> OperationReport:
        self._record_backups(operation)
        return OperationReport(
            operation=operation,
            steps=list(self.journal.steps),
            backups=list(self.journal.backups),
            data=dict(data or {}),
            warnings=list(warnings),
        )

    def _record_backups(self, operation: str) -> None:
        if self.backups is None or self.policy.dry_run:
            return
        try:
            recorded = {str(entry.get("path")) for entry in self.backups.list_entries()}
            for path in self.journal.backups:
                if str(path) in recorded:
                    continue
                source = path.with_name(path.name.split(".backup.")[0])
                self.backups.record(
                    BackupEntryBuilder(kind="config", source=source, backup_path=path, operation=operation)
                )
        except BackupError as exc:
            self.journal.failed("backups.index", exc.message)

    def _confirmed(self, message: str) -> bool:
        if self.policy.force or self.policy.dry_run:
            return True
        if self._confirm is None:
            return False
        return bool(self._confirm(message))

    def _verifier(self) -> Verifier | None:
        if self.policy.dry_run:
            return None
        return self.httpd.self_test

    def _self_test(self, vhost: object | None) -> None:
        if self.policy.dry_run:
            self.journal.planned("httpd.self_test", "run httpd -t")
            return
        result = self.httpd.self_test()
        if not result.ok:
            self.journal.failed("httpd.self_test", result.output)
            raise VerificationFailure(
                f"httpd configuration test failed: {result.output}",
                remediation=(
                    f"{vhost} is still included by httpd; fix or delete it before the next restart."
                    if vhost
                    else None
                ),
            )
        self.journal.success("httpd.self_test", "Syntax OK")

    def _ensure_site_prerequisites(self) -> None:
        if not self.brew.is_installed("httpd"):
            raise PreconditionError(
                "Apache httpd is not installed.",
                remediation="Install the stack first with: bampctl install",
            )
        self.certificates.require_mkcert()
        with self.patcher.mutate(self.config.paths.httpd_conf, verify=self._verifier()) as document:
            for directive in self.directives.https():
                self.patcher.ensure(document, directive)
        self._ensure_directory(self.config.paths.vhosts_dir)
        self._ensure_directory(self.config.paths.cert_dir)

    def _ensure_directory(self, path: Path) -> None:
        if path.is_dir():
            return
        if self.policy.dry_run:
            self.journal.planned("mkdir", f"create {path}")
            return
        path.mkdir(parents=True, exist_ok=True)
        self.journal.success("mkdir", str(path))

    def _ensure_document_root(self, root: Path, project: str, *, index: bool = True) -> None:
        if root.is_dir():
            self.journal.noop("document_root", f"{root} present")
            return
        if self.policy.dry_run:
            self.journal.planned("document_root", f"create {root} with a sample index.php")
            return
        root.mkdir(parents=True, exist_ok=True)
        self.journal.success("document_root", f"created {root}")
        index_file = root / "index.php"
        if index and not index_file.exists():
            content = self.templates.render_to_string(
                "web/index.php.j2", {"project": project, "document_root": str(root)}
            )
            write_if_changed(index_file, content, mode=0o644)
            self.journal.success("document_root.index", str(index_file))


def _is_within(path: Path, parent: Path) -> bool:
    try:
        path.relative_to(parent)
    except ValueError:
        return False
    return True


__all__ = [
    "OperationReport",
    "Orchestrator",
    "Step",
    "run_steps",
    "validate_database_name",
    "validate_project_name",
]
