"""Configuration loader for bampctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``~/.config/bampctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``BAMPCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export BAMPCTL_PORTS__HTTP=8080
    export BAMPCTL_PHP__DEFAULT=8.3

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The historical ``BAMP_HTTP_PORT``, ``BAMP_HTTPS_PORT`` and
``BAMP_MYSQL_PORT`` variables are honoured when no ``BAMPCTL_`` equivalent is
set. The resulting configuration is exposed as immutable ``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load bampctl configuration. Install with "
        "`pip install bampctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "BAMPCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
LEGACY_PORT_ENV = {
    "BAMP_HTTP_PORT": "http",
    "BAMP_HTTPS_PORT": "https",
    "BAMP_MYSQL_PORT": "mysql",
}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PathsConfig:
    """Locations of the documents and directories bampctl manages."""

    httpd_conf: Path
    vhosts_dir: Path
    cert_dir: Path
    httpd_log_dir: Path
    dnsmasq_conf: Path
    resolver_dir: Path
    credentials_file: Path
    mysql_data_dir: Path
    php_etc_dir: Path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "httpd_conf": str(self.httpd_conf),
            "vhosts_dir": str(self.vhosts_dir),
            "cert_dir": str(self.cert_dir),
            "httpd_log_dir": str(self.httpd_log_dir),
            "dnsmasq_conf": str(self.dnsmasq_conf),
            "resolver_dir": str(self.resolver_dir),
            "credentials_file": str(self.credentials_file),
            "mysql_data_dir": str(self.mysql_data_dir),
            "php_etc_dir": str(self.php_etc_dir),
        }


@dataclass(frozen=True)
class PortsConfig:
    """Listening ports for the managed services."""

    http: int = 80
    https: int = 443
    mysql: int = 3306
    dns: int = 53535

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"http": self.http, "https": self.https, "mysql": self.mysql, "dns": self.dns}


@dataclass(frozen=True)
class PhpConfig:
    """Supported PHP runtime versions."""

    versions: tuple[str, ...] = ("8.1", "8.2", "8.3", "8.4")
    default: str = "8.2"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"versions": list(self.versions), "default": self.default}


@dataclass(frozen=True)
class MysqlConfig:
    """MySQL package aliases and client credentials."""

    formulas: tuple[str, ...] = ("mysql@8.4", "mysql")
    user: str = "root"
    password: str = "root"
    host: str = "localhost"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (password redacted)."""
        return {
            "formulas": list(self.formulas),
            "user": self.user,
            "password": "***" if self.password else "",
            "host": self.host,
        }


@dataclass(frozen=True)
class ServicesConfig:
    """Restart polling and command timeouts."""

    restart_poll_interval: float = 1.0
    restart_poll_attempts: int = 10
    command_timeout: float = 300.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "restart_poll_interval": self.restart_poll_interval,
            "restart_poll_attempts": self.restart_poll_attempts,
            "command_timeout": self.command_timeout,
        }


@dataclass(frozen=True)
class BinariesConfig:
    """Executable names or paths for external collaborators."""

    brew: str = "brew"
    httpd: str = "httpd"
    mkcert: str = "mkcert"
    mysql: str = "mysql"
    mysqldump: str = "mysqldump"
    pgrep: str = "pgrep"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "brew": self.brew,
            "httpd": self.httpd,
            "mkcert": self.mkcert,
            "mysql": self.mysql,
            "mysqldump": self.mysqldump,
            "pgrep": self.pgrep,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage locations."""

    root: Path
    index: Path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root), "index": str(self.index)}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for bampctl."""

    config_file: Path
    brew_prefix: Path
    webroot: Path
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    domain_suffix: str
    paths: PathsConfig
    ports: PortsConfig
    php: PhpConfig
    mysql: MysqlConfig
    services: ServicesConfig
    binaries: BinariesConfig
    backups: BackupConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "brew_prefix": str(self.brew_prefix),
            "webroot": str(self.webroot),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "domain_suffix": self.domain_suffix,
            "paths": self.paths.to_dict(),
            "ports": self.ports.to_dict(),
            "php": self.php.to_dict(),
            "mysql": self.mysql.to_dict(),
            "services": self.services.to_dict(),
            "binaries": self.binaries.to_dict(),
            "backups": self.backups.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/bampctl/config.yml",
    "brew_prefix": None,  # HOMEBREW_PREFIX or /opt/homebrew
    "webroot": "~/www",
    "state_dir": "~/.local/state/bampctl",
    "logs_dir": None,  # derived from state_dir when absent
    "runtime_dir": None,  # derived from state_dir when absent
    "templates_dir": "~/.config/bampctl/templates",
    "lock_timeout": 30.0,
    "domain_suffix": "test",
    "paths": {
        "httpd_conf": None,
        "vhosts_dir": None,
        "cert_dir": None,
        "httpd_log_dir": None,
        "dnsmasq_conf": None,
        "resolver_dir": "/etc/resolver",
        "credentials_file": "~/.my.cnf",
        "mysql_data_dir": None,
        "php_etc_dir": None,
    },
    "ports": {
        "http": 80,
        "https": 443,
        "mysql": 3306,
        "dns": 53535,
    },
    "php": {
        "versions": ["8.1", "8.2", "8.3", "8.4"],
        "default": "8.2",
    },
    "mysql": {
        "formulas": ["mysql@8.4", "mysql"],
        "user": "root",
        "password": "root",
        "host": "localhost",
    },
    "services": {
        "restart_poll_interval": 1.0,
        "restart_poll_attempts": 10,
        "command_timeout": 300.0,
    },
    "binaries": {
        "brew": "brew",
        "httpd": "httpd",
        "mkcert": "mkcert",
        "mysql": "mysql",
        "mysqldump": "mysqldump",
        "pgrep": "pgrep",
    },
    "backups": {
        "root": None,
        "index": None,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], value).keys())
    for section, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}
DEFAULT_BREW_PREFIX = "/opt/homebrew"


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

    if merged.get("brew_prefix") is None:
        merged["brew_prefix"] = resolved_env.get("HOMEBREW_PREFIX") or DEFAULT_BREW_PREFIX

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    legacy_values = _build_legacy_overrides(resolved_env)
    if legacy_values:
        _deep_merge(merged, legacy_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

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
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    suffix = raw.get("domain_suffix")
    if not isinstance(suffix, str) or not suffix.strip() or "/" in suffix:
        raise ConfigError("domain_suffix must be a non-empty string without slashes.")

    php_map = _as_dict(raw.get("php"), "php")
    versions = [str(item) for item in _as_sequence(php_map.get("versions", []), "php.versions")]
    if not versions:
        raise ConfigError("php.versions must list at least one version.")
    default_php = str(php_map.get("default", ""))
    if default_php not in versions:
        raise ConfigError(
            f"php.default '{default_php}' must be one of: {', '.join(versions)}."
        )

    mysql_map = _as_dict(raw.get("mysql"), "mysql")
    formulas = _as_sequence(mysql_map.get("formulas", []), "mysql.formulas")
    if not formulas:
        raise ConfigError("mysql.formulas must list at least one Homebrew formula.")

    ports_map = _as_dict(raw.get("ports"), "ports")
    for key in ("http", "https", "mysql", "dns"):
        port = _expect_int(ports_map.get(key), f"ports.{key}", default=1)
        if port < 1 or port > 65535:
            raise ConfigError(f"ports.{key} must be between 1 and 65535. Got {port}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    brew_prefix = _to_path(raw.get("brew_prefix"))
    webroot = _to_path(raw.get("webroot"))
    state_dir = _to_path(raw.get("state_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    logs_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_value) if logs_value else state_dir / "logs"
    runtime_value = raw.get("runtime_dir")
    runtime_dir = _to_path(runtime_value) if runtime_value else state_dir / "run"
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)
    domain_suffix = str(raw.get("domain_suffix", "test")).strip().lstrip(".")

    httpd_etc = brew_prefix / "etc" / "httpd"
    paths_mapping = _as_dict(raw.get("paths"), "paths")
    paths = PathsConfig(
        httpd_conf=_path_or(paths_mapping.get("httpd_conf"), httpd_etc / "httpd.conf"),
        vhosts_dir=_path_or(
            paths_mapping.get("vhosts_dir"), httpd_etc / "extra" / "vhosts.d"
        ),
        cert_dir=_path_or(paths_mapping.get("cert_dir"), httpd_etc / "certs"),
        httpd_log_dir=_path_or(
            paths_mapping.get("httpd_log_dir"), brew_prefix / "var" / "log" / "httpd"
        ),
        dnsmasq_conf=_path_or(
            paths_mapping.get("dnsmasq_conf"), brew_prefix / "etc" / "dnsmasq.conf"
        ),
        resolver_dir=_path_or(paths_mapping.get("resolver_dir"), Path("/etc/resolver")),
        credentials_file=_path_or(
            paths_mapping.get("credentials_file"), Path("~/.my.cnf").expanduser()
        ),
        mysql_data_dir=_path_or(
            paths_mapping.get("mysql_data_dir"), brew_prefix / "var" / "mysql"
        ),
        php_etc_dir=_path_or(paths_mapping.get("php_etc_dir"), brew_prefix / "etc" / "php"),
    )

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    ports = PortsConfig(
        http=_expect_int(ports_mapping.get("http"), "ports.http", default=80),
        https=_expect_int(ports_mapping.get("https"), "ports.https", default=443),
        mysql=_expect_int(ports_mapping.get("mysql"), "ports.mysql", default=3306),
        dns=_expect_int(ports_mapping.get("dns"), "ports.dns", default=53535),
    )

    php_mapping = _as_dict(raw.get("php"), "php")
    php = PhpConfig(
        versions=tuple(str(item) for item in _as_sequence(php_mapping.get("versions"), "php.versions")),
        default=str(php_mapping.get("default")),
    )

    mysql_mapping = _as_dict(raw.get("mysql"), "mysql")
    password_raw = mysql_mapping.get("password")
    mysql = MysqlConfig(
        formulas=tuple(
            str(item) for item in _as_sequence(mysql_mapping.get("formulas"), "mysql.formulas")
        ),
        user=str(mysql_mapping.get("user", "root")),
        password="" if password_raw is None else str(password_raw),
        host=str(mysql_mapping.get("host", "localhost")),
    )

    services_mapping = _as_dict(raw.get("services"), "services")
    attempts = _expect_int(
        services_mapping.get("restart_poll_attempts"),
        "services.restart_poll_attempts",
        default=10,
    )
    if attempts < 1:
        raise ConfigError("services.restart_poll_attempts must be at least 1.")
    services = ServicesConfig(
        restart_poll_interval=_expect_positive_float(
            services_mapping.get("restart_poll_interval"),
            "services.restart_poll_interval",
            default=1.0,
        ),
        restart_poll_attempts=attempts,
        command_timeout=_expect_positive_float(
            services_mapping.get("command_timeout"),
            "services.command_timeout",
            default=300.0,
        ),
    )

    binaries_mapping = _as_dict(raw.get("binaries"), "binaries")
    binaries = BinariesConfig(
        brew=str(binaries_mapping.get("brew", "brew")),
        httpd=str(binaries_mapping.get("httpd", "httpd")),
        mkcert=str(binaries_mapping.get("mkcert", "mkcert")),
        mysql=str(binaries_mapping.get("mysql", "mysql")),
        mysqldump=str(binaries_mapping.get("mysqldump", "mysqldump")),
        pgrep=str(binaries_mapping.get("pgrep", "pgrep")),
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups_root = _path_or(backups_mapping.get("root"), state_dir / "backups")
    backups = BackupConfig(
        root=backups_root,
        index=_path_or(backups_mapping.get("index"), backups_root / "backups.json"),
    )

    return AppConfig(
        config_file=config_file,
        brew_prefix=brew_prefix,
        webroot=webroot,
        state_dir=state_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        domain_suffix=domain_suffix,
        paths=paths,
        ports=ports,
        php=php,
        mysql=mysql,
        services=services,
        binaries=binaries,
        backups=backups,
    )


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


def _build_legacy_overrides(env: Mapping[str, str]) -> dict[str, object]:
    ports: dict[str, object] = {}
    for key, port_name in LEGACY_PORT_ENV.items():
        if key in env and f"{ENV_PREFIX}PORTS__{port_name.upper()}" not in env:
            ports[port_name] = _coerce_value(env[key])
    return {"ports": ports} if ports else {}


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


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if value is None:
        return ()
    if isinstance(value, (str, bytes)):
        # Allow comma separated values from environment overrides.
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


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


def _path_or(value: object, default: Path) -> Path:
    if value is None or value == "":
        return default
    return _to_path(value)


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


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
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
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
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
    "BackupConfig",
    "BinariesConfig",
    "ConfigError",
    "MysqlConfig",
    "PathsConfig",
    "PhpConfig",
    "PortsConfig",
    "ServicesConfig",
    "load_config",
]
