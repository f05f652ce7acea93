"""Apache httpd adapter: binary resolution, self-test and PHP module lookup."""
from __future__ import annotations

import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from .process import CommandResult, CommandRunner

_PHP_MODULE_RE = re.compile(
    r"^\s*LoadModule\s+php\d*_module\s+\S*?/php@(?P<version>\d+\.\d+)/",
    re.MULTILINE,
)


@dataclass(slots=True)
class HttpdProvider:
    """Locate and exercise the Homebrew httpd binary."""

    brew_prefix: Path
    runner: CommandRunner = field(default_factory=CommandRunner)
    httpd_bin: str = "httpd"
    config_path: Path | None = None

    def resolve_binary(self) -> str | None:
        """Return the httpd executable from ``PATH`` or ``<prefix>/bin``."""
        found = shutil.which(self.httpd_bin)
        if found:
            return found
        fallback = self.brew_prefix / "bin" / "httpd"
        if fallback.exists():
            return str(fallback)
        return None

    def self_test(self) -> CommandResult:
        """Run ``httpd -t`` against the managed configuration."""
        binary = self.resolve_binary() or self.httpd_bin
        args = [binary, "-t"]
        if self.config_path is not None:
            args.extend(["-f", str(self.config_path)])
        return self.runner.run(args)

    def php_module_path(self, version: str) -> Path:
        """Return the libphp module path for PHP *version*."""
        return self.brew_prefix / "opt" / f"php@{version}" / "lib" / "httpd" / "modules" / "libphp.so"

    @staticmethod
    def active_php_version(conf: str | Path) -> str | None:
        """Return the PHP version loaded by *conf* (text or path), if any."""
        if isinstance(conf, Path):
            if not conf.exists():
                return None
            conf = conf.read_text(encoding="utf-8", errors="replace")
        match = _PHP_MODULE_RE.search(conf)
        return match.group("version") if match else None


__all__ = ["HttpdProvider"]
