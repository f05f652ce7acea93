"""Homebrew adapter: packages and ``brew services``."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from ..errors import MutationFailure, PreconditionError
from .process import CommandResult, CommandRunner

SERVICE_ACTIONS = frozenset({"start", "stop", "restart", "run", "kill"})


class HomebrewError(MutationFailure):
    """Raised when a brew invocation fails."""


@dataclass(slots=True)
class HomebrewProvider:
    """Query and mutate Homebrew packages and services."""

    runner: CommandRunner = field(default_factory=CommandRunner)
    brew_bin: str = "brew"
    timeout: float | None = None

    def available(self) -> bool:
        """Return True when the brew executable can be invoked."""
        return self.runner.run([self.brew_bin, "--version"], timeout=self.timeout).ok

    def is_installed(self, package: str) -> bool:
        """Return True when *package* is installed (``brew list --versions``)."""
        result = self.runner.run([self.brew_bin, "list", "--versions", package], timeout=self.timeout)
        if result.missing:
            return False
        return result.ok and bool(result.stdout.strip())

    def install(self, package: str) -> CommandResult:
        """Install *package*."""
        return self._brew(["install", package])

    def uninstall(self, package: str, *, ignore_dependencies: bool = True) -> CommandResult:
        """Uninstall *package*."""
        args = ["uninstall", package]
        if ignore_dependencies:
            args.append("--ignore-dependencies")
        return self._brew(args)

    def link(self, package: str, *, force: bool = False, overwrite: bool = False) -> CommandResult:
        """Link *package* into the prefix."""
        args = ["link"]
        if force:
            args.append("--force")
        if overwrite:
            args.append("--overwrite")
        args.append(package)
        return self._brew(args)

    def services_list(self) -> str:
        """Return the raw ``brew services list`` table."""
        return self._brew(["services", "list"]).stdout

    def service(self, action: str, package: str) -> CommandResult:
        """Run ``brew services <action> <package>``."""
        if action not in SERVICE_ACTIONS:
            raise ValueError(f"Unsupported brew services action: {action}")
        return self._brew(["services", action, package])

    # ------------------------------------------------------------------
    def _brew(self, args: Sequence[str]) -> CommandResult:
        result = self.runner.run([self.brew_bin, *args], timeout=self.timeout)
        if result.missing:
            raise PreconditionError(
                f"{self.brew_bin} not found.",
                remediation="Install Homebrew from https://brew.sh and retry.",
            )
        if not result.ok:
            raise HomebrewError(result.describe())
        return result


__all__ = ["HomebrewError", "HomebrewProvider"]
