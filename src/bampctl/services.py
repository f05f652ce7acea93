"""Service lifecycle control through ``brew services``."""
from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum

from .errors import PreconditionError, RestartTimedOut
from .policy import ActionJournal, ReconciliationPolicy
from .providers.homebrew import HomebrewProvider
from .providers.process import CommandRunner


class ServiceState(str, Enum):
    """Live state of a managed service."""

    RUNNING = "running"
    STOPPED = "stopped"
    NOT_INSTALLED = "not_installed"


@dataclass(frozen=True, slots=True)
class ServiceDescriptor:
    """A logical service and the Homebrew formulae that may provide it."""

    name: str
    aliases: tuple[str, ...]
    process_name: str | None = None


def default_descriptors(mysql_formulas: Sequence[str] = ("mysql@8.4", "mysql")) -> dict[str, ServiceDescriptor]:
    """Return the descriptors for httpd, mysql and dnsmasq."""
    return {
        "httpd": ServiceDescriptor("httpd", ("httpd",)),
        "mysql": ServiceDescriptor("mysql", tuple(mysql_formulas)),
        "dnsmasq": ServiceDescriptor("dnsmasq", ("dnsmasq",), process_name="dnsmasq"),
    }


def parse_services_list(output: str) -> dict[str, str]:
    """Map formula name to status column from ``brew services list``."""
    statuses: dict[str, str] = {}
    for index, line in enumerate(output.splitlines()):
        parts = line.split()
        if not parts:
            continue
        if index == 0 and parts[0] == "Name":
            continue
        statuses[parts[0]] = parts[1] if len(parts) > 1 else "none"
    return statuses


class ServiceController:
    """Query and drive services, resolving aliases newest first."""

    def __init__(
        self,
        brew: HomebrewProvider,
        policy: ReconciliationPolicy,
        journal: ActionJournal,
        *,
        descriptors: dict[str, ServiceDescriptor] | None = None,
        runner: CommandRunner | None = None,
        pgrep_bin: str = "pgrep",
        poll_interval: float = 1.0,
        max_attempts: int = 10,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.brew = brew
        self.policy = policy
        self.journal = journal
        self.descriptors = descriptors or default_descriptors()
        self.runner = runner or brew.runner
        self.pgrep_bin = pgrep_bin
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._sleep = sleep

    def descriptor(self, name: str) -> ServiceDescriptor:
        """Return the descriptor registered for *name*."""
        try:
            return self.descriptors[name]
        except KeyError:
            raise PreconditionError(f"Unknown service '{name}'.") from None

    def resolve(self, name: str) -> str | None:
        """Return the first installed alias for *name* (None when none is)."""
        for alias in self.descriptor(name).aliases:
            if self.brew.is_installed(alias):
                return alias
        return None

    def status(self, name: str) -> ServiceState:
        """Query the live state of *name*."""
        descriptor = self.descriptor(name)
        package = self.resolve(name)
        if package is None:
            return ServiceState.NOT_INSTALLED
        statuses = parse_services_list(self.brew.services_list())
        if statuses.get(package) == "started":
            return ServiceState.RUNNING
        if descriptor.process_name and self._process_running(descriptor.process_name):
            return ServiceState.RUNNING
        return ServiceState.STOPPED

    def start(self, name: str) -> None:
        """Start *name* through brew services; requires the package to be installed."""
        package = self._require(name)
        if self.policy.dry_run:
            self.journal.planned(f"service.{name}.start", f"brew services start {package}")
            return
        self.brew.service("start", package)
        self.journal.success(f"service.{name}.start", package)

    def stop(self, name: str) -> None:
        """Stop *name*; tolerant of a missing or already stopped service."""
        package = self.resolve(name)
        step = f"service.{name}.stop"
        if package is None:
            self.journal.noop(step, "not installed")
            return
        if self.status(name) is ServiceState.STOPPED:
            self.journal.noop(step, "already stopped")
            return
        if self.policy.dry_run:
            self.journal.planned(step, f"brew services stop {package}")
            return
        self.brew.service("stop", package)
        self.journal.success(step, package)

    def restart(self, name: str) -> None:
        """Stop then start *name* and wait until it reports running."""
        package = self._require(name)
        step = f"service.{name}.restart"
        if self.policy.dry_run:
            self.journal.planned(step, f"brew services stop/start {package}")
            return
        if self.status(name) is ServiceState.RUNNING:
            self.brew.service("stop", package)
        self.brew.service("start", package)
        for attempt in range(1, self.max_attempts + 1):
            if self.status(name) is ServiceState.RUNNING:
                self.journal.success(step, f"{package} running after {attempt} check(s)")
                return
            if attempt < self.max_attempts:
                self._sleep(self.poll_interval)
        self.journal.failed(step, f"{package} not running after {self.max_attempts} checks")
        raise RestartTimedOut(
            f"{package} did not report running after restart "
            f"({self.max_attempts} checks, {self.poll_interval:g}s apart).",
            remediation=f"Inspect the service with: brew services info {package}",
        )

    def _require(self, name: str) -> str:
        package = self.resolve(name)
        if package is None:
            aliases = ", ".join(self.descriptor(name).aliases)
            raise PreconditionError(
                f"Service '{name}' is not installed (looked for: {aliases}).",
                remediation="Install the stack with: bampctl install",
            )
        return package

    def _process_running(self, process_name: str) -> bool:
        result = self.runner.run([self.pgrep_bin, "-x", process_name])
        return result.ok


__all__ = [
    "ServiceController",
    "ServiceDescriptor",
    "ServiceState",
    "default_descriptors",
    "parse_services_list",
]
