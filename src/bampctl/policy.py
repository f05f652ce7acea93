"""Invocation policy and the per-operation action journal."""
from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class StepStatus(str, Enum):
    """Outcome of a single primitive action."""

    SUCCESS = "success"
    NOOP = "noop"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ReconciliationPolicy:
    """Flags built once per invocation and passed to every component."""

    dry_run: bool = False
    force: bool = False
    verbose: bool = False


@dataclass(slots=True)
class JournalStep:
    """One journalled primitive action."""

    name: str
    status: StepStatus
    detail: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {"name": self.name, "status": self.status.value}
        if self.detail:
            payload["detail"] = self.detail
        return payload


@dataclass(slots=True)
class ActionJournal:
    """Record of every primitive action and backup taken by one operation.

    Mutating primitives record ``skipped`` steps under dry-run describing what
    they would have done, so the journal doubles as the dry-run preview.
    """

    steps: list[JournalStep] = field(default_factory=list)
    backups: list[Path] = field(default_factory=list)

    def record(self, name: str, status: StepStatus, detail: str | None = None) -> JournalStep:
        """Append a step and return it."""
        step = JournalStep(name=name, status=status, detail=detail)
        self.steps.append(step)
        return step

    def success(self, name: str, detail: str | None = None) -> JournalStep:
        """Record an applied change."""
        return self.record(name, StepStatus.SUCCESS, detail)

    def noop(self, name: str, detail: str | None = None) -> JournalStep:
        """Record a step whose desired state already held."""
        return self.record(name, StepStatus.NOOP, detail)

    def skipped(self, name: str, detail: str | None = None) -> JournalStep:
        """Record a step that was not applied (dry-run or declined)."""
        return self.record(name, StepStatus.SKIPPED, detail)

    def failed(self, name: str, detail: str | None = None) -> JournalStep:
        """Record a failed step."""
        return self.record(name, StepStatus.FAILED, detail)

    def planned(self, name: str, action: str) -> JournalStep:
        """Record the action a mutating primitive would take under dry-run."""
        return self.skipped(name, f"dry-run: would {action}")

    def add_backup(self, path: Path) -> None:
        """Remember a backup created during the operation."""
        if path not in self.backups:
            self.backups.append(path)

    @property
    def changed(self) -> int:
        """Number of steps that altered host state."""
        return sum(1 for step in self.steps if step.status is StepStatus.SUCCESS)

    @property
    def failures(self) -> list[JournalStep]:
        """Steps recorded as failed."""
        return [step for step in self.steps if step.status is StepStatus.FAILED]

    def __iter__(self) -> Iterator[JournalStep]:
        return iter(self.steps)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "steps": [step.to_dict() for step in self.steps],
            "backups": [str(path) for path in self.backups],
        }


__all__ = ["ActionJournal", "JournalStep", "ReconciliationPolicy", "StepStatus"]
