"""Error taxonomy shared by every bampctl component.

Low-level components raise these typed errors; the CLI catches
:class:`BampError` at the command boundary, records the failure in the
operations log and exits with :attr:`BampError.exit_code`.
"""
from __future__ import annotations

from pathlib import Path

from .exit_codes import ExitCode


class BampError(RuntimeError):
    """Base class for failures surfaced to the operator."""

    exit_code: ExitCode = ExitCode.PROVIDER

    def __init__(
        self,
        message: str,
        *,
        remediation: str | None = None,
        backup: Path | None = None,
    ) -> None:
        """Capture the message plus optional remediation and backup hints."""
        super().__init__(message)
        self.message = message
        self.remediation = remediation
        self.backup = backup

    def summary(self) -> list[str]:
        """Return the lines shown to the operator for this failure."""
        lines = [self.message]
        if self.remediation:
            lines.append(self.remediation)
        if self.backup is not None:
            lines.append(f"Pre-change backup preserved at: {self.backup}")
        return lines


class ValidationError(BampError):
    """Raised when a name, domain or version is rejected before any mutation."""

    exit_code = ExitCode.VALIDATION


class PreconditionError(BampError):
    """Raised when a required external tool or service is absent."""

    exit_code = ExitCode.ENVIRONMENT


class AlreadyExists(BampError):
    """Raised by stores refusing to overwrite an existing entity."""

    exit_code = ExitCode.VALIDATION


class AlreadySatisfied(BampError):
    """Signals that the desired state already holds (idempotent no-op)."""

    exit_code = ExitCode.OK


class EntityNotFound(BampError):
    """Raised when an entity expected by the operator does not exist."""

    exit_code = ExitCode.VALIDATION


class MutationFailure(BampError):
    """Raised when a file or process mutation fails; never retried."""

    exit_code = ExitCode.PROVIDER


class ConfigNotFound(MutationFailure):
    """Raised when a configuration document to patch does not exist."""

    exit_code = ExitCode.ENVIRONMENT


class WriteDenied(MutationFailure):
    """Raised when writing a configuration document is not permitted."""


class VerificationFailure(BampError):
    """Raised when a post-mutation self-test or reachability check fails."""

    exit_code = ExitCode.VERIFICATION


class RestartTimedOut(BampError, TimeoutError):
    """Raised when a restarted service does not report running in time."""

    exit_code = ExitCode.TIMEOUT


__all__ = [
    "AlreadyExists",
    "AlreadySatisfied",
    "BampError",
    "ConfigNotFound",
    "EntityNotFound",
    "MutationFailure",
    "PreconditionError",
    "RestartTimedOut",
    "ValidationError",
    "VerificationFailure",
    "WriteDenied",
]
