"""Typed wrapper around external process execution.

Adapters never branch on raw ``subprocess`` outcomes; they receive a
:class:`CommandResult` that distinguishes success, a non-zero exit, a timeout
and a missing executable.
"""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of a single external command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    missing: bool = False
    raw_stdout: bytes = b""

    @property
    def ok(self) -> bool:
        """True when the command ran to completion with exit status 0."""
        return self.returncode == 0 and not self.timed_out and not self.missing

    @property
    def output(self) -> str:
        """Best single-line explanation of the result for error messages."""
        if self.missing:
            return f"{self.args[0] if self.args else 'command'} not found"
        if self.timed_out:
            return "timed out"
        return (self.stderr or self.stdout or "no output").strip()

    def describe(self) -> str:
        """Return ``<cmd> failed (exit N): <output>`` for error reporting."""
        joined = " ".join(self.args)
        return f"{joined} failed (exit {self.returncode}): {self.output}"


class CommandRunner:
    """Execute external commands and capture their output.

    Output is decoded as text unless the call passes ``binary=True``; binary
    calls take bytes on stdin and return stdout untouched in
    :attr:`CommandResult.raw_stdout`.
    """

    def __init__(self, *, default_timeout: float | None = None) -> None:
        """Store the timeout applied when a call does not pass one."""
        self.default_timeout = default_timeout

    def run(
        self,
        args: Sequence[str],
        *,
        timeout: float | None = None,
        input: str | bytes | None = None,  # noqa: A002 - mirrors subprocess.run
        binary: bool = False,
    ) -> CommandResult:
        """Run *args* and return a :class:`CommandResult`."""
        command = [str(arg) for arg in args]
        effective_timeout = self.default_timeout if timeout is None else timeout
        payload = input.encode("utf-8") if binary and isinstance(input, str) else input
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=not binary,
                input=payload,
                timeout=effective_timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            return CommandResult(tuple(command), returncode=127, stderr=str(exc), missing=True)
        except subprocess.TimeoutExpired:
            return CommandResult(tuple(command), returncode=-1, timed_out=True)
        if binary:
            return CommandResult(
                tuple(command),
                returncode=completed.returncode,
                stderr=(completed.stderr or b"").decode("utf-8", errors="replace"),
                raw_stdout=completed.stdout or b"",
            )
        return CommandResult(
            tuple(command),
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )


__all__ = ["CommandResult", "CommandRunner"]
