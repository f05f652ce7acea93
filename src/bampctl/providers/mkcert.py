"""mkcert adapter for locally trusted development certificates."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import MutationFailure, PreconditionError
from .process import CommandResult, CommandRunner

INSTALL_HINT = "Install it with: brew install mkcert nss"


class MkcertError(MutationFailure):
    """Raised when mkcert fails to issue a certificate or install its CA."""


@dataclass(slots=True)
class MkcertProvider:
    """Issue certificates through the ``mkcert`` binary."""

    runner: CommandRunner = field(default_factory=CommandRunner)
    mkcert_bin: str = "mkcert"

    def available(self) -> bool:
        """Return True when mkcert can be executed."""
        result = self.runner.run([self.mkcert_bin, "-version"])
        return not result.missing and result.ok

    def issue(self, subjects: Sequence[str], cert_out: Path, key_out: Path) -> CommandResult:
        """Issue a certificate covering *subjects* into *cert_out*/*key_out*."""
        cert_out.parent.mkdir(parents=True, exist_ok=True)
        args = [
            self.mkcert_bin,
            "-cert-file",
            str(cert_out),
            "-key-file",
            str(key_out),
            *subjects,
        ]
        return self._check(self.runner.run(args))

    def install_ca(self) -> CommandResult:
        """Install the mkcert local CA into the system trust stores."""
        return self._check(self.runner.run([self.mkcert_bin, "-install"]))

    def _check(self, result: CommandResult) -> CommandResult:
        if result.missing:
            raise PreconditionError("mkcert is not installed.", remediation=INSTALL_HINT)
        if not result.ok:
            raise MkcertError(result.describe())
        return result


__all__ = ["INSTALL_HINT", "MkcertError", "MkcertProvider"]
