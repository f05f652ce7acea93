"""Certificate store and mkcert-backed provisioner."""
from __future__ import annotations

import stat
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from cryptography import x509

from .errors import PreconditionError, WriteDenied
from .policy import ActionJournal, ReconciliationPolicy
from .providers.mkcert import INSTALL_HINT, MkcertProvider

CERT_MODE = 0o644
KEY_MODE = 0o600
WILDCARD_PREFIX = "*."
LOCALHOST = "localhost"


def file_stem(subject: str) -> str:
    """Return the on-disk stem for *subject* (``*.test`` -> ``_wildcard.test``)."""
    if subject.startswith(WILDCARD_PREFIX):
        return f"_wildcard.{subject[len(WILDCARD_PREFIX):]}"
    return subject


def subjects_for(subject: str) -> list[str]:
    """Return the names mkcert is asked to cover for *subject*."""
    if subject == LOCALHOST:
        return [LOCALHOST, "127.0.0.1", "::1"]
    if subject.startswith(WILDCARD_PREFIX):
        return [subject, subject[len(WILDCARD_PREFIX):]]
    return [subject, f"www.{subject}"]


def wildcard_covers(suffix: str, domain: str) -> bool:
    """True when ``*.suffix`` (plus the bare suffix) is valid for *domain*.

    Only a single label may precede the suffix.
    """
    suffix = suffix.strip(".").lower()
    domain = domain.strip(".").lower()
    if domain == suffix:
        return True
    if not domain.endswith(f".{suffix}"):
        return False
    label = domain[: -len(suffix) - 1]
    return bool(label) and "." not in label


def read_expiry(path: Path) -> datetime | None:
    """Return the ``notAfter`` timestamp of the PEM certificate at *path*."""
    try:
        cert = x509.load_pem_x509_certificate(path.read_bytes())
    except (OSError, ValueError):
        return None
    not_after = getattr(cert, "not_valid_after_utc", None)
    if isinstance(not_after, datetime):
        return not_after
    return cert.not_valid_after.replace(tzinfo=UTC)  # pragma: no cover - older cryptography


@dataclass(slots=True)
class CertificatePair:
    """A certificate and its private key on disk."""

    subject: str
    certificate: Path
    key: Path
    not_valid_after: datetime | None = None

    @property
    def is_wildcard(self) -> bool:
        """True for ``*.suffix`` subjects."""
        return self.subject.startswith(WILDCARD_PREFIX)

    def exists(self) -> bool:
        """Both files are present."""
        return self.certificate.is_file() and self.key.is_file()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "subject": self.subject,
            "certificate": str(self.certificate),
            "key": str(self.key),
            "not_valid_after": (
                self.not_valid_after.isoformat() if self.not_valid_after else None
            ),
        }


class CertificateStore:
    """Naming and discovery of certificate pairs inside ``cert_dir``."""

    def __init__(self, cert_dir: Path) -> None:
        self.cert_dir = cert_dir

    def pair_for(self, subject: str) -> CertificatePair:
        """Return the (possibly absent) pair for *subject*, with its expiry when present."""
        stem = file_stem(subject)
        pair = CertificatePair(
            subject=subject,
            certificate=self.cert_dir / f"{stem}.pem",
            key=self.cert_dir / f"{stem}-key.pem",
        )
        if pair.certificate.is_file():
            pair.not_valid_after = read_expiry(pair.certificate)
        return pair

    def list(self) -> list[CertificatePair]:
        """Return every complete pair found in the directory."""
        pairs: list[CertificatePair] = []
        if not self.cert_dir.is_dir():
            return pairs
        for cert in sorted(self.cert_dir.glob("*.pem")):
            if cert.name.endswith("-key.pem"):
                continue
            stem = cert.name.removesuffix(".pem")
            subject = f"*.{stem[len('_wildcard.'):]}" if stem.startswith("_wildcard.") else stem
            pair = self.pair_for(subject)
            if pair.exists():
                pairs.append(pair)
        return pairs


class CertificateProvisioner:
    """Ensure certificate pairs exist with the expected permissions."""

    def __init__(
        self,
        store: CertificateStore,
        mkcert: MkcertProvider,
        policy: ReconciliationPolicy,
        journal: ActionJournal,
        *,
        suffix: str = "test",
    ) -> None:
        self.store = store
        self.mkcert = mkcert
        self.policy = policy
        self.journal = journal
        self.suffix = suffix

    @property
    def wildcard_subject(self) -> str:
        """``*.<suffix>`` for the configured suffix."""
        return f"{WILDCARD_PREFIX}{self.suffix}"

    def require_mkcert(self) -> None:
        """Raise :class:`PreconditionError` when mkcert is unavailable."""
        if not self.mkcert.available():
            raise PreconditionError("mkcert is not installed.", remediation=INSTALL_HINT)

    def ensure_certificate(self, subject: str) -> CertificatePair:
        """Return the pair for *subject*, issuing it through mkcert when absent."""
        pair = self.store.pair_for(subject)
        step = f"certificate.{file_stem(subject)}"
        if pair.exists():
            self.journal.noop(step, f"{pair.certificate} present")
            self.enforce_permissions(pair)
            return pair

        subjects = subjects_for(subject)
        self.require_mkcert()
        if self.policy.dry_run:
            self.journal.planned(step, f"issue certificate for {' '.join(subjects)}")
            return pair
        self.mkcert.issue(subjects, pair.certificate, pair.key)
        self.journal.success(step, f"issued {pair.certificate} for {' '.join(subjects)}")
        self.enforce_permissions(pair)
        pair.not_valid_after = read_expiry(pair.certificate)
        return pair

    def covering_wildcard(self, domain: str) -> CertificatePair | None:
        """Return an existing wildcard pair valid for *domain*, if any.

        The configured suffix's wildcard is preferred; any other wildcard pair
        in the certificate directory is accepted when it covers *domain*.
        """
        for pair in (self.store.pair_for(self.wildcard_subject), *self.store.list()):
            suffix = pair.subject[len(WILDCARD_PREFIX):]
            if pair.is_wildcard and pair.exists() and wildcard_covers(suffix, domain):
                return pair
        return None

    def resolve_for_domain(self, domain: str) -> CertificatePair:
        """Reuse a wildcard pair when one covers *domain*, else ensure a per-domain pair."""
        wildcard = self.covering_wildcard(domain)
        if wildcard is not None:
            self.journal.noop(
                f"certificate.{file_stem(domain)}",
                f"covered by wildcard {wildcard.certificate.name}",
            )
            self.enforce_permissions(wildcard)
            return wildcard
        return self.ensure_certificate(domain)

    def enforce_permissions(self, pair: CertificatePair) -> None:
        """Set certificate 0644 and key 0600, tightening an over-permissive key."""
        for path, mode in ((pair.certificate, CERT_MODE), (pair.key, KEY_MODE)):
            if not path.exists():
                continue
            current = stat.S_IMODE(path.stat().st_mode)
            if current == mode:
                continue
            if self.policy.dry_run:
                self.journal.planned("certificate.permissions", f"chmod {mode:04o} {path}")
                continue
            try:
                path.chmod(mode)
            except PermissionError as exc:
                raise WriteDenied(f"Cannot set mode {mode:04o} on {path}: {exc}") from exc
            self.journal.success(
                "certificate.permissions", f"{path} {current:04o} -> {mode:04o}"
            )

    def install_ca(self) -> None:
        """Install the mkcert CA into the system trust stores."""
        self.require_mkcert()
        if self.policy.dry_run:
            self.journal.planned("mkcert.install_ca", "run mkcert -install")
            return
        self.mkcert.install_ca()
        self.journal.success("mkcert.install_ca", "local CA installed")


__all__ = [
    "CERT_MODE",
    "KEY_MODE",
    "CertificatePair",
    "CertificateProvisioner",
    "CertificateStore",
    "file_stem",
    "read_expiry",
    "subjects_for",
    "wildcard_covers",
]
