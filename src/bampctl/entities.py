"""Virtual host entity store backed by one ``<domain>.conf`` file per site."""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from .errors import AlreadyExists, EntityNotFound, MutationFailure, ValidationError, WriteDenied
from .policy import ActionJournal, ReconciliationPolicy
from .templates import write_if_changed

DOMAIN_PATTERN = re.compile(r"^[a-zA-Z0-9.-]+$")
RESERVED_PREFIX = "00-"

_SERVER_NAME_RE = re.compile(r"^\s*ServerName\s+(\S+)", re.MULTILINE)
_DOCUMENT_ROOT_RE = re.compile(r'^\s*DocumentRoot\s+"?([^"\n]+?)"?\s*$', re.MULTILINE)
_VHOST_RE = re.compile(r"^\s*<VirtualHost\s+[^>]*:(\d+)\s*>", re.MULTILINE)
_CERT_RE = re.compile(r'^\s*SSLCertificateFile\s+"?([^"\n]+?)"?\s*$', re.MULTILINE)
_KEY_RE = re.compile(r'^\s*SSLCertificateKeyFile\s+"?([^"\n]+?)"?\s*$', re.MULTILINE)


def validate_domain(domain: str) -> str:
    """Return *domain* or raise :class:`ValidationError`."""
    candidate = domain.strip()
    if not candidate or not DOMAIN_PATTERN.match(candidate) or candidate.startswith("."):
        raise ValidationError(
            f"Invalid domain '{domain}'. Use letters, digits, dots and hyphens only."
        )
    return candidate


@dataclass(slots=True)
class VHostEntry:
    """Declared identity and routing of one site."""

    domain: str
    path: Path
    document_root: Path | None = None
    http_port: int | None = None
    https_port: int | None = None
    certificate: Path | None = None
    certificate_key: Path | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "domain": self.domain,
            "path": str(self.path),
            "document_root": str(self.document_root) if self.document_root else None,
            "http_port": self.http_port,
            "https_port": self.https_port,
            "certificate": str(self.certificate) if self.certificate else None,
            "certificate_key": str(self.certificate_key) if self.certificate_key else None,
        }


def parse_vhost(path: Path, text: str) -> VHostEntry:
    """Best-effort extraction of a :class:`VHostEntry` from vhost file *text*."""
    domain = path.name.removesuffix(".conf")
    server_name = _SERVER_NAME_RE.search(text)
    if server_name:
        domain = server_name.group(1)
    root = _DOCUMENT_ROOT_RE.search(text)
    cert = _CERT_RE.search(text)
    key = _KEY_RE.search(text)
    ports = [int(port) for port in _VHOST_RE.findall(text)]
    https_port: int | None = None
    http_port: int | None = None
    if ports:
        if cert and len(ports) > 1:
            http_port, https_port = ports[0], ports[-1]
        elif cert:
            https_port = ports[0]
        else:
            http_port = ports[0]
    return VHostEntry(
        domain=domain,
        path=path,
        document_root=Path(root.group(1)) if root else None,
        http_port=http_port,
        https_port=https_port,
        certificate=Path(cert.group(1)) if cert else None,
        certificate_key=Path(key.group(1)) if key else None,
    )


class EntityStore:
    """Directory-scanned store of virtual host files.

    The presence of ``<domain>.conf`` is the existence proof; there is no
    separate index. Files prefixed ``00-`` belong to the default localhost
    site and are never listed.
    """

    def __init__(
        self,
        vhosts_dir: Path,
        policy: ReconciliationPolicy,
        journal: ActionJournal,
    ) -> None:
        self.vhosts_dir = vhosts_dir
        self.policy = policy
        self.journal = journal

    def path_for(self, domain: str) -> Path:
        """Return the vhost file path for *domain*."""
        return self.vhosts_dir / f"{validate_domain(domain)}.conf"

    def exists(self, domain: str) -> bool:
        """True when a vhost file for *domain* exists."""
        return self.path_for(domain).is_file()

    def list(self) -> list[VHostEntry]:
        """Return every site in the vhost directory (unordered)."""
        entries: list[VHostEntry] = []
        if not self.vhosts_dir.is_dir():
            return entries
        for path in self.vhosts_dir.glob("*.conf"):
            if path.name.startswith(RESERVED_PREFIX) or not path.is_file():
                continue
            try:
                text = path.read_text(encoding="utf-8", errors="replace")
            except OSError:
                entries.append(VHostEntry(domain=path.name.removesuffix(".conf"), path=path))
                continue
            entries.append(parse_vhost(path, text))
        return entries

    def get(self, domain: str) -> VHostEntry:
        """Return the entry for *domain* or raise :class:`EntityNotFound`."""
        path = self.path_for(domain)
        if not path.is_file():
            raise EntityNotFound(f"Site '{domain}' does not exist ({path}).")
        return parse_vhost(path, path.read_text(encoding="utf-8", errors="replace"))

    def write(self, entry: VHostEntry, content: str) -> Path:
        """Create the vhost file for *entry*; never overwrites."""
        path = self.path_for(entry.domain)
        if path.exists():
            raise AlreadyExists(f"Site '{entry.domain}' already exists ({path}).")
        if self.policy.dry_run:
            self.journal.planned("vhost.write", f"write {path}")
            return path
        try:
            write_if_changed(path, content, mode=0o644)
        except PermissionError as exc:
            raise WriteDenied(f"Permission denied writing {path}: {exc}") from exc
        except OSError as exc:
            raise MutationFailure(f"Failed to write {path}: {exc}") from exc
        self.journal.success("vhost.write", str(path))
        return path

    def remove(self, domain: str) -> Path:
        """Delete the vhost file for *domain*."""
        path = self.path_for(domain)
        if not path.is_file():
            raise EntityNotFound(f"Site '{domain}' does not exist ({path}).")
        if self.policy.dry_run:
            self.journal.planned("vhost.remove", f"delete {path}")
            return path
        try:
            path.unlink()
        except PermissionError as exc:
            raise WriteDenied(f"Permission denied removing {path}: {exc}") from exc
        self.journal.success("vhost.remove", str(path))
        return path


__all__ = ["EntityStore", "VHostEntry", "parse_vhost", "validate_domain"]
