"""Pre-change snapshots, the backup index and uninstall archive helpers."""
from __future__ import annotations

import hashlib
import json
import os
import secrets
import shutil
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .errors import MutationFailure

BACKUP_SUFFIX_FORMAT = "%Y%m%d_%H%M%S"


class BackupError(MutationFailure):
    """Raised when backup operations fail."""


class BackupRegistryError(BackupError):
    """Raised when backup index interactions fail."""


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _normalise_identifier(value: str, *, label: str) -> str:
    normalised = value.strip()
    if not normalised:
        raise BackupRegistryError(f"{label} must be a non-empty string.")
    return normalised


def snapshot_path(source: Path, timestamp: datetime | None = None) -> Path:
    """Return an unused ``<file>.backup.<YYYYmmdd_HHMMSS>`` path for *source*."""
    moment = timestamp or datetime.now()
    candidate = source.with_name(f"{source.name}.backup.{moment:{BACKUP_SUFFIX_FORMAT}}")
    counter = 1
    while candidate.exists():
        candidate = source.with_name(
            f"{source.name}.backup.{moment:{BACKUP_SUFFIX_FORMAT}}.{counter}"
        )
        counter += 1
    return candidate


def snapshot_file(source: Path, timestamp: datetime | None = None) -> Path:
    """Copy *source* beside itself and return the backup path."""
    destination = snapshot_path(source, timestamp)
    try:
        shutil.copy2(source, destination)
    except OSError as exc:
        raise BackupError(f"Failed to back up {source} to {destination}: {exc}") from exc
    return destination


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 hex digest of *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(slots=True)
class BackupsRegistry:
    """Manage the JSON backup index under the backups directory."""

    root: Path
    index: Path

    def __post_init__(self) -> None:
        """Normalise root/index paths after initialisation."""
        self.root = self.root.expanduser()
        self.index = self.index.expanduser()

    # Basic helpers -------------------------------------------------
    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def read(self) -> dict[str, object]:
        """Return the parsed backups index (empty structure when missing)."""
        if not self.index.exists():
            return {"backups": []}
        try:
            data = json.loads(self.index.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {"backups": []}
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the backups index."""
        self.ensure_root()
        self.index.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.index.parent),
            prefix=f".{self.index.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_path, self.index)
            os.chmod(self.index, 0o640)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def append(self, entry: Mapping[str, object]) -> None:
        """Append *entry* to the backups index."""
        backups = self.read().get("backups")
        updated: list[object] = list(backups) if isinstance(backups, list) else []
        updated.append(dict(entry))
        self.write({"backups": updated})

    def list_entries(self) -> list[dict[str, object]]:
        """Return a list of backup entries, oldest first."""
        backups = self.read().get("backups", [])
        entries: list[dict[str, object]] = []
        if isinstance(backups, list):
            for item in backups:
                if isinstance(item, Mapping):
                    entries.append(dict(item))
        return entries

    def find_by_id(self, backup_id: str) -> dict[str, object] | None:
        """Return the entry for *backup_id* if present."""
        normalized = _normalise_identifier(backup_id, label="Backup identifier")
        for entry in self.list_entries():
            if str(entry.get("id", "")).strip() == normalized:
                return entry
        return None

    def entries_for_source(self, source: Path) -> list[dict[str, object]]:
        """Return entries whose original file or directory is *source*."""
        wanted = str(source)
        return [entry for entry in self.list_entries() if entry.get("source") == wanted]

    # Utility helpers -----------------------------------------------
    def generate_identifier(self, label: str) -> str:
        """Return a unique backup identifier for *label*."""
        timestamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
        token = secrets.token_hex(3)
        safe_label = "".join(char if char.isalnum() or char in {"-", "_"} else "-" for char in label)
        return f"{timestamp}-{safe_label}-{token}"

    def archive_directory(self, label: str) -> Path:
        """Return a fresh timestamped directory under the root for *label*."""
        stamp = datetime.now().strftime(BACKUP_SUFFIX_FORMAT)
        candidate = self.root / f"{label}-{stamp}"
        counter = 1
        while candidate.exists():
            candidate = self.root / f"{label}-{stamp}-{counter}"
            counter += 1
        return candidate

    def record(self, builder: BackupEntryBuilder) -> dict[str, object]:
        """Build an entry from *builder*, append it and return it."""
        entry = builder.build(backup_id=self.generate_identifier(builder.kind))
        self.append(entry)
        return entry


@dataclass(slots=True)
class BackupEntryBuilder:
    """Helper for constructing backup index entries."""

    kind: str
    source: Path
    backup_path: Path
    operation: str
    message: str | None = None

    def build(self, *, backup_id: str) -> dict[str, object]:
        """Return the JSON-serialisable entry for the backup index."""
        entry: dict[str, object] = {
            "id": backup_id,
            "kind": self.kind,
            "source": str(self.source),
            "path": str(self.backup_path),
            "operation": self.operation,
            "created_at": _now_iso(),
        }
        if self.backup_path.is_file():
            entry["size_bytes"] = self.backup_path.stat().st_size
            entry["checksum"] = {"algorithm": "sha256", "value": compute_checksum(self.backup_path)}
        if self.message:
            entry["message"] = self.message
        return entry


def copy_into(source: Path, destination: Path) -> None:
    """Copy or mirror *source* into *destination*."""
    if source.is_dir():
        shutil.copytree(source, destination, dirs_exist_ok=True)
    else:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)


__all__ = [
    "BackupEntryBuilder",
    "BackupError",
    "BackupRegistryError",
    "BackupsRegistry",
    "compute_checksum",
    "copy_into",
    "snapshot_file",
    "snapshot_path",
]
