"""Idempotent, line-oriented editing of shared configuration documents.

A :class:`Directive` pairs a canonical line with the patterns used to find an
existing occurrence of it: a commented-out (disabled) form, an active line whose
value the engine owns (``replaces``) and an optional insertion ``anchor``.
:class:`DirectivePatcher` applies directives to an in-memory
:class:`ConfigDocument` and commits it through a scoped mutation::

    with patcher.mutate(conf, verify=httpd.self_test) as document:
        patcher.ensure(document, directives.include_vhosts())

The commit takes a ``<file>.backup.<YYYYmmdd_HHMMSS>`` copy immediately before
writing, replaces the file atomically and then runs the verify callback. A
failed verification leaves the backup in place and raises
:class:`~bampctl.errors.VerificationFailure`; nothing is restored
automatically.
"""
from __future__ import annotations

import re
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .backups import snapshot_file
from .errors import ConfigNotFound, MutationFailure, VerificationFailure, WriteDenied
from .policy import ActionJournal, ReconciliationPolicy
from .providers.process import CommandResult
from .templates import write_if_changed

Verifier = Callable[[], CommandResult]


class PatchOutcome(Enum):
    """Result of ensuring a single directive."""

    CHANGED = "changed"
    UNCHANGED = "unchanged"


class LineMatch(Enum):
    """How a document line relates to a directive."""

    NONE = "none"
    CANONICAL = "canonical"
    DISABLED = "disabled"
    REPLACEABLE = "replaceable"


def _normalise(line: str) -> str:
    return " ".join(line.split())


def _flexible(text: str) -> str:
    """Regex for *text* tolerating any run of whitespace between tokens."""
    return r"\s+".join(re.escape(token) for token in text.split())


@dataclass(frozen=True, slots=True)
class Directive:
    """A single owned setting and the patterns that locate it."""

    name: str
    canonical: str
    match: re.Pattern[str] | None = None
    disabled: re.Pattern[str] | None = None
    replaces: re.Pattern[str] | None = None
    anchor: re.Pattern[str] | None = None

    @classmethod
    def build(
        cls,
        name: str,
        canonical: str,
        *,
        disabled: str | None = None,
        replaces: str | None = None,
        anchor: str | None = None,
    ) -> Directive:
        """Compile a directive; the disabled form defaults to ``# <canonical>``."""
        disabled_pattern = disabled or rf"^\s*#+\s*{_flexible(canonical)}\s*$"
        return cls(
            name=name,
            canonical=canonical,
            match=re.compile(rf"^\s*{_flexible(canonical)}\s*$"),
            disabled=re.compile(disabled_pattern),
            replaces=re.compile(replaces) if replaces else None,
            anchor=re.compile(anchor) if anchor else None,
        )

    def classify(self, line: str) -> LineMatch:
        """Return how *line* relates to this directive."""
        if self.is_canonical(line):
            return LineMatch.CANONICAL
        if self.disabled is not None and self.disabled.search(line):
            return LineMatch.DISABLED
        if self.replaces is not None and self.replaces.search(line):
            return LineMatch.REPLACEABLE
        return LineMatch.NONE

    def is_canonical(self, line: str) -> bool:
        """Return True when *line* is the canonical form."""
        if self.match is not None:
            return bool(self.match.search(line))
        return _normalise(line) == _normalise(self.canonical)


@dataclass(frozen=True, slots=True)
class BlockDirective:
    """A multi-line section identified by its opening line."""

    name: str
    lines: tuple[str, ...]

    @property
    def opener(self) -> str:
        """First line of the block."""
        return self.lines[0]


@dataclass(slots=True)
class ConfigDocument:
    """Ordered lines of a configuration file plus the edits applied so far."""

    path: Path
    lines: list[str]
    existed: bool = True
    edits: list[str] = field(default_factory=list)

    @classmethod
    def parse(cls, path: Path, text: str, *, existed: bool = True) -> ConfigDocument:
        """Split *text* into a document for *path*."""
        return cls(path=path, lines=text.splitlines(), existed=existed)

    def render(self) -> str:
        """Return the document text (always newline terminated)."""
        return "\n".join(self.lines) + "\n" if self.lines else ""

    @property
    def changed(self) -> bool:
        """Whether any edit has been applied in memory."""
        return bool(self.edits)

    def count(self, predicate: Callable[[str], bool]) -> int:
        """Number of lines satisfying *predicate*."""
        return sum(1 for line in self.lines if predicate(line))

    def first_index(self, pattern: re.Pattern[str]) -> int | None:
        """Index of the first line matching *pattern*."""
        for index, line in enumerate(self.lines):
            if pattern.search(line):
                return index
        return None


class DirectivePatcher:
    """The only component allowed to edit configuration document content."""

    def __init__(self, policy: ReconciliationPolicy, journal: ActionJournal) -> None:
        """Bind the patcher to the invocation policy and journal."""
        self.policy = policy
        self.journal = journal

    # Loading -----------------------------------------------------------
    def load(self, path: Path, *, create: bool = False) -> ConfigDocument:
        """Read *path*; a missing file raises unless *create* is set."""
        if not path.exists():
            if create:
                return ConfigDocument(path=path, lines=[], existed=False)
            raise ConfigNotFound(
                f"Configuration file not found: {path}",
                remediation="Install the stack first with: bampctl install",
            )
        try:
            text = path.read_text(encoding="utf-8", errors="surrogateescape")
        except PermissionError as exc:
            raise WriteDenied(f"Cannot read {path}: {exc}") from exc
        return ConfigDocument.parse(path, text)

    # In-memory edits ------------------------------------------------------
    def ensure(self, document: ConfigDocument, directive: Directive) -> PatchOutcome:
        """Make *directive*'s canonical line present exactly once."""
        if document.count(directive.is_canonical):
            self.journal.noop(f"directive.{directive.name}", f"already present in {document.path.name}")
            return PatchOutcome.UNCHANGED

        target = self._first(document, directive, LineMatch.DISABLED)
        if target is not None:
            self._rewrite(document, target, directive, "enable")
        else:
            target = self._first(document, directive, LineMatch.REPLACEABLE)
            if target is not None:
                self._rewrite(document, target, directive, "replace")
            else:
                self._insert(document, directive)

        occurrences = document.count(directive.is_canonical)
        if occurrences != 1:
            raise MutationFailure(
                f"Directive {directive.name} would appear {occurrences} times in {document.path}."
            )
        return PatchOutcome.CHANGED

    def ensure_block(self, document: ConfigDocument, block: BlockDirective) -> PatchOutcome:
        """Append *block* unless a line equal to its opener already exists."""
        opener = _normalise(block.opener)
        if document.count(lambda line: _normalise(line) == opener):
            self.journal.noop(f"block.{block.name}", f"already present in {document.path.name}")
            return PatchOutcome.UNCHANGED
        if document.lines and document.lines[-1].strip():
            document.lines.append("")
        document.lines.extend(block.lines)
        document.edits.append(f"append block {block.opener.strip()}")
        return PatchOutcome.CHANGED

    def seed(self, document: ConfigDocument, text: str) -> PatchOutcome:
        """Fill a newly created, still empty *document* with *text*."""
        if document.existed or document.lines:
            return PatchOutcome.UNCHANGED
        document.lines.extend(text.splitlines())
        document.edits.append(f"create {document.path} from template")
        return PatchOutcome.CHANGED

    def remove(
        self,
        document: ConfigDocument,
        pattern: re.Pattern[str],
        *,
        keep: Directive | None = None,
    ) -> int:
        """Delete every line matching *pattern* (except *keep*'s canonical line)."""
        kept: list[str] = []
        removed: list[str] = []
        for line in document.lines:
            doomed = pattern.search(line) is not None
            if doomed and keep is not None and keep.is_canonical(line):
                doomed = False
            (removed if doomed else kept).append(line)
        if removed:
            document.lines[:] = kept
            for line in removed:
                document.edits.append(f"remove {line.strip()}")
        return len(removed)

    def _first(self, document: ConfigDocument, directive: Directive, kind: LineMatch) -> int | None:
        for index, line in enumerate(document.lines):
            if directive.classify(line) is kind:
                return index
        return None

    def _rewrite(self, document: ConfigDocument, index: int, directive: Directive, verb: str) -> None:
        previous = document.lines[index]
        indent = previous[: len(previous) - len(previous.lstrip())]
        if verb == "enable":
            indent = ""
        document.lines[index] = f"{indent}{directive.canonical}"
        document.edits.append(f"{verb} line {index + 1}: {previous.strip()} -> {directive.canonical}")

    def _insert(self, document: ConfigDocument, directive: Directive) -> None:
        # Re-check full-document absence immediately before inserting.
        if document.count(directive.is_canonical):
            return
        position = None
        if directive.anchor is not None:
            position = document.first_index(directive.anchor)
        if position is None:
            document.lines.append(directive.canonical)
            document.edits.append(f"append {directive.canonical}")
        else:
            document.lines.insert(position, directive.canonical)
            document.edits.append(f"insert before line {position + 1}: {directive.canonical}")

    # Scoped mutation ------------------------------------------------------
    @contextmanager
    def mutate(
        self,
        path: Path,
        *,
        verify: Verifier | None = None,
        create: bool = False,
        mode: int | None = None,
    ) -> Iterator[ConfigDocument]:
        """Snapshot *path*, yield it for edits, then commit and verify."""
        document = self.load(path, create=create)
        yield document
        self.commit(document, verify=verify, mode=mode)

    def commit(
        self,
        document: ConfigDocument,
        *,
        verify: Verifier | None = None,
        mode: int | None = None,
    ) -> Path | None:
        """Write *document* if it changed; return the backup path taken."""
        step = f"patch.{document.path.name}"
        if not document.changed:
            self.journal.noop(step, f"{document.path} already up to date")
            return None
        if self.policy.dry_run:
            for edit in document.edits:
                self.journal.planned(step, edit)
            return None

        backup: Path | None = None
        if document.existed:
            backup = snapshot_file(document.path)
            self.journal.add_backup(backup)
            self.journal.success(f"backup.{document.path.name}", f"{document.path} -> {backup}")

        effective_mode = mode
        if effective_mode is None and document.existed:
            effective_mode = document.path.stat().st_mode & 0o777
        try:
            write_if_changed(document.path, document.render(), mode=effective_mode)
        except PermissionError as exc:
            raise WriteDenied(
                f"Permission denied writing {document.path}: {exc}",
                remediation="Re-run with sufficient privileges for this path.",
                backup=backup,
            ) from exc
        except OSError as exc:
            raise MutationFailure(f"Failed to write {document.path}: {exc}", backup=backup) from exc

        for edit in document.edits:
            self.journal.success(step, edit)

        if verify is not None:
            result = verify()
            if not result.ok:
                self.journal.failed(f"verify.{document.path.name}", result.output)
                raise VerificationFailure(
                    f"Configuration test failed after updating {document.path}: {result.output}",
                    remediation="Fix the reported error or restore the backup manually.",
                    backup=backup,
                )
            self.journal.success(f"verify.{document.path.name}", "configuration test passed")
        return backup


@dataclass(frozen=True, slots=True)
class HttpdDirectives:
    """Catalogue of the httpd.conf directives bampctl owns."""

    brew_prefix: Path
    vhosts_dir: Path
    webroot: Path
    http_port: int = 80
    https_port: int = 443

    PHP_MODULE_PATTERN = re.compile(r"^\s*#?\s*LoadModule\s+php\d*_module\s+\S*libphp")
    LOAD_MODULE_ANCHOR = r"^\s*LoadModule\s"

    def listen_http(self) -> Directive:
        """Primary ``Listen``; rewrites any other active Listen except HTTPS."""
        return Directive.build(
            "listen.http",
            f"Listen {self.http_port}",
            replaces=rf"^\s*Listen\s+(?!(?:\S*:)?{self.https_port}\s*$)\S+\s*$",
        )

    def listen_https(self) -> Directive:
        """Secondary ``Listen`` for TLS."""
        return Directive.build("listen.https", f"Listen {self.https_port}")

    def server_name(self) -> Directive:
        """``ServerName localhost:<http>``, enabling the stock commented example."""
        return Directive.build(
            "server_name",
            f"ServerName localhost:{self.http_port}",
            disabled=r"^\s*#+\s*ServerName\s+\S+\s*$",
            replaces=r"^ServerName\s+",
        )

    def rewrite_module(self) -> Directive:
        """``LoadModule rewrite_module``."""
        return _module("rewrite_module", "mod_rewrite.so")

    def ssl_module(self) -> Directive:
        """``LoadModule ssl_module``."""
        return _module("ssl_module", "mod_ssl.so")

    def socache_module(self) -> Directive:
        """``LoadModule socache_shmcb_module``, required by mod_ssl's session cache."""
        return _module("socache_shmcb_module", "mod_socache_shmcb.so")

    def include_vhosts(self) -> Directive:
        """Include every ``*.conf`` in the vhost directory."""
        return Directive.build("include.vhosts", f"IncludeOptional {self.vhosts_dir}/*.conf")

    def document_root(self) -> Directive:
        """Server-wide ``DocumentRoot`` pointing at the webroot."""
        return Directive.build(
            "document_root",
            f'DocumentRoot "{self.webroot}"',
            replaces=r"^DocumentRoot\s+",
        )

    def directory_index(self) -> Directive:
        """Serve ``index.php`` ahead of ``index.html``."""
        return Directive.build(
            "directory_index",
            "DirectoryIndex index.php index.html",
            replaces=r"^\s*DirectoryIndex\s+",
        )

    def php_handler(self) -> Directive:
        """Hand ``.php`` files to the PHP module."""
        return Directive.build("php.handler", "AddType application/x-httpd-php .php")

    def php_module(self, version: str) -> Directive:
        """``LoadModule php_module`` for *version*, inserted before the first LoadModule."""
        module = self.brew_prefix / "opt" / f"php@{version}" / "lib" / "httpd" / "modules" / "libphp.so"
        return Directive.build(
            "php.module",
            f"LoadModule php_module {module}",
            anchor=self.LOAD_MODULE_ANCHOR,
        )

    def webroot_block(self, lines: Sequence[str]) -> BlockDirective:
        """``<Directory "<webroot>">`` block with the given rendered *lines*."""
        return BlockDirective("directory.webroot", tuple(lines))

    def base(self) -> list[Directive]:
        """Directives applied by install before any site exists."""
        return [
            self.listen_http(),
            self.server_name(),
            self.rewrite_module(),
            self.directory_index(),
            self.document_root(),
        ]

    def https(self) -> list[Directive]:
        """Prerequisites for serving TLS virtual hosts."""
        return [
            self.listen_https(),
            self.ssl_module(),
            self.socache_module(),
            self.include_vhosts(),
        ]


def _module(name: str, filename: str) -> Directive:
    return Directive.build(name, f"LoadModule {name} lib/httpd/modules/{filename}")


PHP_INI_DEVELOPMENT = (
    ("display_errors", "On"),
    ("error_reporting", "E_ALL"),
    ("upload_max_filesize", "128M"),
    ("post_max_size", "128M"),
    ("max_execution_time", "300"),
    ("memory_limit", "256M"),
)


def php_ini_directives() -> list[Directive]:
    """Development-friendly php.ini settings."""
    return [
        Directive.build(
            f"php.ini.{key}",
            f"{key} = {value}",
            replaces=rf"^\s*{key}\s*=",
        )
        for key, value in PHP_INI_DEVELOPMENT
    ]


__all__ = [
    "BlockDirective",
    "ConfigDocument",
    "Directive",
    "DirectivePatcher",
    "HttpdDirectives",
    "LineMatch",
    "PatchOutcome",
    "php_ini_directives",
]
