"""MySQL client adapter built on the ``mysql`` and ``mysqldump`` binaries."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from ..errors import MutationFailure, PreconditionError
from .process import CommandResult, CommandRunner

SYSTEM_DATABASES = frozenset({"information_schema", "performance_schema", "mysql", "sys"})
DUMP_OPTIONS = (
    "--single-transaction",
    "--routines",
    "--triggers",
    "--default-character-set=utf8mb4",
)


class MySQLError(MutationFailure):
    """Raised when a mysql or mysqldump invocation fails."""


@dataclass(slots=True)
class DatabaseInfo:
    """Size and table count for one user database."""

    name: str
    size_mb: float
    tables: int

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "size_mb": self.size_mb, "tables": self.tables}


@dataclass(slots=True)
class MySQLClient:
    """Run SQL through the mysql CLI, authenticating via the credentials file."""

    runner: CommandRunner = field(default_factory=CommandRunner)
    mysql_bin: str = "mysql"
    mysqldump_bin: str = "mysqldump"
    credentials_file: Path | None = None
    user: str = "root"
    host: str = "localhost"
    port: int = 3306

    def execute(self, sql: str, *, database: str | None = None) -> list[list[str]]:
        """Execute *sql* and return the result rows (tab separated columns)."""
        args = [*self._auth_args(self.mysql_bin), "--batch", "--skip-column-names", "-e", sql]
        if database:
            args.append(database)
        result = self._check(self.runner.run(args))
        return [line.split("\t") for line in result.stdout.splitlines() if line.strip()]

    def ping(self) -> bool:
        """Return True when the server accepts a trivial query."""
        try:
            self.execute("SELECT 1;")
        except (MySQLError, PreconditionError):
            return False
        return True

    def version(self) -> str | None:
        """Return the server version string, or None when unreachable."""
        try:
            rows = self.execute("SELECT VERSION();")
        except (MySQLError, PreconditionError):
            return None
        return rows[0][0] if rows and rows[0] else None

    def list_user_databases(self) -> list[str]:
        """Return databases excluding the MySQL system schemas."""
        rows = self.execute("SHOW DATABASES;")
        return [row[0] for row in rows if row and row[0] not in SYSTEM_DATABASES]

    def database_exists(self, name: str) -> bool:
        """Return True when *name* is a known database."""
        return name in {row[0] for row in self.execute("SHOW DATABASES;") if row}

    def database_info(self, name: str) -> DatabaseInfo:
        """Return size (MB) and table count for *name*."""
        rows = self.execute(
            "SELECT ROUND(IFNULL(SUM(data_length + index_length), 0) / 1024 / 1024, 2), "
            f"COUNT(*) FROM information_schema.tables WHERE table_schema='{name}';"
        )
        size_mb, tables = 0.0, 0
        if rows and len(rows[0]) >= 2:
            try:
                size_mb = float(rows[0][0])
                tables = int(rows[0][1])
            except ValueError:
                pass
        return DatabaseInfo(name=name, size_mb=size_mb, tables=tables)

    def create_database(self, name: str) -> None:
        """Create *name* with the utf8mb4 character set."""
        self.execute(
            f"CREATE DATABASE `{name}` CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci;"
        )

    def drop_database(self, name: str) -> None:
        """Drop *name*."""
        self.execute(f"DROP DATABASE `{name}`;")

    def set_password(self, password: str) -> None:
        """Set the password of the configured account (caching_sha2_password)."""
        escaped = password.replace("\\", "\\\\").replace("'", "\\'")
        self.execute(
            f"ALTER USER '{self.user}'@'{self.host}' "
            f"IDENTIFIED WITH caching_sha2_password BY '{escaped}';"
        )

    def dump(self, database: str) -> bytes:
        """Return a ``mysqldump`` of *database* as raw bytes."""
        args = [*self._auth_args(self.mysqldump_bin), *DUMP_OPTIONS, database]
        result = self._check(self.runner.run(args, binary=True))
        return result.raw_stdout

    def restore(self, database: str, payload: bytes) -> None:
        """Feed *payload* (SQL, any encoding) into *database*."""
        args = [*self._auth_args(self.mysql_bin), database]
        self._check(self.runner.run(args, input=payload, binary=True))

    # ------------------------------------------------------------------
    def _auth_args(self, binary: str) -> list[str]:
        if self.credentials_file is not None and self.credentials_file.exists():
            return [binary, f"--defaults-extra-file={self.credentials_file}"]
        return [binary, "-u", self.user, "-h", self.host, "-P", str(self.port)]

    def _check(self, result: CommandResult) -> CommandResult:
        if result.missing:
            raise PreconditionError(
                f"{result.args[0]} not found.",
                remediation="Install MySQL with: bampctl install",
            )
        if not result.ok:
            raise MySQLError(result.describe())
        return result


__all__ = ["DatabaseInfo", "MySQLClient", "MySQLError", "SYSTEM_DATABASES"]
