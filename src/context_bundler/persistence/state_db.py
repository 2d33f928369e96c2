"""
context-bundler — state database

File: src/context_bundler/persistence/state_db.py
Last updated: 2026-02-12

Purpose
- SQLite schema management, checksummed migrations, and connection lifecycle.

Functional requirements
- Migrations apply idempotently and refuse to run against edited history.
- Bundles, receipts, requirements documents and continuity checks are
  append-only at the schema level (UPDATE/DELETE abort).
- Version allocation runs inside ``BEGIN IMMEDIATE`` so ``max + 1`` is atomic.

Non-functional requirements
- Short-lived connections; bounded busy retry with exponential backoff.
"""

from __future__ import annotations

import itertools
import json
import sqlite3
import time
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Final

from context_bundler.constants import STATE_DB_SCHEMA_VERSION
from context_bundler.domain.models import ContinuityVerdict, ValidationStatus
from context_bundler.utils.canonical import sha256_text

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25


def _sql_enum(values: Iterable[str]) -> str:
    return ", ".join(f"'{value}'" for value in sorted(values))


def _append_only(table: str) -> tuple[str, str]:
    return (
        f"""
        CREATE TRIGGER IF NOT EXISTS {table}_no_update
        BEFORE UPDATE ON {table}
        BEGIN
            SELECT RAISE(ABORT, '{table} is append-only');
        END
        """,
        f"""
        CREATE TRIGGER IF NOT EXISTS {table}_no_delete
        BEFORE DELETE ON {table}
        BEGIN
            SELECT RAISE(ABORT, '{table} is append-only');
        END
        """,
    )


_VALIDATION_STATUS_VALUES: Final[str] = _sql_enum(item.value for item in ValidationStatus)
_VERDICT_VALUES: Final[str] = _sql_enum(item.value for item in ContinuityVerdict)

_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    _SCHEMA_VERSIONS_TABLE_SQL,
    """
    CREATE TABLE IF NOT EXISTS requirements_documents (
        red_id TEXT PRIMARY KEY,
        repo_full_name TEXT NOT NULL,
        work_item_id TEXT NOT NULL,
        version INTEGER NOT NULL CHECK (version >= 1),
        content_checksum TEXT NOT NULL CHECK (length(content_checksum) = 64),
        created_at TEXT NOT NULL,
        red_json TEXT NOT NULL,
        UNIQUE (repo_full_name, work_item_id, version)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS requirements_validations (
        validation_seq INTEGER PRIMARY KEY AUTOINCREMENT,
        red_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ({_VALIDATION_STATUS_VALUES})),
        validated_at TEXT NOT NULL,
        failures_json TEXT NOT NULL,
        FOREIGN KEY(red_id) REFERENCES requirements_documents(red_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_requirements_documents_lookup
    ON requirements_documents(repo_full_name, work_item_id, version DESC)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_requirements_validations_red
    ON requirements_validations(red_id, validation_seq DESC)
    """,
    *_append_only("requirements_documents"),
    *_append_only("requirements_validations"),
    """
    CREATE TABLE IF NOT EXISTS integration_manifests (
        manifest_id TEXT PRIMARY KEY,
        repo_full_name TEXT NOT NULL,
        schema_version TEXT NOT NULL,
        version INTEGER NOT NULL CHECK (version >= 1),
        content_checksum TEXT NOT NULL CHECK (length(content_checksum) = 64),
        created_at TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        UNIQUE (repo_full_name, schema_version, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS artifacts (
        artifact_id TEXT PRIMARY KEY,
        work_item_id TEXT NOT NULL,
        title TEXT NOT NULL,
        agent_type TEXT NOT NULL,
        created_at TEXT,
        body TEXT NOT NULL,
        distilled_json TEXT,
        distilled_at TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_artifacts_work_item_created
    ON artifacts(work_item_id, created_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS instructions (
        repo_full_name TEXT NOT NULL,
        filename TEXT NOT NULL,
        topic_id TEXT NOT NULL,
        title TEXT NOT NULL,
        content_md TEXT NOT NULL,
        agent_types_json TEXT NOT NULL,
        always_apply INTEGER NOT NULL CHECK (always_apply IN (0, 1)),
        updated_at TEXT NOT NULL,
        PRIMARY KEY (repo_full_name, filename)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_runs (
        run_id TEXT PRIMARY KEY,
        work_item_id TEXT NOT NULL,
        agent_type TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_agent_runs_work_item
    ON agent_runs(work_item_id, agent_type, created_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS artifact_pins (
        pin_id TEXT PRIMARY KEY,
        work_item_id TEXT NOT NULL,
        artifact_id TEXT NOT NULL,
        role_key TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (work_item_id, artifact_id, role_key)
    )
    """,
)

_MIGRATION_0002_STATEMENTS: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS context_bundles (
        bundle_id TEXT PRIMARY KEY,
        repo_full_name TEXT NOT NULL,
        work_item_id TEXT NOT NULL,
        role TEXT NOT NULL,
        version INTEGER NOT NULL CHECK (version >= 1),
        content_checksum TEXT NOT NULL CHECK (length(content_checksum) = 64),
        bundle_checksum TEXT NOT NULL CHECK (length(bundle_checksum) = 64),
        created_at TEXT NOT NULL,
        bundle_json TEXT NOT NULL,
        UNIQUE (repo_full_name, work_item_id, role, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS bundle_receipts (
        receipt_id TEXT PRIMARY KEY,
        bundle_id TEXT NOT NULL UNIQUE,
        created_at TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        FOREIGN KEY(bundle_id) REFERENCES context_bundles(bundle_id)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS continuity_checks (
        check_id TEXT PRIMARY KEY,
        bundle_id TEXT,
        verdict TEXT NOT NULL CHECK (verdict IN ({_VERDICT_VALUES})),
        failure_reason TEXT,
        run_at TEXT NOT NULL,
        payload_json TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_context_bundles_triple
    ON context_bundles(repo_full_name, work_item_id, role, version DESC)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_continuity_checks_run_at
    ON continuity_checks(run_at DESC)
    """,
    *_append_only("context_bundles"),
    *_append_only("bundle_receipts"),
    *_append_only("continuity_checks"),
)



@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]

    @property
    def checksum(self) -> str:
        # Whitespace at line ends does not change the checksum.
        normalized = "\n--\n".join(
            "\n".join(line.rstrip() for line in statement.strip().splitlines())
            for statement in self.statements
        )
        return sha256_text(f"{self.version}:{self.name}\n{normalized}")


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(1, "source_records", _MIGRATION_0001_STATEMENTS),
    _Migration(2, "bundles_receipts_checks", _MIGRATION_0002_STATEMENTS),
)

_BUSY_MARKERS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)
_CORRUPTION_MARKERS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "file is not a database",
)


class StateDBError(RuntimeError):
    """Base class for persistence DB errors."""


class StateDBBusyError(StateDBError):
    """Raised when bounded busy retries are exhausted."""


class StateDBMigrationError(StateDBError):
    """Raised when migrations cannot be applied safely."""


class StateDBCorruptionError(StateDBError):
    """Raised when SQLite reports a damaged database file."""


class StateDB:
    """
    Handle on one SQLite state file.

    Every call opens a short-lived connection unless ``conn=`` is given, so an
    instance can be shared freely. Integrity errors (UNIQUE, CHECK, append-only
    triggers) propagate as ``sqlite3.IntegrityError`` because repositories turn
    them into domain errors; every other SQLite failure becomes a
    ``StateDBError`` naming the operation that failed.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        for name, value in (
            ("busy_timeout_ms", busy_timeout_ms),
            ("busy_retry_limit", busy_retry_limit),
            ("busy_retry_backoff_ms", busy_retry_backoff_ms),
        ):
            if value < 0:
                raise ValueError(f"{name} must be >= 0")
        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms
        self._savepoints = itertools.count(1)
        self._migrated = False

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> sqlite3.Connection:
        """Open a WAL-mode connection in autocommit mode; transactions are explicit."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        mode = conn.execute("PRAGMA journal_mode=WAL").fetchone()
        if mode is None or str(mode[0]).lower() != "wal":
            conn.close()
            raise StateDBError(f"could not enable WAL journal mode for {self._path}")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self,
        *,
        conn: sqlite3.Connection | None = None,
        immediate: bool = True,
    ) -> Iterator[sqlite3.Connection]:
        """
        Run the block atomically.

        ``BEGIN IMMEDIATE`` takes the write lock up front, which is what makes
        ``max(version) + 1`` allocation safe. Inside an open transaction the
        block becomes a savepoint, so a nested failure only undoes its own work.
        """

        if conn is None:
            with self.connection() as owned, self.transaction(conn=owned, immediate=immediate):
                yield owned
            return

        if conn.in_transaction:
            name = f"sp_{next(self._savepoints)}"
            begin, commit = f"SAVEPOINT {name}", f"RELEASE SAVEPOINT {name}"
            rollback: tuple[str, ...] = (f"ROLLBACK TO SAVEPOINT {name}", commit)
        else:
            begin, commit = ("BEGIN IMMEDIATE" if immediate else "BEGIN"), "COMMIT"
            rollback = ("ROLLBACK",)

        self._run(conn, begin, (), operation="begin")
        try:
            yield conn
        except Exception:
            for statement in rollback:
                self._run(conn, statement, (), operation="rollback")
            raise
        self._run(conn, commit, (), operation="commit")

    def migrate(self) -> int:
        """Apply pending migrations and return the resulting schema version."""

        with self.connection() as conn:
            self._run(conn, _SCHEMA_VERSIONS_TABLE_SQL, (), operation="create schema_versions")
            applied = self._applied(conn)
            newest = max(applied, default=0)
            if newest > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    f"database schema {newest} is newer than this build supports "
                    f"({STATE_DB_SCHEMA_VERSION}); upgrade context-bundler"
                )

            for migration in _MIGRATIONS[:STATE_DB_SCHEMA_VERSION]:
                record = applied.get(migration.version)
                if record is not None:
                    if record.checksum != migration.checksum:
                        raise StateDBMigrationError(
                            f"migration {migration.version} ({migration.name}) was edited "
                            f"after it was applied: db={record.checksum} "
                            f"code={migration.checksum}"
                        )
                    continue
                with self.transaction(conn=conn) as tx:
                    operation = f"apply migration {migration.version}"
                    for statement in migration.statements:
                        self._run(tx, statement, (), operation=operation)
                    self._run(
                        tx,
                        "INSERT INTO schema_versions (version, name, checksum, applied_at)"
                        " VALUES (?, ?, ?, ?)",
                        (migration.version, migration.name, migration.checksum, _utc_now_iso()),
                        operation=operation,
                    )

            self._migrated = True
            return self.schema_version(conn=conn)

    def ensure_migrated(self) -> None:
        if not self._migrated:
            self.migrate()

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one(
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions", conn=conn
        )
        return 0 if row is None else int(row["version"] or 0)

    def applied_migrations(self) -> list[MigrationRecord]:
        with self.connection() as conn:
            return [record for _, record in sorted(self._applied(conn).items())]

    def execute(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Execute one statement and return the affected row count."""

        if conn is not None:
            return self._run(conn, sql, params, operation="execute").rowcount
        with self.transaction() as tx:
            return self._run(tx, sql, params, operation="execute").rowcount

    def query_all(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[dict[str, RowValue]]:
        with self._reader(conn) as reader:
            rows = self._run(reader, sql, params, operation="query all").fetchall()
        return [dict(row) for row in rows]

    def query_one(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, RowValue] | None:
        with self._reader(conn) as reader:
            row = self._run(reader, sql, params, operation="query one").fetchone()
        return None if row is None else dict(row)

    @contextmanager
    def _reader(self, conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with self.connection() as owned:
            yield owned

    def _applied(self, conn: sqlite3.Connection) -> dict[int, MigrationRecord]:
        rows = self._run(
            conn,
            "SELECT version, name, checksum, applied_at FROM schema_versions",
            (),
            operation="load schema_versions",
        ).fetchall()
        try:
            return {
                int(row["version"]): MigrationRecord(
                    version=int(row["version"]),
                    name=str(row["name"]),
                    checksum=str(row["checksum"]),
                    applied_at=str(row["applied_at"]),
                )
                for row in rows
            }
        except (TypeError, ValueError) as exc:
            raise StateDBMigrationError(f"schema_versions is malformed: {exc}") from exc

    def _run(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams,
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        """Execute with bounded exponential backoff while SQLite reports busy."""

        attempt = 0
        while True:
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                message = str(exc).lower()
                busy = any(marker in message for marker in _BUSY_MARKERS)
                if busy and attempt < self._busy_retry_limit:
                    time.sleep(self._busy_retry_backoff_ms / 1000.0 * 2**attempt)
                    attempt += 1
                    continue
                if busy:
                    raise StateDBBusyError(
                        f"{operation} failed for {self._path}: still busy after "
                        f"{attempt + 1} attempt(s): {exc}"
                    ) from exc
                if any(marker in message for marker in _CORRUPTION_MARKERS):
                    raise StateDBCorruptionError(
                        f"{operation} failed for {self._path}: {exc}; restore the state DB "
                        "from a copy or delete it to start over"
                    ) from exc
                raise StateDBError(f"{operation} failed for {self._path}: {exc}") from exc


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def canonical_json(value: object) -> str:
    """Sorted, compact JSON for payload columns."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "MigrationRecord",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "canonical_json",
]
