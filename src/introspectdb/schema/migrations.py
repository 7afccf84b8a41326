"""File-based SQL migrations with a transactional ledger.

Migrations live in one directory as ``NNNN_<slug>.sql`` files. A file may
split forward and reverse SQL with ``-- migrate:up`` / ``-- migrate:down``
markers; without markers the whole file is forward SQL.

Each migration runs inside its own transaction together with its ledger
insert, so a failing migration leaves neither schema changes nor a ledger
row behind. ``apply()`` stops at the first failure.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import sqlite3
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import TYPE_CHECKING, Any

import sqlglot
from pydantic import ValidationError
from sqlalchemy import create_engine, delete, insert, select
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlglot import exp
from sqlglot.errors import ParseError

from introspectdb.core.types import (
    MigrationConfig,
    MigrationFile,
    MigrationRecord,
    MigrationResult,
    MigrationStatus,
)
from introspectdb.exceptions import ConfigurationError, MigrationError, MigrationTimeoutError
from introspectdb.schema.models import Base, MigrationLedger, utc_now

if TYPE_CHECKING:
    from sqlalchemy import Connection

    from introspectdb.core.connection import DatabaseConnection
    from introspectdb.query.executor import QueryExecutor

logger = logging.getLogger(__name__)

SchemaChangeListener = Callable[[list[str]], None]

_FILENAME = re.compile(r"^(\d+)_([A-Za-z0-9_\-]+)\.sql$")
_UP_MARKER = re.compile(r"^[ \t]*--[ \t]*migrate:up[ \t]*$", re.IGNORECASE | re.MULTILINE)
_DOWN_MARKER = re.compile(r"^[ \t]*--[ \t]*migrate:down[ \t]*$", re.IGNORECASE | re.MULTILINE)
_SLUG_INVALID = re.compile(r"[^a-z0-9]+")

# Statement classes accepted in migration files; resolved by name so that
# sqlglot releases that renamed a class (AlterTable -> Alter) both work.
_ALLOWED_STATEMENTS = tuple(
    cls
    for cls in (
        getattr(exp, name, None)
        for name in (
            "Create",
            "Drop",
            "Insert",
            "Update",
            "Delete",
            "Query",
            "Select",
            "Union",
            "Alter",
            "AlterTable",
            "Pragma",
            "Analyze",
            "Command",
        )
    )
    if isinstance(cls, type)
)
_TRANSACTION_STATEMENTS = tuple(
    cls
    for cls in (getattr(exp, name, None) for name in ("Transaction", "Commit", "Rollback"))
    if isinstance(cls, type)
)
_COMMAND_KEYWORDS = {"CREATE", "DROP", "ALTER", "PRAGMA", "ANALYZE", "REINDEX", "VACUUM"}
_SQLITE_SYNTAX_ERRORS = ("syntax error", "incomplete input", "unrecognized token")


# === SQL helpers ===


def checksum(content: str) -> str:
    """SHA-256 of the migration file content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def slugify(name: str) -> str:
    """``"Add users table"`` -> ``"add_users_table"``."""
    return _SLUG_INVALID.sub("_", name.lower()).strip("_")


def parse_sections(content: str) -> tuple[str, str | None]:
    """Split file content into forward and reverse SQL.

    Raises:
        MigrationError: If the markers are out of order
    """
    up = _UP_MARKER.search(content)
    down = _DOWN_MARKER.search(content)
    if up is None and down is None:
        return content.strip(), None
    if up is None or (down is not None and down.start() < up.start()):
        raise MigrationError("'-- migrate:down' must come after '-- migrate:up'")

    end = down.start() if down is not None else len(content)
    up_sql = content[up.end() : end].strip()
    down_sql = content[down.end() :].strip() if down is not None else None
    return up_sql, down_sql or None


def _is_comment_only(sql: str) -> bool:
    lines = (line.strip() for line in sql.splitlines())
    return all(not line or line.startswith("--") for line in lines)


def split_statements(sql: str) -> list[str]:
    """Split a script into complete statements.

    Uses SQLite's own tokenizer (``sqlite3.complete_statement``) so that
    semicolons inside literals and trigger bodies do not split a statement.
    """
    statements: list[str] = []
    buffer = ""
    for piece in re.split(r"(;)", sql):
        buffer += piece
        if piece == ";" and sqlite3.complete_statement(buffer):
            if not _is_comment_only(buffer.rstrip(";")):
                statements.append(buffer.strip())
            buffer = ""
    if not _is_comment_only(buffer):
        statements.append(buffer.strip())
    return statements


def validate_sql(sql: str, migration_name: str | None = None) -> None:
    """Check that ``sql`` parses as SQLite and contains only migration statements.

    Raises:
        MigrationError: If the SQL is empty, unparseable, or manages transactions
    """
    if _is_comment_only(sql):
        raise MigrationError("Migration SQL is empty", migration_name=migration_name)

    try:
        expressions = [e for e in sqlglot.parse(sql, read="sqlite") if e is not None]
    except ParseError as e:
        raise MigrationError(
            f"Migration SQL does not parse: {e}", migration_name=migration_name
        ) from e

    for expression in expressions:
        if isinstance(expression, _TRANSACTION_STATEMENTS):
            raise MigrationError(
                "Migrations run inside their own transaction; "
                "remove BEGIN/COMMIT/ROLLBACK statements",
                migration_name=migration_name,
            )
        if not isinstance(expression, _ALLOWED_STATEMENTS):
            raise MigrationError(
                f"Unsupported statement in migration: {type(expression).__name__}",
                migration_name=migration_name,
            )
        if isinstance(expression, exp.Command):
            keyword = str(expression.this).upper()
            if keyword not in _COMMAND_KEYWORDS:
                raise MigrationError(
                    f"Unsupported statement in migration: {keyword}",
                    migration_name=migration_name,
                )

    check_sqlite_syntax(sql, migration_name)


def check_sqlite_syntax(sql: str, migration_name: str | None = None) -> None:
    """Compile every statement with SQLite's own parser, without running it.

    Each statement is prepared as ``EXPLAIN <statement>`` on a throwaway
    in-memory database. Only parse errors are reported; "no such table"
    and similar errors depend on the target database and are ignored.

    Raises:
        MigrationError: If SQLite rejects a statement's syntax
    """
    scratch = create_engine("sqlite://")
    try:
        for statement in split_statements(sql):
            with scratch.connect() as conn:
                try:
                    conn.exec_driver_sql(f"EXPLAIN {statement}")
                except DBAPIError as e:
                    message = str(e.orig)
                    if any(marker in message for marker in _SQLITE_SYNTAX_ERRORS):
                        raise MigrationError(
                            f"Migration SQL does not parse: {message}",
                            migration_name=migration_name,
                        ) from e
                    logger.debug(f"Syntax check passed, ignoring '{message}'")
    finally:
        scratch.dispose()


def load_migration(path: Path) -> MigrationFile:
    """Read one migration file.

    Raises:
        MigrationError: If the file name or content is malformed
    """
    match = _FILENAME.match(path.name)
    if match is None:
        raise MigrationError(
            f"Migration file name must look like 0001_name.sql, got '{path.name}'",
            migration_name=path.stem,
        )
    content = path.read_text(encoding="utf-8")
    try:
        up_sql, down_sql = parse_sections(content)
    except MigrationError as e:
        raise MigrationError(f"{path.name}: {e.message}", migration_name=path.stem) from e
    if _is_comment_only(up_sql):
        raise MigrationError(f"{path.name}: no forward SQL", migration_name=path.stem)

    return MigrationFile(
        name=path.stem,
        path=str(path),
        sequence=int(match.group(1)),
        up_sql=up_sql,
        down_sql=down_sql,
        checksum=checksum(content),
    )


# === Manager ===


class MigrationManager:
    """Applies migration files and keeps the ledger.

    Example:
        manager = MigrationManager(connection)
        manager.initialize("./migrations")
        manager.create_migration("add users", "CREATE TABLE users (id INTEGER PRIMARY KEY);")
        manager.apply()
    """

    def __init__(
        self,
        connection: DatabaseConnection,
        config: MigrationConfig | None = None,
        *,
        executor: QueryExecutor | None = None,
        **overrides: Any,
    ) -> None:
        """Initialize the manager. Nothing touches disk or database until ``initialize()``.

        Args:
            connection: Database connection
            config: Migration settings
            executor: Executor whose open transaction, if any, blocks migrations
            **overrides: Individual config fields, e.g. ``migration_timeout=5``

        Raises:
            ConfigurationError: If a setting is invalid
        """
        self._connection = connection
        self._executor = executor
        self._config = self._build_config(config or MigrationConfig(), overrides)
        self._directory: Path | None = None
        self._listeners: list[SchemaChangeListener] = []
        self._worker: ThreadPoolExecutor | None = None
        self._inflight: Future[None] | None = None
        self._active_dbapi: Any = None
        self._active_lock = threading.Lock()

    @staticmethod
    def _build_config(base: MigrationConfig, changes: dict[str, Any]) -> MigrationConfig:
        if not changes:
            return base
        try:
            return MigrationConfig(**{**base.model_dump(), **changes})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid migration configuration: {e}", changes) from e

    @property
    def config(self) -> MigrationConfig:
        return self._config

    @property
    def directory(self) -> Path | None:
        return self._directory

    @property
    def is_initialized(self) -> bool:
        return self._directory is not None

    def update_config(self, **changes: Any) -> MigrationConfig:
        """Validate and apply new settings.

        Raises:
            ConfigurationError: If a value is invalid; the old config stays in effect
        """
        new_config = self._build_config(self._config, changes)
        if self.is_initialized and "migrations_directory" in changes:
            self._directory = self._validate_directory(new_config.migrations_directory)
        self._config = new_config
        return self._config

    def add_listener(self, listener: SchemaChangeListener) -> None:
        """Register a callback invoked with the names of migrations just applied."""
        self._listeners.append(listener)

    # === Setup ===

    def initialize(self, directory: str | os.PathLike[str] | None = None) -> None:
        """Validate the migrations directory and create the ledger if needed.

        Raises:
            ConfigurationError: If the directory is missing or unreadable
        """
        target = str(directory) if directory is not None else self._config.migrations_directory
        path = self._validate_directory(target)
        self._config = self._config.model_copy(update={"migrations_directory": str(path)})
        self._ensure_ledger()
        self._directory = path
        logger.info(f"Migrations initialized from {path}")

    @staticmethod
    def _validate_directory(directory: str) -> Path:
        path = Path(directory)
        if not path.exists():
            raise ConfigurationError(
                f"Migrations directory does not exist: {path}. Create it first.",
                {"directory": str(path)},
            )
        if not path.is_dir():
            raise ConfigurationError(
                f"Migrations path is not a directory: {path}", {"directory": str(path)}
            )
        if not os.access(path, os.R_OK | os.X_OK):
            raise ConfigurationError(
                f"Migrations directory is not readable: {path}", {"directory": str(path)}
            )
        return path.resolve()

    def _ensure_ledger(self) -> None:
        with self._connection.lock, self._connection.engine.begin() as conn:
            Base.metadata.create_all(conn, tables=[MigrationLedger.__table__])

    def _require_initialized(self) -> Path:
        if self._directory is None:
            raise ConfigurationError(
                "Migration manager is not initialized. Call initialize(directory) first."
            )
        return self._directory

    # === Files and ledger ===

    def migration_files(self) -> list[MigrationFile]:
        """All migration files, ordered by sequence then name."""
        directory = self._require_initialized()
        files = []
        for path in sorted(directory.glob("*.sql")):
            if not _FILENAME.match(path.name):
                logger.debug(f"Ignoring non-migration file {path.name}")
                continue
            files.append(load_migration(path))
        return sorted(files, key=lambda f: (f.sequence, f.name))

    def applied(self) -> list[MigrationRecord]:
        """Ledger rows in application order."""
        self._require_initialized()
        with self._connection.lock, Session(self._connection.engine) as session:
            rows = session.scalars(select(MigrationLedger).order_by(MigrationLedger.id)).all()
            return [
                MigrationRecord(
                    id=row.id, name=row.name, applied_at=row.applied_at, checksum=row.checksum
                )
                for row in rows
            ]

    def pending(self) -> list[MigrationFile]:
        """Files not yet in the ledger, in application order."""
        done = {record.name for record in self.applied()}
        return [f for f in self.migration_files() if f.name not in done]

    def verify_checksums(self) -> list[str]:
        """Names of applied migrations whose file changed since it was applied."""
        files = {f.name: f for f in self.migration_files()}
        modified = []
        for record in self.applied():
            current = files.get(record.name)
            if current is None:
                logger.warning(f"Applied migration '{record.name}' has no file on disk")
            elif current.checksum != record.checksum:
                logger.warning(f"Applied migration '{record.name}' was modified after applying")
                modified.append(record.name)
        return modified

    def status(self) -> MigrationStatus:
        """Compare the ledger with the files on disk."""
        records = self.applied()
        last = records[-1] if records else None
        return MigrationStatus(
            applied=[r.name for r in records],
            pending=[f.name for f in self.pending()],
            modified=self.verify_checksums(),
            last_applied=last.name if last else None,
            last_applied_at=last.applied_at if last else None,
        )

    def create_migration(self, name: str, content: str) -> MigrationFile:
        """Validate SQL and write it as the next migration file.

        Args:
            name: Human-readable name, slugified into the file name
            content: SQL, optionally with ``-- migrate:up``/``-- migrate:down`` sections

        Returns:
            The written migration

        Raises:
            MigrationError: If the name is empty or the SQL is invalid; nothing is written
        """
        directory = self._require_initialized()
        slug = slugify(name)
        if not slug:
            raise MigrationError(f"Invalid migration name: '{name}'")

        up_sql, down_sql = parse_sections(content)
        validate_sql(up_sql, slug)
        if down_sql is not None:
            validate_sql(down_sql, slug)

        existing = self.migration_files()
        sequence = max((f.sequence for f in existing), default=0) + 1
        path = directory / f"{sequence:04d}_{slug}.sql"
        body = content if content.endswith("\n") else content + "\n"
        try:
            with open(path, "x", encoding="utf-8") as fh:
                fh.write(body)
        except OSError as e:
            raise MigrationError(f"Could not write {path.name}: {e}", migration_name=slug) from e

        logger.info(f"Created migration {path.name}")
        return load_migration(path)

    # === Apply / rollback ===

    def apply(self) -> MigrationResult:
        """Apply all pending migrations in order, stopping at the first failure.

        Returns:
            Names applied by this call and the elapsed time

        Raises:
            MigrationError: If a migration fails; ``applied`` lists what succeeded before it.
                Also raised when called inside a transaction on this thread.
            MigrationTimeoutError: If a migration exceeds ``migration_timeout``
        """
        self._require_initialized()
        self._refuse_inside_transaction()
        self._wait_for_inflight()

        started = time.perf_counter()
        applied: list[str] = []
        try:
            for migration in self.pending():
                self._apply_one(migration, applied)
                applied.append(migration.name)
                logger.info(f"Applied migration {migration.name}")
        finally:
            if applied:
                self._notify(applied)

        return MigrationResult(applied=applied, duration_seconds=time.perf_counter() - started)

    def _apply_one(self, migration: MigrationFile, applied: list[str]) -> None:
        timeout = self._config.migration_timeout
        future = self._pool().submit(self._execute_migration, migration)
        try:
            future.result(timeout=timeout)
        except FutureTimeoutError:
            self._inflight = future
            self._interrupt()
            logger.warning(f"Migration {migration.name} exceeded {timeout}s; interrupt requested")
            raise MigrationTimeoutError(migration.name, timeout, applied) from None
        except SQLAlchemyError as e:
            orig = getattr(e, "orig", None) or e
            logger.error(f"Migration {migration.name} failed and was rolled back: {orig}")
            raise MigrationError(
                f"Migration '{migration.name}' failed and was rolled back: {orig}",
                migration_name=migration.name,
                applied=applied,
            ) from e

    def _execute_migration(self, migration: MigrationFile) -> None:
        with self._connection.lock, self._connection.engine.connect() as conn:
            with self._active_lock:
                self._active_dbapi = conn.connection.dbapi_connection
            try:
                with conn.begin():
                    self._run_script(conn, migration.up_sql)
                    conn.execute(
                        insert(MigrationLedger).values(
                            name=migration.name,
                            checksum=migration.checksum,
                            applied_at=utc_now(),
                        )
                    )
            finally:
                with self._active_lock:
                    self._active_dbapi = None

    @staticmethod
    def _run_script(conn: Connection, sql: str) -> None:
        for statement in split_statements(sql):
            conn.exec_driver_sql(statement)

    def rollback_last(self) -> str | None:
        """Run the reverse SQL of the last applied migration and remove its ledger row.

        Returns:
            Name of the rolled back migration, or None if nothing was applied

        Raises:
            MigrationError: If the migration has no reverse SQL or the reverse SQL fails
        """
        self._require_initialized()
        self._refuse_inside_transaction()
        self._wait_for_inflight()
        records = self.applied()
        if not records:
            return None
        last = records[-1]

        files = {f.name: f for f in self.migration_files()}
        migration = files.get(last.name)
        if migration is None:
            raise MigrationError(
                f"Cannot roll back '{last.name}': its file is missing", migration_name=last.name
            )
        if not migration.down_sql:
            raise MigrationError(
                f"Cannot roll back '{last.name}': it has no '-- migrate:down' section",
                migration_name=last.name,
            )

        try:
            with self._connection.lock, self._connection.engine.connect() as conn:
                with conn.begin():
                    self._run_script(conn, migration.down_sql)
                    conn.execute(delete(MigrationLedger).where(MigrationLedger.id == last.id))
        except SQLAlchemyError as e:
            orig = getattr(e, "orig", None) or e
            logger.error(f"Rollback of {last.name} failed: {orig}")
            raise MigrationError(
                f"Rollback of '{last.name}' failed: {orig}", migration_name=last.name
            ) from e

        logger.info(f"Rolled back migration {last.name}")
        self._notify([last.name])
        return last.name

    # === Worker ===

    def _pool(self) -> ThreadPoolExecutor:
        if self._worker is None:
            self._worker = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="introspectdb-migration"
            )
        return self._worker

    def _interrupt(self) -> None:
        with self._active_lock:
            dbapi = self._active_dbapi
        if dbapi is not None:
            dbapi.interrupt()

    def _refuse_inside_transaction(self) -> None:
        # The caller's transaction holds the write lock the migration needs.
        if self._executor is not None and self._executor.in_transaction():
            raise MigrationError(
                "Migrations run in their own transaction and cannot be applied or "
                "rolled back inside db.transaction()"
            )

    def _wait_for_inflight(self) -> None:
        future = self._inflight
        if future is None:
            return
        try:
            future.result(timeout=self._config.migration_timeout)
        except FutureTimeoutError:
            raise MigrationError(
                "A previously timed out migration is still running; try again later"
            ) from None
        except SQLAlchemyError as e:
            orig = getattr(e, "orig", None) or e
            logger.info(f"Previously timed out migration ended without applying: {orig}")
        self._inflight = None

    def _notify(self, names: list[str]) -> None:
        for listener in self._listeners:
            listener(names)

    def close(self) -> None:
        """Wait for any running migration and stop the worker thread."""
        if self._worker is not None:
            self._worker.shutdown(wait=True)
            self._worker = None
        self._inflight = None
