"""Database connection management for IntrospectDB."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.pool import StaticPool

from introspectdb.exceptions import ConnectionError

if TYPE_CHECKING:
    from sqlalchemy.engine.url import URL


def normalize_sqlite_url(url: str) -> str:
    """Normalize a SQLite URL or a bare file path.

    Supports:
    - sqlite:///path/to/db.sqlite
    - sqlite:///:memory:
    - path/to/db.sqlite (converted to sqlite:///path/to/db.sqlite)
    - :memory:

    Args:
        url: Database URL or path

    Returns:
        Normalized URL

    Raises:
        ConnectionError: If the URL names another database engine
    """
    if url == ":memory:":
        return "sqlite:///:memory:"
    if "://" not in url:
        return f"sqlite:///{url}"
    if not url.startswith("sqlite"):
        dialect = url.split("://", 1)[0]
        raise ConnectionError(
            f"Unsupported database dialect: {dialect}. Only SQLite URLs are supported.",
            {"dialect": dialect},
        )
    return url


def _is_memory_url(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


class DatabaseConnection:
    """Manages the SQLAlchemy engine for one SQLite database.

    The pysqlite driver is switched to manual transaction control so that
    DDL participates in transactions (migrations roll back as a unit), and
    foreign key enforcement is enabled on every pooled connection.
    In-memory databases share a single connection across threads.
    """

    def __init__(self, url: str | URL, echo: bool = False) -> None:
        """Initialize database connection.

        Args:
            url: SQLite URL ("sqlite:///app.db", "sqlite:///:memory:") or file path
            echo: Whether to echo SQL statements (for debugging)

        Raises:
            ConnectionError: If the URL is not a SQLite URL
        """
        self._url = normalize_sqlite_url(str(url))
        self._echo = echo
        self._engine: Engine | None = None
        self._is_memory = _is_memory_url(self._url)
        # Serializes writes; in-memory databases serialize every statement
        # because all threads share one DBAPI connection.
        self.lock = threading.RLock()

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_memory(self) -> bool:
        return self._is_memory

    @property
    def identity(self) -> str:
        """Identity of this connection, used to namespace cache keys."""
        return f"{self._url}#{id(self):x}" if self._is_memory else self._url

    @property
    def engine(self) -> Engine:
        """Get or create the SQLAlchemy engine."""
        if self._engine is None:
            try:
                kwargs: dict[str, Any] = {
                    "echo": self._echo,
                    "connect_args": {"check_same_thread": False},
                }
                if self._is_memory:
                    kwargs["poolclass"] = StaticPool

                engine = create_engine(self._url, **kwargs)
                self._install_sqlite_hooks(engine)

                if engine.dialect.name != "sqlite":
                    raise ConnectionError(
                        f"Unsupported database dialect: {engine.dialect.name}. "
                        "Only SQLite is supported."
                    )
                self._engine = engine
            except Exception as e:
                if isinstance(e, ConnectionError):
                    raise
                raise ConnectionError(f"Failed to create database engine: {e}") from e
        return self._engine

    @staticmethod
    def _install_sqlite_hooks(engine: Engine) -> None:
        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
            # Disable pysqlite's implicit BEGIN so BEGIN is emitted below,
            # before any DDL as well as DML.
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys = ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _on_begin(conn: Any) -> None:
            conn.exec_driver_sql("BEGIN")

    def test_connection(self) -> bool:
        """Open the database and run a trivial statement.

        Returns:
            True if connection is successful

        Raises:
            ConnectionError: If the database cannot be opened
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
                # Forces SQLite to actually read the file header.
                conn.execute(text("PRAGMA schema_version"))
            return True
        except ConnectionError:
            raise
        except Exception as e:
            orig = getattr(e, "orig", None) or e
            raise ConnectionError(
                f"Database connection test failed: {orig}", {"url": self._url}
            ) from e

    def schema_version(self) -> int:
        """Return SQLite's schema cookie, bumped on every schema change."""
        with self.engine.connect() as conn:
            return int(conn.execute(text("PRAGMA schema_version")).scalar() or 0)

    def close(self) -> None:
        """Close the database connection and dispose of the engine."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def __enter__(self) -> DatabaseConnection:
        """Context manager entry."""
        self.test_connection()
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        """Context manager exit."""
        self.close()
