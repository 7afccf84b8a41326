"""CLI context management for database connections and shared state."""

import os
from dataclasses import dataclass, field

from introspectdb import IntrospectDB

DEFAULT_DATABASE_URL = "sqlite:///./introspectdb.db"


def get_database_url(url: str | None) -> str:
    """Resolve database URL from CLI arg, environment variable, or default.

    Priority:
    1. Explicit URL argument
    2. INTROSPECTDB_URL environment variable
    3. Default: sqlite:///./introspectdb.db
    """
    if url:
        return url
    if env_url := os.getenv("INTROSPECTDB_URL"):
        return env_url
    return DEFAULT_DATABASE_URL


@dataclass
class CLIContext:
    """Shared context for CLI commands.

    Manages the engine lifecycle and output preferences.
    """

    database_url: str
    echo: bool
    json_output: bool
    _db: IntrospectDB | None = field(default=None, init=False, repr=False)

    def get_db(self, discover: bool = True) -> IntrospectDB:
        """Get or create the engine (lazy initialization).

        Args:
            discover: Run schema discovery before returning. Migration
                commands skip it so they work on databases whose tables
                do not exist yet.

        Returns:
            IntrospectDB instance
        """
        if self._db is None:
            self._db = IntrospectDB(self.database_url, echo=self.echo)
            if discover:
                self._db.initialize()
            else:
                self._db.connection.test_connection()
        return self._db

    def close(self) -> None:
        """Close database connection if open."""
        if self._db is not None:
            self._db.close()
            self._db = None
