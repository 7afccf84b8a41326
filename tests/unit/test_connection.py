"""Tests for database connection handling and engine configuration."""

from pathlib import Path

import pytest

from introspectdb import IntrospectDB
from introspectdb.core.connection import DatabaseConnection, normalize_sqlite_url
from introspectdb.exceptions import ConfigurationError, ConnectionError


class TestUrlNormalization:
    """SQLite URL handling."""

    def test_memory_shorthand(self):
        assert normalize_sqlite_url(":memory:") == "sqlite:///:memory:"

    def test_plain_path(self):
        assert normalize_sqlite_url("data/app.db") == "sqlite:///data/app.db"

    def test_sqlite_url_unchanged(self):
        assert normalize_sqlite_url("sqlite:///app.db") == "sqlite:///app.db"

    @pytest.mark.parametrize(
        "url", ["postgresql://localhost/app", "mysql://root@localhost/app"]
    )
    def test_other_dialects_rejected(self, url):
        with pytest.raises(ConnectionError) as exc_info:
            DatabaseConnection(url)
        assert "Only SQLite" in str(exc_info.value)


class TestDatabaseConnection:
    """Engine lifecycle."""

    def test_memory_connection(self):
        conn = DatabaseConnection("sqlite:///:memory:")
        assert conn.is_memory
        assert conn.test_connection() is True
        conn.close()

    def test_foreign_keys_enabled(self, tmp_path: Path):
        conn = DatabaseConnection(f"sqlite:///{tmp_path / 'fk.db'}")
        with conn.engine.connect() as c:
            assert c.exec_driver_sql("PRAGMA foreign_keys").scalar() == 1
        conn.close()

    def test_memory_identities_are_distinct(self):
        first = DatabaseConnection(":memory:")
        second = DatabaseConnection(":memory:")
        assert first.identity != second.identity

    def test_file_identity_is_url(self, tmp_path: Path):
        url = f"sqlite:///{tmp_path / 'a.db'}"
        assert DatabaseConnection(url).identity == url

    def test_unopenable_file_raises(self, tmp_path: Path):
        conn = DatabaseConnection(f"sqlite:///{tmp_path / 'missing_dir' / 'app.db'}")
        with pytest.raises(ConnectionError):
            conn.test_connection()

    def test_not_a_database_raises(self, tmp_path: Path):
        path = tmp_path / "garbage.db"
        path.write_bytes(b"this is not a sqlite database file" * 100)
        conn = DatabaseConnection(f"sqlite:///{path}")
        with pytest.raises(ConnectionError):
            conn.test_connection()
        conn.close()

    def test_context_manager(self):
        with DatabaseConnection(":memory:") as conn:
            assert conn.schema_version() == 0


class TestEngineConfiguration:
    """IntrospectDB option validation."""

    def test_defaults(self):
        db = IntrospectDB()
        assert db.config.cache_max_size == 1000
        assert db.config.migration_timeout == 30.0
        assert db.config.max_concurrent_migrations == 3
        assert not db.is_initialized

    @pytest.mark.parametrize(
        "options",
        [
            {"cache_max_size": 0},
            {"cache_ttl": -1},
            {"migration_timeout": 0},
            {"max_concurrent_migrations": 0},
            {"cache_strategy": "mru"},
        ],
    )
    def test_invalid_options_rejected(self, options):
        with pytest.raises(ConfigurationError):
            IntrospectDB(":memory:", **options)

    def test_schema_info_requires_initialize(self):
        db = IntrospectDB()
        with pytest.raises(ConfigurationError):
            db.get_schema_info()

    def test_context_manager_initializes(self):
        with IntrospectDB(":memory:") as db:
            assert db.is_initialized
            assert db.list_tables() == []
        assert not db.is_initialized
