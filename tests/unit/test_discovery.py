"""Tests for schema discovery."""

import logging

import pytest
from sqlalchemy.exc import OperationalError

from introspectdb import CacheManager, IntrospectDB, RelationshipKind
from introspectdb.exceptions import SchemaDiscoveryError, TableNotFoundError
from introspectdb.query.executor import SQLAlchemyExecutor
from introspectdb.schema.discovery import SchemaDiscoverer


def _discoverer(db: IntrospectDB, **kwargs) -> SchemaDiscoverer:
    return SchemaDiscoverer(db.connection, SQLAlchemyExecutor(db.connection), **kwargs)


class TestBasicDiscovery:
    """Tables, columns, keys and indexes."""

    def test_empty_database(self, memory_db):
        info = memory_db.get_schema_info()
        assert info.tables == []
        assert info.relationships == []
        assert info.junction_tables == []

    def test_tables_and_junctions(self, blog_db):
        info = blog_db.get_schema_info()
        assert info.table_names() == ["comments", "posts", "tags", "users"]
        assert [t.name for t in info.junction_tables] == ["post_tags"]

    def test_columns(self, blog_db):
        users = blog_db.get_schema_info().table("users")
        assert users.column_names == ["id", "name", "email", "is_active", "created_at"]
        assert users.primary_key == ["id"]

        id_col = users.column("id")
        assert id_col.auto_increment
        assert not id_col.nullable
        assert id_col.primary_key == 1

        email = users.column("email")
        assert email.type == "TEXT"
        assert not email.nullable
        assert email.unique

        is_active = users.column("is_active")
        assert is_active.default == "1"
        assert is_active.logical_type == "boolean"

        assert users.column("created_at").nullable
        assert users.column("created_at").logical_type == "datetime"
        assert users.column("nope") is None

    def test_foreign_keys(self, blog_db):
        posts = blog_db.get_schema_info().table("posts")
        assert len(posts.foreign_keys) == 1
        fk = posts.foreign_keys[0]
        assert fk.column == "user_id"
        assert fk.target_table == "users"
        assert fk.target_column == "id"
        assert fk.on_delete == "CASCADE"

    def test_indexes(self, blog_db):
        posts = blog_db.get_schema_info().table("posts")
        index = next(ix for ix in posts.indexes if ix.name == "ix_posts_user_id")
        assert index.columns == ["user_id"]
        assert not index.unique
        assert index.origin == "c"

        users = blog_db.get_schema_info().table("users")
        assert any(ix.unique and ix.columns == ["email"] for ix in users.indexes)

    def test_composite_primary_key(self, make_db):
        db = make_db(
            "CREATE TABLE grades (student TEXT, course TEXT, score INTEGER, "
            "PRIMARY KEY (course, student));"
        )
        grades = db.get_schema_info().table("grades")
        assert grades.primary_key == ["course", "student"]
        assert not any(c.auto_increment for c in grades.columns)

    def test_text_primary_key_not_auto_increment(self, make_db):
        db = make_db("CREATE TABLE countries (code TEXT PRIMARY KEY, name TEXT);")
        code = db.get_schema_info().table("countries").column("code")
        assert code.primary_key == 1
        assert not code.auto_increment

    def test_foreign_key_without_target_column_uses_primary_key(self, make_db):
        db = make_db(
            "CREATE TABLE authors (id INTEGER PRIMARY KEY);"
            "CREATE TABLE books (id INTEGER PRIMARY KEY, author_id INTEGER REFERENCES authors);"
        )
        fk = db.get_schema_info().table("books").foreign_keys[0]
        assert fk.target_column == "id"

    def test_composite_foreign_key_ignored(self, make_db, caplog):
        ddl = (
            "CREATE TABLE parents (a INTEGER, b INTEGER, PRIMARY KEY (a, b));"
            "CREATE TABLE children (id INTEGER PRIMARY KEY, pa INTEGER, pb INTEGER, "
            "FOREIGN KEY (pa, pb) REFERENCES parents (a, b));"
        )
        with caplog.at_level(logging.WARNING, logger="introspectdb"):
            db = make_db(ddl)
        assert db.get_schema_info().table("children").foreign_keys == []
        assert db.get_schema_info().relationships == []
        assert "composite foreign key" in caplog.text


class TestSkippedTables:
    """Keyless, excluded, internal and failing tables."""

    def test_keyless_table_skipped_with_warning(self, make_db, caplog):
        with caplog.at_level(logging.WARNING, logger="introspectdb"):
            db = make_db(
                "CREATE TABLE logs (message TEXT);CREATE TABLE users (id INTEGER PRIMARY KEY);"
            )
        assert db.list_tables() == ["users"]
        assert "logs" in caplog.text
        assert "no primary key" in caplog.text

    def test_exclude_patterns(self, make_db):
        db = make_db(
            "CREATE TABLE audit_log (id INTEGER PRIMARY KEY);"
            "CREATE TABLE audit_trail (id INTEGER PRIMARY KEY);"
            "CREATE TABLE users (id INTEGER PRIMARY KEY);",
            exclude_tables=["audit_*"],
        )
        assert db.list_tables() == ["users"]

    def test_migration_ledger_never_discovered(self, blog_db, migrations_dir):
        blog_db.migrations.initialize(migrations_dir)
        blog_db.refresh()
        assert "introspectdb_migrations" not in blog_db.list_tables()

    def test_per_table_failure_skips_only_that_table(self, blog_db, monkeypatch, caplog):
        discoverer = _discoverer(blog_db)
        original = discoverer.introspect_table

        def flaky(name):
            if name == "tags":
                raise OperationalError("PRAGMA", {}, Exception("disk I/O error"))
            return original(name)

        monkeypatch.setattr(discoverer, "introspect_table", flaky)
        with caplog.at_level(logging.WARNING, logger="introspectdb"):
            info = discoverer.discover(use_cache=False)

        assert info.table_names() == ["comments", "posts", "users"]
        assert "Skipping table 'tags'" in caplog.text
        # post_tags points at a table that was not discovered
        assert not any(r.kind is RelationshipKind.MANY_TO_MANY for r in info.relationships)


class TestRequiredTables:
    """Fail fast when expected tables are absent."""

    def test_missing_required_tables(self, blog_url):
        db = IntrospectDB(blog_url, required_tables=["users", "invoices", "payments"])
        with pytest.raises(SchemaDiscoveryError) as exc_info:
            db.initialize()
        assert exc_info.value.missing_tables == ["invoices", "payments"]
        db.close()

    def test_present_required_tables(self, blog_url):
        db = IntrospectDB(blog_url, required_tables=["users", "post_tags"]).initialize()
        assert db.is_initialized
        db.close()


class TestDiscoveryCache:
    """Memoization keyed by schema version."""

    def test_repeated_discovery_is_equal(self, blog_db):
        discoverer = _discoverer(blog_db)
        assert discoverer.discover(use_cache=False) == discoverer.discover(use_cache=False)

    def test_second_discovery_served_from_cache(self, blog_db):
        cache = CacheManager()
        discoverer = _discoverer(blog_db, cache=cache)
        first = discoverer.discover()
        second = discoverer.discover()
        assert second is first
        assert cache.get_stats().hits == 1

    def test_schema_change_produces_new_snapshot(self, blog_db):
        cache = CacheManager()
        discoverer = _discoverer(blog_db, cache=cache)
        before = discoverer.discover()

        blog_db.execute("CREATE TABLE invoices (id INTEGER PRIMARY KEY, total REAL)")
        after = discoverer.discover()

        assert after.schema_version != before.schema_version
        assert "invoices" in after.table_names()
        assert "invoices" not in before.table_names()
        assert cache.size() == 2
        assert discoverer.invalidate() == 2
        assert cache.size() == 0

    def test_cache_keys_namespaced_by_connection(self, blog_db):
        discoverer = _discoverer(blog_db)
        key = discoverer.cache_key(7)
        assert key.startswith("schema:")
        assert key.endswith(":7")
        assert blog_db.connection.identity in key


class TestRefresh:
    """Engine-level re-discovery."""

    def test_refresh_sees_new_table(self, blog_db):
        blog_db.execute("CREATE TABLE invoices (id INTEGER PRIMARY KEY)")
        assert "invoices" not in blog_db.list_tables()
        blog_db.refresh()
        assert "invoices" in blog_db.list_tables()

    def test_refresh_drops_repositories_of_removed_tables(self, blog_db):
        blog_db.execute("CREATE TABLE scratch (id INTEGER PRIMARY KEY)")
        blog_db.refresh()
        blog_db.get_repository("scratch").count()

        blog_db.execute("DROP TABLE scratch")
        blog_db.refresh()
        assert "scratch" not in blog_db.list_tables()
        with pytest.raises(TableNotFoundError):
            blog_db.get_repository("scratch").count()


class TestViews:
    """Views are reported read-only, never as repositories."""

    VIEWS_SCHEMA = (
        "CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT NOT NULL, active BOOLEAN);"
        "CREATE TABLE posts (id INTEGER PRIMARY KEY, user_id INTEGER REFERENCES users(id));"
        "CREATE VIEW active_users AS SELECT id, name FROM users WHERE active = 1;"
        "CREATE VIEW post_counts AS "
        "WITH c AS (SELECT user_id, count(*) AS n FROM posts GROUP BY user_id) "
        "SELECT u.name, c.n FROM users AS u JOIN c ON c.user_id = u.id;"
    )

    def test_views_discovered(self, make_db):
        info = make_db(self.VIEWS_SCHEMA).get_schema_info()
        assert [v.name for v in info.views] == ["active_users", "post_counts"]

        active = info.view("active_users")
        assert active.column_names == ["id", "name"]
        assert active.definition.startswith("CREATE VIEW active_users")
        assert active.depends_on == ["users"]
        assert info.view("post_counts").depends_on == ["posts", "users"]

    def test_views_are_not_tables(self, make_db):
        db = make_db(self.VIEWS_SCHEMA)
        assert db.list_tables() == ["posts", "users"]
        with pytest.raises(TableNotFoundError):
            db.get_repository("active_users").count()

    def test_excluded_views(self, make_db):
        db = make_db(self.VIEWS_SCHEMA, exclude_tables=["post_*"])
        assert [v.name for v in db.get_schema_info().views] == ["active_users"]

    def test_new_view_seen_after_refresh(self, blog_db):
        assert blog_db.get_schema_info().views == []
        blog_db.execute("CREATE VIEW titles AS SELECT title FROM posts")
        blog_db.refresh()
        assert blog_db.get_schema_info().view("titles").depends_on == ["posts"]
