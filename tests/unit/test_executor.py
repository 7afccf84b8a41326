"""Tests for statement execution, transactions and metrics."""

import threading

import pytest
from sqlalchemy import text

from introspectdb import IntrospectDB, QueryMetrics
from introspectdb.exceptions import ConstraintViolationError
from introspectdb.query.executor import statement_type
from introspectdb.query.metrics import MetricsCollector


class TestStatementType:
    """Classification used for metrics."""

    @pytest.mark.parametrize(
        ("sql", "expected"),
        [
            ("SELECT 1", "SELECT"),
            ("  insert into t values (1)", "INSERT"),
            ("UPDATE t SET a = 1", "UPDATE"),
            ("DELETE FROM t", "DELETE"),
            ("CREATE TABLE t (id INTEGER)", "DDL"),
            ("WITH x AS (SELECT 1) SELECT * FROM x", "SELECT"),
            ("WITH x AS (SELECT 1) DELETE FROM t WHERE id IN x", "DELETE"),
            ("PRAGMA schema_version", "OTHER"),
        ],
    )
    def test_text_statements(self, sql, expected):
        assert statement_type(text(sql)) == expected


class TestTransactions:
    """Atomic multi-statement units."""

    def test_commit(self, seeded_db):
        users = seeded_db.get_repository("users")
        with seeded_db.transaction():
            users.update(1, {"name": "A"})
            users.update(2, {"name": "B"})
        assert [u["name"] for u in users.find_all(limit=2)] == ["A", "B"]

    def test_rollback_on_error(self, seeded_db):
        users = seeded_db.get_repository("users")
        with pytest.raises(ConstraintViolationError):
            with seeded_db.transaction():
                users.update(1, {"name": "Changed"})
                users.create({"name": "Dup", "email": "bob@example.com"})

        assert users.find_by_id(1)["name"] == "Alice"
        assert users.count() == 3

    def test_rollback_on_application_error(self, seeded_db):
        users = seeded_db.get_repository("users")
        with pytest.raises(RuntimeError):
            with seeded_db.transaction():
                users.create({"name": "Dave", "email": "dave@example.com"})
                raise RuntimeError("abort")
        assert users.count() == 3

    def test_nested_transaction_is_a_savepoint(self, seeded_db):
        users = seeded_db.get_repository("users")
        with seeded_db.transaction():
            users.create({"name": "Dave", "email": "dave@example.com"})
            with pytest.raises(ConstraintViolationError):
                with seeded_db.transaction():
                    users.create({"name": "Eve", "email": "eve@example.com"})
                    users.create({"name": "Dup", "email": "alice@example.com"})
        names = {u["name"] for u in users.find_all()}
        assert "Dave" in names
        assert "Eve" not in names

    def test_run_in_transaction(self, seeded_db):
        users = seeded_db.get_repository("users")

        def rename(user_id, name):
            return users.update(user_id, {"name": name})

        assert seeded_db.run_in_transaction(rename, 1, "Alicia")["name"] == "Alicia"

    def test_ddl_rolls_back(self, blog_db):
        with pytest.raises(RuntimeError):
            with blog_db.transaction():
                blog_db.execute("CREATE TABLE temp_table (id INTEGER PRIMARY KEY)")
                raise RuntimeError("abort")
        blog_db.refresh()
        assert "temp_table" not in blog_db.list_tables()


class TestConcurrentWrites:
    """Writes from several threads are serialized."""

    def test_parallel_creates(self, blog_db):
        users = blog_db.get_repository("users")
        errors = []

        def worker(n: int) -> None:
            try:
                for i in range(10):
                    users.create({"name": f"u{n}-{i}", "email": f"u{n}-{i}@example.com"})
            except Exception as e:  # surfaced through the errors list
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert users.count() == 40

    def test_memory_database_shared_across_threads(self):
        with IntrospectDB(":memory:") as db:
            db.execute("CREATE TABLE items (id INTEGER PRIMARY KEY, label TEXT)")
            db.refresh()
            items = db.get_repository("items")

            threads = [
                threading.Thread(target=items.create, args=({"label": f"item {n}"},))
                for n in range(5)
            ]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
            assert items.count() == 5


class TestMetrics:
    """MetricsCollector and the metrics executor."""

    def test_every_statement_is_recorded(self, seeded_db):
        seeded_db.metrics.reset()
        users = seeded_db.get_repository("users")
        users.find_all()
        users.count()
        summary = seeded_db.metrics.summary()
        assert summary.total_queries == 2
        assert summary.by_type == {"SELECT": 2}

    def test_failed_statements_recorded(self, seeded_db):
        seeded_db.metrics.reset()
        with pytest.raises(ConstraintViolationError):
            seeded_db.get_repository("users").create({"name": "x", "email": "bob@example.com"})
        assert seeded_db.metrics.summary().failed_queries == 1

    def test_metrics_can_be_disabled(self, blog_url):
        with IntrospectDB(blog_url, collect_metrics=False) as db:
            db.get_repository("users").find_all()
            assert db.metrics.query_count == 0

    def test_slow_queries_counted(self, caplog):
        collector = MetricsCollector(slow_query_threshold_ms=10)
        collector.record_query(QueryMetrics(execution_time_ms=5, row_count=1, query_type="SELECT"))
        collector.record_query(QueryMetrics(execution_time_ms=50, row_count=1, query_type="SELECT"))
        summary = collector.summary()
        assert summary.slow_queries == 1
        assert summary.max_execution_time_ms == 50
        assert summary.avg_execution_time_ms == pytest.approx(27.5)
        assert "Slow SELECT statement" in caplog.text

    def test_recent_window(self):
        collector = MetricsCollector(history_size=3)
        for i in range(5):
            collector.record_query(QueryMetrics(execution_time_ms=i, row_count=0, query_type="X"))
        assert [m.execution_time_ms for m in collector.recent()] == [2, 3, 4]
        assert collector.query_count == 5
        assert all(m.timestamp is not None for m in collector.recent())
