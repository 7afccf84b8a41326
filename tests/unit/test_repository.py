"""Tests for generated repositories."""

from datetime import date, datetime

import pytest

from introspectdb.exceptions import (
    ColumnNotFoundError,
    ConfigurationError,
    ConstraintViolationError,
    QueryError,
    RecordNotFoundError,
    TableNotFoundError,
)


@pytest.fixture
def users(blog_db):
    return blog_db.get_repository("users")


@pytest.fixture
def posts(blog_db):
    return blog_db.get_repository("posts")


class TestCreateAndRead:
    """create / find_by_id / find_all / find_by / find_where / count."""

    def test_create_returns_stored_row(self, users):
        alice = users.create({"name": "Alice", "email": "alice@example.com"})
        assert alice["id"] == 1
        assert alice["name"] == "Alice"
        # server default applied and coerced to bool
        assert alice["is_active"] is True
        assert alice["created_at"] is None

    def test_round_trip(self, users):
        created = users.create({"name": "Alice", "email": "alice@example.com"})
        assert users.find_by_id(created["id"]) == created

    def test_find_by_id_missing_returns_none(self, users):
        assert users.find_by_id(999) is None
        assert users.exists(999) is False

    def test_find_all_ordered_by_primary_key(self, users):
        for name in ("Carol", "Alice", "Bob"):
            users.create({"name": name, "email": f"{name.lower()}@example.com"})
        assert [u["name"] for u in users.find_all()] == ["Carol", "Alice", "Bob"]

    def test_find_all_paging_and_ordering(self, users):
        for name in ("Carol", "Alice", "Bob", "Dave"):
            users.create({"name": name, "email": f"{name.lower()}@example.com"})

        assert [u["name"] for u in users.find_all(order_by="name")] == [
            "Alice",
            "Bob",
            "Carol",
            "Dave",
        ]
        assert [u["name"] for u in users.find_all(order_by="-name", limit=2)] == ["Dave", "Carol"]
        assert [u["name"] for u in users.find_all(order_by="name", limit=2, offset=1)] == [
            "Bob",
            "Carol",
        ]

    def test_find_all_empty(self, users):
        assert users.find_all() == []
        assert users.count() == 0

    def test_find_by(self, users):
        users.create({"name": "Alice", "email": "a1@example.com"})
        users.create({"name": "Alice", "email": "a2@example.com"})
        users.create({"name": "Bob", "email": "b@example.com"})
        assert len(users.find_by("name", "Alice")) == 2
        assert users.find_by("name", "Nobody") == []

    def test_find_where_operators(self, users):
        users.create({"name": "Alice", "email": "a@example.com", "created_at": None})
        users.create({"name": "Bob", "email": "b@example.com", "is_active": False})
        users.create({"name": "Carol", "email": "c@example.com"})

        assert [u["name"] for u in users.find_where({"name": ["Alice", "Carol"]})] == [
            "Alice",
            "Carol",
        ]
        assert len(users.find_where({"created_at": None})) == 3
        assert [u["name"] for u in users.find_where({"is_active": False})] == ["Bob"]
        assert users.count({"is_active": True}) == 2

    def test_unknown_column_in_predicates(self, users):
        with pytest.raises(ColumnNotFoundError) as exc_info:
            users.find_where({"nmae": "Alice"})
        assert "name" in exc_info.value.available_columns

    def test_unknown_column_in_data(self, users):
        with pytest.raises(ColumnNotFoundError):
            users.create({"name": "Alice", "email": "a@example.com", "age": 30})
        assert users.count() == 0

    def test_unknown_order_column(self, users):
        with pytest.raises(ColumnNotFoundError):
            users.find_all(order_by="-age")


class TestPaginate:
    """Pages with totals."""

    @pytest.fixture
    def five_users(self, users):
        for i in range(5):
            users.create({"name": f"u{i}", "email": f"u{i}@example.com", "is_active": i % 2 == 0})
        return users

    def test_middle_page(self, five_users):
        page = five_users.paginate(page=2, limit=2)
        assert [u["name"] for u in page.data] == ["u2", "u3"]
        assert page.pagination.model_dump() == {
            "page": 2,
            "limit": 2,
            "total": 5,
            "total_pages": 3,
            "has_next": True,
            "has_prev": True,
        }

    def test_last_and_past_last_page(self, five_users):
        last = five_users.paginate(page=3, limit=2)
        assert [u["name"] for u in last.data] == ["u4"]
        assert last.pagination.has_next is False

        beyond = five_users.paginate(page=4, limit=2)
        assert beyond.data == []
        assert beyond.pagination.has_prev is True

    def test_where_and_order_by(self, five_users):
        page = five_users.paginate(page=1, limit=2, where={"is_active": True}, order_by="-name")
        assert [u["name"] for u in page.data] == ["u4", "u2"]
        assert page.pagination.total == 3
        assert page.pagination.total_pages == 2

    def test_empty_table(self, users):
        page = users.paginate()
        assert page.data == []
        assert page.pagination.total == 0
        assert page.pagination.total_pages == 0
        assert page.pagination.has_next is False
        assert page.pagination.has_prev is False

    @pytest.mark.parametrize("page,limit", [(0, 10), (1, 0), (-1, 5)])
    def test_invalid_page_or_limit(self, users, page, limit):
        with pytest.raises(QueryError):
            users.paginate(page=page, limit=limit)


class TestWithCount:
    """Related row counts without loading the rows."""

    def test_one_to_many_counts(self, seeded_db):
        users = seeded_db.get_repository("users")
        alice = users.with_count(1, ["posts", "comments"])
        bob = users.with_count(2, ["posts", "comments"])
        assert (alice["posts_count"], alice["comments_count"]) == (2, 0)
        assert (bob["posts_count"], bob["comments_count"]) == (1, 2)
        assert "posts" not in alice

    def test_many_to_many_and_many_to_one(self, seeded_db):
        posts = seeded_db.get_repository("posts")
        post = posts.with_count(1, ["tags", "user"])
        assert post["tags_count"] == 2
        assert post["user_count"] == 1

    def test_one_query_per_relationship(self, seeded_db):
        users = seeded_db.get_repository("users")
        seeded_db.metrics.reset()
        users.with_count(1, ["posts", "comments", "followers"])
        assert seeded_db.metrics.query_count == 3

    def test_missing_row_and_unknown_relationship(self, seeded_db):
        users = seeded_db.get_repository("users")
        assert users.with_count(999, ["posts"]) is None
        carol = users.with_count(3, ["followers"])
        assert "followers_count" not in carol


class TestUpdateAndDelete:
    """update / delete semantics."""

    def test_update_returns_new_row(self, users):
        alice = users.create({"name": "Alice", "email": "a@example.com"})
        updated = users.update(alice["id"], {"name": "Alice B."})
        assert updated["name"] == "Alice B."
        assert updated["email"] == "a@example.com"
        assert users.find_by_id(alice["id"])["name"] == "Alice B."

    def test_update_missing_raises(self, users):
        with pytest.raises(RecordNotFoundError) as exc_info:
            users.update(999, {"name": "Ghost"})
        assert exc_info.value.table_name == "users"

    def test_update_with_no_values_checks_existence(self, users):
        alice = users.create({"name": "Alice", "email": "a@example.com"})
        assert users.update(alice["id"], {}) == alice
        with pytest.raises(RecordNotFoundError):
            users.update(999, {})

    def test_delete(self, users):
        alice = users.create({"name": "Alice", "email": "a@example.com"})
        assert users.delete(alice["id"]) is True
        assert users.delete(alice["id"]) is False
        assert users.find_by_id(alice["id"]) is None

    def test_delete_cascades_through_foreign_keys(self, users, posts):
        alice = users.create({"name": "Alice", "email": "a@example.com"})
        posts.create({"user_id": alice["id"], "title": "Hello"})
        users.delete(alice["id"])
        assert posts.count() == 0


class TestConstraints:
    """Constraint failures surface as ConstraintViolationError."""

    def test_duplicate_unique_value(self, users):
        users.create({"name": "Alice", "email": "dup@example.com"})
        with pytest.raises(ConstraintViolationError) as exc_info:
            users.create({"name": "Other", "email": "dup@example.com"})

        error = exc_info.value
        assert error.kind == "UNIQUE"
        assert error.table_name == "users"
        assert error.column == "email"
        assert error.value == "dup@example.com"
        assert "dup@example.com" not in error.message
        assert users.count() == 1

    def test_duplicate_primary_key(self, users):
        users.create({"id": 5, "name": "Alice", "email": "a@example.com"})
        with pytest.raises(ConstraintViolationError) as exc_info:
            users.create({"id": 5, "name": "Bob", "email": "b@example.com"})
        assert exc_info.value.kind == "PRIMARY KEY"

    def test_not_null(self, users):
        with pytest.raises(ConstraintViolationError) as exc_info:
            users.create({"email": "a@example.com"})
        assert exc_info.value.kind == "NOT NULL"
        assert exc_info.value.column == "name"

    def test_foreign_key(self, posts):
        with pytest.raises(ConstraintViolationError) as exc_info:
            posts.create({"user_id": 999, "title": "Orphan"})
        assert exc_info.value.kind == "FOREIGN KEY"
        assert exc_info.value.column == "user_id"
        assert posts.count() == 0

    def test_update_into_duplicate(self, users):
        users.create({"name": "Alice", "email": "a@example.com"})
        bob = users.create({"name": "Bob", "email": "b@example.com"})
        with pytest.raises(ConstraintViolationError):
            users.update(bob["id"], {"email": "a@example.com"})
        assert users.find_by_id(bob["id"])["email"] == "b@example.com"


class TestValueSafety:
    """Values are always bound, never interpolated."""

    def test_injection_attempt_is_stored_verbatim(self, blog_db, users):
        payload = "'; DROP TABLE users; --"
        created = users.create({"name": payload, "email": "evil@example.com"})

        assert users.find_by_id(created["id"])["name"] == payload
        assert users.find_by("name", payload)[0]["id"] == created["id"]
        assert "users" in blog_db.list_tables()
        blog_db.refresh()
        assert "users" in blog_db.list_tables()

    def test_injection_in_lookup_value(self, users):
        users.create({"name": "Alice", "email": "a@example.com"})
        assert users.find_by("name", "x' OR '1'='1") == []
        assert users.count() == 1


class TestCoercion:
    """Booleans and dates."""

    def test_datetime_round_trip(self, users):
        stamp = datetime(2024, 5, 17, 12, 30, 0)
        alice = users.create({"name": "Alice", "email": "a@example.com", "created_at": stamp})
        assert alice["created_at"] == stamp
        assert users.find_where({"created_at": stamp})[0]["id"] == alice["id"]

    def test_date_round_trip(self, users, posts):
        alice = users.create({"name": "Alice", "email": "a@example.com"})
        post = posts.create(
            {"user_id": alice["id"], "title": "Dated", "published_on": date(2024, 1, 2)}
        )
        assert post["published_on"] == date(2024, 1, 2)

    def test_boolean_written_as_bool(self, users):
        bob = users.create({"name": "Bob", "email": "b@example.com", "is_active": False})
        assert bob["is_active"] is False


class TestKeys:
    """Composite and non-integer primary keys."""

    @pytest.fixture
    def grades(self, make_db):
        db = make_db(
            "CREATE TABLE grades (student TEXT NOT NULL, course TEXT NOT NULL, "
            "score INTEGER, PRIMARY KEY (course, student));"
        )
        return db.get_repository("grades")

    def test_composite_key_create_and_find(self, grades):
        created = grades.create({"student": "ann", "course": "math", "score": 90})
        assert created == {"student": "ann", "course": "math", "score": 90}
        assert grades.find_by_id(("math", "ann"))["score"] == 90
        assert grades.find_by_id({"student": "ann", "course": "math"})["score"] == 90

    def test_composite_key_update_and_delete(self, grades):
        grades.create({"student": "ann", "course": "math", "score": 90})
        assert grades.update(("math", "ann"), {"score": 95})["score"] == 95
        assert grades.delete({"course": "math", "student": "ann"}) is True

    def test_composite_key_requires_all_parts(self, grades):
        with pytest.raises(QueryError):
            grades.find_by_id("math")
        with pytest.raises(QueryError):
            grades.find_by_id(("math",))
        with pytest.raises(QueryError):
            grades.find_by_id({"course": "math"})

    def test_changing_primary_key_in_update(self, make_db):
        db = make_db("CREATE TABLE countries (code TEXT PRIMARY KEY, name TEXT);")
        countries = db.get_repository("countries")
        countries.create({"code": "UK", "name": "United Kingdom"})
        moved = countries.update("UK", {"code": "GB"})
        assert moved == {"code": "GB", "name": "United Kingdom"}
        assert countries.find_by_id("UK") is None


class TestRepositoryLookup:
    """Repositories are memoized and fail lazily for unknown tables."""

    def test_memoized(self, blog_db):
        assert blog_db.get_repository("users") is blog_db.get_repository("users")

    def test_unknown_table_fails_at_call_time(self, blog_db):
        ghosts = blog_db.get_repository("ghosts")
        with pytest.raises(TableNotFoundError) as exc_info:
            ghosts.find_all()
        assert "users" in exc_info.value.available_tables

    def test_junction_tables_have_no_repository(self, blog_db):
        with pytest.raises(TableNotFoundError):
            blog_db.get_repository("post_tags").count()

    def test_repository_before_initialize(self, blog_url):
        from introspectdb import IntrospectDB

        db = IntrospectDB(blog_url)
        with pytest.raises(ConfigurationError):
            db.get_repository("users").count()
        db.close()
