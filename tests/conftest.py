"""Shared test fixtures for IntrospectDB."""

import sqlite3
from collections.abc import Callable, Generator
from pathlib import Path

import pytest

from introspectdb import IntrospectDB

BLOG_SCHEMA = """
CREATE TABLE users (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT NOT NULL UNIQUE,
    is_active BOOLEAN NOT NULL DEFAULT 1,
    created_at DATETIME
);
CREATE TABLE posts (
    id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    body TEXT,
    published_on DATE
);
CREATE TABLE tags (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL UNIQUE
);
CREATE TABLE post_tags (
    post_id INTEGER NOT NULL REFERENCES posts(id) ON DELETE CASCADE,
    tag_id INTEGER NOT NULL REFERENCES tags(id),
    PRIMARY KEY (post_id, tag_id)
);
CREATE TABLE comments (
    id INTEGER PRIMARY KEY,
    post_id INTEGER NOT NULL REFERENCES posts(id) ON DELETE CASCADE,
    user_id INTEGER REFERENCES users(id),
    body TEXT NOT NULL
);
CREATE INDEX ix_posts_user_id ON posts (user_id);
"""


def create_database(path: Path, ddl: str) -> str:
    """Create a SQLite file from a DDL script and return its URL."""
    conn = sqlite3.connect(path)
    try:
        conn.executescript(ddl)
        conn.commit()
    finally:
        conn.close()
    return f"sqlite:///{path}"


@pytest.fixture
def make_db(tmp_path: Path) -> Generator[Callable[..., IntrospectDB], None, None]:
    """Factory: build a file-backed database from DDL and return an initialized engine."""
    opened: list[IntrospectDB] = []

    def factory(ddl: str = "", name: str = "test.db", **options) -> IntrospectDB:
        url = create_database(tmp_path / name, ddl)
        database = IntrospectDB(url, **options).initialize()
        opened.append(database)
        return database

    yield factory
    for database in opened:
        database.close()


@pytest.fixture
def blog_url(tmp_path: Path) -> str:
    """URL of a file-backed database holding the blog schema."""
    return create_database(tmp_path / "blog.db", BLOG_SCHEMA)


@pytest.fixture
def blog_db(blog_url: str) -> Generator[IntrospectDB, None, None]:
    """Initialized IntrospectDB over the blog schema."""
    database = IntrospectDB(blog_url).initialize()
    yield database
    database.close()


@pytest.fixture
def seeded_db(blog_db: IntrospectDB) -> IntrospectDB:
    """Blog database with a few users, posts, tags and comments."""
    users = blog_db.get_repository("users")
    posts = blog_db.get_repository("posts")
    tags = blog_db.get_repository("tags")
    post_tags_sql = "INSERT INTO post_tags (post_id, tag_id) VALUES (:post_id, :tag_id)"

    alice = users.create({"name": "Alice", "email": "alice@example.com"})
    bob = users.create({"name": "Bob", "email": "bob@example.com"})
    users.create({"name": "Carol", "email": "carol@example.com"})

    first = posts.create({"user_id": alice["id"], "title": "Hello"})
    second = posts.create({"user_id": alice["id"], "title": "Again"})
    third = posts.create({"user_id": bob["id"], "title": "Bob's post"})

    python = tags.create({"name": "python"})
    sqlite = tags.create({"name": "sqlite"})
    blog_db.execute(post_tags_sql, {"post_id": first["id"], "tag_id": python["id"]})
    blog_db.execute(post_tags_sql, {"post_id": first["id"], "tag_id": sqlite["id"]})
    blog_db.execute(post_tags_sql, {"post_id": third["id"], "tag_id": sqlite["id"]})

    comments = blog_db.get_repository("comments")
    comments.create({"post_id": first["id"], "user_id": bob["id"], "body": "Nice"})
    comments.create({"post_id": second["id"], "user_id": bob["id"], "body": "Again?"})
    return blog_db


@pytest.fixture
def memory_db() -> Generator[IntrospectDB, None, None]:
    """Initialized IntrospectDB over an empty in-memory database."""
    database = IntrospectDB("sqlite:///:memory:").initialize()
    yield database
    database.close()


@pytest.fixture
def migrations_dir(tmp_path: Path) -> Path:
    """Empty migrations directory."""
    directory = tmp_path / "migrations"
    directory.mkdir()
    return directory
