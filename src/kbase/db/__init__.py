"""kbase chunk store: SQLite + sqlite-vec + FTS5."""

from kbase.db.connection import Database
from kbase.db.migrations import MIGRATIONS, run_migrations
from kbase.db.repository import Repository
from kbase.db.schema import initialize

__all__ = [
    "Database",
    "Repository",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
]
