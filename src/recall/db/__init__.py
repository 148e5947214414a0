"""recall database layer."""

from recall.db.connection import Database
from recall.db.migrations import MIGRATIONS, run_migrations
from recall.db.repository import Repository
from recall.db.schema import initialize
from recall.db.vectors import ensure_vec_table, model_to_slug, vec_table_name

__all__ = [
    "Database",
    "Repository",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "ensure_vec_table",
    "model_to_slug",
    "vec_table_name",
]
