"""Repository package for database access."""

from .cursors import SqliteCursorRepository
from .usage import SqliteUsageRepository

__all__ = [
    "SqliteCursorRepository",
    "SqliteUsageRepository",
]
