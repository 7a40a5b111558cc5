"""Repository package for database access."""

from .sessions import SqliteSessionRepository
from .offsets import SqliteFileOffsetRepository
from .usage import SqliteUsageRepository

__all__ = [
    "SqliteSessionRepository",
    "SqliteFileOffsetRepository",
    "SqliteUsageRepository",
]
