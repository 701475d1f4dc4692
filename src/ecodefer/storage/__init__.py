"""SQLite persistence."""

from ecodefer.storage.database import Database
from ecodefer.storage.reader import AsyncReader

__all__ = ["AsyncReader", "Database"]
