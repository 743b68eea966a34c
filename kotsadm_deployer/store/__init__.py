"""SQL-backed stores."""

from .database import Base, Database
from .sql import SQLStore

__all__ = ["Base", "Database", "SQLStore"]
