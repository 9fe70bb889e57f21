"""Database connection management for ScribeGuard stores.

Provides connection pooling, health checks, and the repository base class
for the PostgreSQL audit store and metrics repository.
"""

from .connection import (
    DatabaseConfig,
    ConnectionManager,
)
from .repository import (
    BaseRepository,
    RepositoryError,
    NotFoundError,
)

__all__ = [
    "DatabaseConfig",
    "ConnectionManager",
    "BaseRepository",
    "RepositoryError",
    "NotFoundError",
]
