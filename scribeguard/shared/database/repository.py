"""Base repository pattern for PostgreSQL-backed collaborators.

Only append and read operations exist: the audit trail is append-only and
the metrics tables are owned by the writing-analytics ingestion jobs.
"""
import logging
from abc import ABC, abstractmethod
from typing import Generic, List, Sequence, TypeVar

from .connection import ConnectionManager

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class NotFoundError(RepositoryError):
    """Entity not found in database."""
    pass


class BaseRepository(ABC, Generic[T]):
    """Abstract base repository.

    Subclasses implement row conversion while inheriting:
    - Connection management
    - Error wrapping into RepositoryError
    - Logging patterns
    """

    def __init__(
        self,
        connection_manager: ConnectionManager,
        table_name: str,
    ):
        """Initialize repository.

        Args:
            connection_manager: Database connection manager
            table_name: Name of the database table
        """
        self.connection_manager = connection_manager
        self.table_name = table_name

        logger.info(
            "REPOSITORY_INITIALIZED",
            extra={"table_name": table_name}
        )

    @abstractmethod
    def _row_to_entity(self, row: tuple) -> T:
        """Convert database row to entity."""
        pass

    def _fetch_all(self, query: str, params: Sequence) -> List[T]:
        """Run a SELECT and convert every row.

        Raises:
            RepositoryError: If the query fails
        """
        try:
            with self.connection_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    rows = cur.fetchall()
        except Exception as e:
            logger.error(
                "REPOSITORY_QUERY_FAILED",
                extra={"table_name": self.table_name, "error": str(e)}
            )
            raise RepositoryError(f"Query on {self.table_name} failed: {e}")

        return [self._row_to_entity(row) for row in rows]

    def _insert(self, query: str, params: Sequence) -> None:
        """Run an INSERT and commit; a failed write is rolled back before the
        connection returns to the pool.

        Raises:
            RepositoryError: If the write fails
        """
        try:
            with self.connection_manager.get_connection() as conn:
                try:
                    with conn.cursor() as cur:
                        cur.execute(query, params)
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
        except Exception as e:
            logger.error(
                "REPOSITORY_INSERT_FAILED",
                extra={"table_name": self.table_name, "error": str(e)}
            )
            raise RepositoryError(f"Insert into {self.table_name} failed: {e}")
