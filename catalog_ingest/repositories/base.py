"""
Base repository pattern for the catalog store.

Provides common read operations with structured error handling plus the
DatabaseSession transaction context used by the audit and maintenance writers.
"""
from abc import ABC, abstractmethod
from typing import Any, Generic, Optional, TypeVar

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger(__name__)

ModelType = TypeVar("ModelType", bound=BaseModel)


class RepositoryError(Exception):
    """Base exception for repository operations"""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


class BaseRepository(Generic[ModelType], ABC):
    """
    Abstract base repository providing common database reads.

    Concrete repositories convert table rows into domain models.
    """

    def __init__(
        self,
        session: AsyncSession,
        table_class: type,
        model_class: type[ModelType],
    ) -> None:
        self.session = session
        self.table_class = table_class
        self.model_class = model_class
        self.logger = logger.bind(
            repository=self.__class__.__name__, table=table_class.__tablename__
        )

    async def get_by_id(self, entity_id: Any) -> Optional[ModelType]:
        """
        Get entity by primary key.

        Args:
            entity_id: Primary key to search for

        Returns:
            Domain model if found, None otherwise

        Raises:
            RepositoryError: If database operation fails
        """
        try:
            db_entity = await self.session.get(self.table_class, entity_id)
            if db_entity is None:
                return None
            return self._to_domain_model(db_entity)

        except Exception as e:
            self.logger.error(
                "Failed to get entity by ID", entity_id=entity_id, error=str(e)
            )
            raise RepositoryError(f"Failed to get entity by ID: {e}", e) from e

    async def list_all(
        self,
        limit: int = 100,
        offset: int = 0,
        order_by: Any = None,
    ) -> list[ModelType]:
        """
        List entities with pagination.

        Args:
            limit: Maximum number of entities to return
            offset: Number of entities to skip
            order_by: Optional ORDER BY clause

        Returns:
            List of domain models

        Raises:
            RepositoryError: If database operation fails
        """
        try:
            query = select(self.table_class)
            if order_by is not None:
                query = query.order_by(order_by)
            query = query.limit(limit).offset(offset)

            result = await self.session.execute(query)
            return [self._to_domain_model(entity) for entity in result.scalars().all()]

        except Exception as e:
            self.logger.error(
                "Failed to list entities",
                limit=limit,
                offset=offset,
                error=str(e),
            )
            raise RepositoryError(f"Failed to list entities: {e}", e) from e

    @abstractmethod
    def _to_domain_model(self, db_entity: Any) -> ModelType:
        """Convert database entity to domain model"""


class DatabaseSession:
    """Database session management with proper error handling"""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.logger = logger.bind(component="database_session")

    async def __aenter__(self) -> AsyncSession:
        return self.session

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Commit on success, roll back on exception"""
        try:
            if exc_type is not None:
                await self.session.rollback()
                self.logger.error(
                    "Transaction rolled back due to exception",
                    exception_type=exc_type.__name__,
                    exception_message=str(exc_val) if exc_val else None,
                )
            else:
                try:
                    await self.session.commit()
                    self.logger.debug("Transaction committed successfully")
                except Exception as e:
                    await self.session.rollback()
                    self.logger.error("Failed to commit transaction", error=str(e))
                    raise
        finally:
            await self.session.close()


__all__ = ["RepositoryError", "BaseRepository", "DatabaseSession"]
