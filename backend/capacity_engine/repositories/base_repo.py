"""
Base repository with strict trainer isolation enforcement.

CRITICAL: All database operations on trainer-owned rows MUST include
trainer_id. No query can read or write another trainer's data.

Repositories flush but never commit; the route or job that owns the
request transaction commits.
"""

import logging
from typing import TypeVar, Generic, Optional, List
from abc import ABC, abstractmethod

from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from capacity_engine.db_base import Base

logger = logging.getLogger(__name__)

# Type variable for repository models
T = TypeVar("T", bound=Base)


class TrainerIsolationError(Exception):
    """Raised when trainer isolation is violated."""
    pass


class BaseRepository(Generic[T], ABC):
    """
    Base repository with mandatory trainer_id enforcement.

    All queries are automatically scoped by trainer_id.
    """

    def __init__(self, db_session: Session, trainer_id: str):
        """
        Initialize repository with trainer context.

        Args:
            db_session: SQLAlchemy database session
            trainer_id: Trainer account identifier

        Raises:
            ValueError: If trainer_id is empty or None
        """
        if not trainer_id:
            raise ValueError("trainer_id is required and cannot be empty")

        self.db_session = db_session
        self.trainer_id = trainer_id
        self._model_class = self._get_model_class()

    @abstractmethod
    def _get_model_class(self) -> type[T]:
        """Return the SQLAlchemy model class for this repository."""
        pass

    def _get_trainer_column_name(self) -> str:
        """Return the name of the trainer_id column in the model."""
        return "trainer_id"

    def _scoped_query(self):
        return self._enforce_trainer_scope(self.db_session.query(self._model_class))

    def _enforce_trainer_scope(self, query):
        """Scope query by trainer_id."""
        trainer_column = getattr(self._model_class, self._get_trainer_column_name())
        return query.filter(trainer_column == self.trainer_id)

    def _validate_trainer_id(self, trainer_id: Optional[str], operation: str):
        """Reject operations that name a different trainer than the repository."""
        if trainer_id and trainer_id != self.trainer_id:
            logger.error(
                "Trainer ID mismatch detected",
                extra={
                    "repository_trainer_id": self.trainer_id,
                    "provided_trainer_id": trainer_id,
                    "operation": operation
                }
            )
            raise TrainerIsolationError(
                f"Trainer ID mismatch: repository scoped to {self.trainer_id}, "
                f"but operation attempted with {trainer_id}"
            )

    def get_by_id(self, entity_id: str, trainer_id: Optional[str] = None) -> Optional[T]:
        """
        Get entity by ID, scoped to trainer.

        Raises:
            TrainerIsolationError: If trainer_id mismatch detected
        """
        self._validate_trainer_id(trainer_id, "get_by_id")
        return self._scoped_query().filter(self._model_class.id == entity_id).first()

    def get_all(
        self,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[T]:
        query = self._scoped_query()
        if offset:
            query = query.offset(offset)
        if limit:
            query = query.limit(limit)
        return query.all()

    def create(self, entity_data: dict, trainer_id: Optional[str] = None) -> T:
        """
        Create new entity with trainer_id enforced.

        trainer_id inside entity_data is ignored; the repository trainer is
        always used.

        Raises:
            TrainerIsolationError: If trainer_id mismatch detected
        """
        self._validate_trainer_id(trainer_id, "create")

        column = self._get_trainer_column_name()
        if column in entity_data:
            logger.warning(
                "trainer_id found in entity_data, removing it",
                extra={
                    "repository_trainer_id": self.trainer_id,
                    "removed_trainer_id": entity_data.pop(column)
                }
            )
        entity_data[column] = self.trainer_id

        entity = self._model_class(**entity_data)
        self.db_session.add(entity)

        try:
            self.db_session.flush()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to create entity",
                extra={
                    "trainer_id": self.trainer_id,
                    "entity_type": self._model_class.__name__,
                    "error": str(e)
                }
            )
            raise

        logger.info(
            "Entity created",
            extra={
                "trainer_id": self.trainer_id,
                "entity_id": getattr(entity, "id", None),
                "entity_type": self._model_class.__name__
            }
        )
        return entity

    def delete(self, entity_id: str, trainer_id: Optional[str] = None) -> bool:
        """
        Delete entity, scoped to trainer.

        Returns:
            True if deleted, False if not found
        """
        self._validate_trainer_id(trainer_id, "delete")

        entity = self.get_by_id(entity_id)
        if not entity:
            return False

        self.db_session.delete(entity)
        self.db_session.flush()

        logger.info(
            "Entity deleted",
            extra={
                "trainer_id": self.trainer_id,
                "entity_id": entity_id,
                "entity_type": self._model_class.__name__
            }
        )
        return True

    def count(self) -> int:
        return self._scoped_query().count()
