"""
Base Repository for the Box Billing Engine

Generic async repository over one SQLModel table that hands out domain
entities instead of ORM objects. Concrete repositories add the queries
their port requires.
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Generic, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel as DomainModel
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel

from app.infrastructure.exceptions import DuplicateError, NotFoundError


# Type variables for generic repository
ModelType = TypeVar("ModelType", bound=SQLModel)
DomainType = TypeVar("DomainType", bound=DomainModel)

TIMESTAMP_FIELDS = ("created_at", "updated_at")


def to_column_value(value: Any) -> Any:
    """Enums are stored by value."""
    return value.value if isinstance(value, Enum) else value


def to_row(entity: DomainModel, exclude: Iterable[str] = ()) -> Dict[str, Any]:
    """
    Convert a domain entity to column values.

    Missing timestamps are filled in so Core inserts (which skip the
    model's Python defaults) still satisfy NOT NULL.
    """
    now = datetime.now(timezone.utc)
    row = {}
    for field, value in entity.model_dump(exclude=set(exclude)).items():
        if field in TIMESTAMP_FIELDS and value is None:
            value = now
        row[field] = to_column_value(value)
    return row


class BaseRepository(Generic[ModelType, DomainType]):
    """
    Generic async repository with domain mapping.

    Args:
        model: The SQLModel table class
        domain: The pydantic domain entity class
        session: Async database session
    """

    def __init__(
        self,
        model: Type[ModelType],
        domain: Type[DomainType],
        session: AsyncSession,
    ):
        self._model = model
        self._domain = domain
        self._session = session

    @property
    def session(self) -> AsyncSession:
        """Get the current session."""
        return self._session

    @property
    def table_name(self) -> str:
        return self._model.__tablename__

    async def get(self, id: str) -> Optional[DomainType]:
        """
        Get a single record by its primary key.

        Returns:
            Domain entity or None if not found
        """
        db_obj = await self._session.get(self._model, id, populate_existing=True)
        return self._to_domain(db_obj) if db_obj else None

    async def update(self, id: str, changes: Dict[str, Any]) -> DomainType:
        """
        Apply field changes to an existing record.

        Raises:
            NotFoundError: no record with this id
        """
        db_obj = await self._session.get(self._model, id)
        if not db_obj:
            raise NotFoundError(
                f"{self.table_name} record {id} not found",
                operation="update",
                table=self.table_name,
            )

        for field, value in changes.items():
            setattr(db_obj, field, to_column_value(value))

        self._session.add(db_obj)
        await self._session.flush()
        await self._session.refresh(db_obj)
        return self._to_domain(db_obj)

    async def count(self) -> int:
        """Get total count of records."""
        stmt = select(func.count()).select_from(self._model)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _insert(self, entity: DomainType) -> DomainType:
        """
        Insert inside a SAVEPOINT so a unique violation leaves the outer
        transaction usable.

        Raises:
            DuplicateError: a uniqueness constraint rejected the row
        """
        db_obj = self._model(**to_row(entity))
        try:
            async with self._session.begin_nested():
                self._session.add(db_obj)
                await self._session.flush()
        except IntegrityError as e:
            raise DuplicateError(
                f"Duplicate {self.table_name} record",
                operation="insert",
                table=self.table_name,
                original_error=e,
            )

        await self._session.refresh(db_obj)
        return self._to_domain(db_obj)

    async def _select_all(self, stmt) -> List[DomainType]:
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return [self._to_domain(obj) for obj in result.scalars().all()]

    async def _select_one(self, stmt) -> Optional[DomainType]:
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        db_obj = result.scalars().first()
        return self._to_domain(db_obj) if db_obj else None

    def _to_domain(self, db_obj: ModelType) -> DomainType:
        """Convert database model to domain entity."""
        return self._domain.model_validate(db_obj, from_attributes=True)
