# src/services/base_service.py
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar
from uuid import UUID

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from utils.exceptions import (
    ConcurrentModificationException,
    ConflictException,
    handle_db_exception,
)
from utils.logger import setup_logger

logger = setup_logger("BASE_SERVICE")

ModelType = TypeVar("ModelType")


class BaseService:
    """Async persistence helpers shared by the services.

    Models passed in must have an ``id`` primary key; ``update_versioned``
    additionally requires an integer ``version`` column.
    """

    def __init__(self, model: Type[ModelType]):
        self.model = model
        self.logger = setup_logger(f"SERVICE_{model.__name__}")

    def _conditions(
        self,
        filters: Optional[Dict[str, Any]] = None,
        conditions: Optional[Sequence[Any]] = None,
    ) -> List[Any]:
        clauses = []
        if filters:
            for field, value in filters.items():
                if hasattr(self.model, field):
                    clauses.append(getattr(self.model, field) == value)
        if conditions:
            clauses.extend(conditions)
        return clauses

    async def get(self, db: AsyncSession, id: UUID) -> Optional[ModelType]:
        """Get a single item by ID"""
        return await self.get_by(db, id=id)

    async def get_by(self, db: AsyncSession, **filters: Any) -> Optional[ModelType]:
        """Get a single item matching all filters, always re-read from the store"""
        try:
            query = (
                select(self.model)
                .where(and_(*self._conditions(filters)))
                .execution_options(populate_existing=True)
            )
            result = await db.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            await handle_db_exception(db, self.logger, f"get {self.model.__name__}", e)

    async def get_multi(
        self,
        db: AsyncSession,
        skip: int = 0,
        limit: Optional[int] = 100,
        filters: Optional[Dict[str, Any]] = None,
        conditions: Optional[Sequence[Any]] = None,
        order_by: Optional[Sequence[Any]] = None,
    ) -> List[ModelType]:
        """Get multiple items with pagination, filtering and ordering"""
        try:
            query = select(self.model).execution_options(populate_existing=True)

            clauses = self._conditions(filters, conditions)
            if clauses:
                query = query.where(and_(*clauses))
            if order_by:
                query = query.order_by(*order_by)
            if skip:
                query = query.offset(skip)
            if limit is not None:
                query = query.limit(limit)

            result = await db.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            await handle_db_exception(
                db, self.logger, f"get_multi {self.model.__name__}", e
            )

    async def create(self, db: AsyncSession, values: Dict[str, Any]) -> ModelType:
        """Insert a new row and commit.

        Raises ConflictException when a unique constraint is violated.
        """
        try:
            db_obj = self.model(**values)
            db.add(db_obj)
            await db.flush()
            await db.commit()

            self.logger.info(f"Created {self.model.__name__} with ID: {db_obj.id}")
            return db_obj

        except IntegrityError as e:
            await db.rollback()
            self.logger.warning(f"Integrity error creating {self.model.__name__}: {e}")
            raise ConflictException(detail=f"{self.model.__name__} already exists")
        except SQLAlchemyError as e:
            await handle_db_exception(
                db, self.logger, f"create {self.model.__name__}", e
            )

    async def update_versioned(
        self,
        db: AsyncSession,
        id: UUID,
        expected_version: int,
        values: Dict[str, Any],
    ) -> None:
        """Write ``values`` only if the stored version still equals
        ``expected_version``, then commit.

        ``values`` must carry the new version. Raises
        ConcurrentModificationException when another writer got there first.
        """
        try:
            result = await db.execute(
                update(self.model)
                .where(
                    self.model.id == id,
                    self.model.version == expected_version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                self.logger.warning(
                    f"Version conflict on {self.model.__name__} {id}: "
                    f"expected version {expected_version}"
                )
                raise ConcurrentModificationException(str(id), expected_version)

            await db.commit()
            self.logger.info(
                f"Updated {self.model.__name__} with ID: {id} "
                f"to version {values.get('version')}"
            )
        except SQLAlchemyError as e:
            await handle_db_exception(
                db, self.logger, f"update {self.model.__name__}", e
            )

    async def count(
        self,
        db: AsyncSession,
        filters: Optional[Dict[str, Any]] = None,
        conditions: Optional[Sequence[Any]] = None,
    ) -> int:
        """Count items with optional filters"""
        try:
            query = select(func.count()).select_from(self.model)
            clauses = self._conditions(filters, conditions)
            if clauses:
                query = query.where(and_(*clauses))

            result = await db.execute(query)
            return result.scalar_one()
        except SQLAlchemyError as e:
            await handle_db_exception(
                db, self.logger, f"count {self.model.__name__}", e
            )
