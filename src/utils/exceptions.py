# src/utils/exceptions.py
import logging
from typing import Any, Optional

from fastapi import HTTPException, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from .logger import setup_logger

logger = setup_logger("EXCEPTIONS")


class BaseAPIException(HTTPException):
    """Base for domain errors that the HTTP layer can render directly.

    ``kind`` names the failure class, ``field`` the offending input field and
    ``resource_id`` the record or sub-document the failure refers to.
    """

    kind = "error"

    def __init__(
        self,
        status_code: int,
        detail: Any = None,
        headers: Optional[dict] = None,
        field: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.field = field
        self.resource_id = resource_id


class NotFoundException(BaseAPIException):
    kind = "not_found"

    def __init__(
        self, detail: str = "Resource not found", resource_id: Optional[str] = None
    ):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=detail,
            resource_id=resource_id,
        )


class ConflictException(BaseAPIException):
    kind = "conflict"

    def __init__(
        self,
        detail: str = "Resource already exists",
        field: Optional[str] = None,
        resource_id: Optional[str] = None,
    ):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            field=field,
            resource_id=resource_id,
        )


class ConcurrentModificationException(ConflictException):
    """Raised when a version-checked write finds the record already changed.

    The caller may reload the record and retry the operation.
    """

    retryable = True

    def __init__(self, resource_id: str, expected_version: int):
        super().__init__(
            detail=(
                f"Treatment {resource_id} was modified concurrently "
                f"(expected version {expected_version})"
            ),
            field="metadata.version",
            resource_id=resource_id,
        )
        self.expected_version = expected_version


class InvalidTransitionException(ConflictException):
    kind = "invalid_transition"

    def __init__(self, current: str, target: str, resource_id: Optional[str] = None):
        super().__init__(
            detail=f"Cannot move treatment from '{current}' to '{target}'",
            field="status",
            resource_id=resource_id,
        )
        self.current = current
        self.target = target


class ValidationException(BaseAPIException):
    kind = "validation"

    def __init__(self, detail: Any = "Validation error", field: Optional[str] = None):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
            field=field,
        )

    @classmethod
    def from_pydantic(cls, exc: ValidationError) -> "ValidationException":
        errors = exc.errors()
        field = None
        if errors:
            field = ".".join(str(part) for part in errors[0].get("loc", ()))
        messages = [
            f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}"
            for e in errors
        ]
        return cls(detail="; ".join(messages) or str(exc), field=field or None)


async def handle_db_exception(
    db: AsyncSession, logger: logging.Logger, operation: str, exception: Exception
):
    """Roll back and log a storage failure, then re-raise it unchanged"""
    await db.rollback()
    logger.error(f"Database error during {operation}: {str(exception)}", exc_info=True)
    raise exception
