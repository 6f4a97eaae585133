# src/utils/exception_handler.py
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, NoResultFound, SQLAlchemyError

from .exceptions import BaseAPIException, ConcurrentModificationException
from .logger import setup_logger

logger = setup_logger("EXCEPTION_HANDLER")

DEFAULT_MESSAGES = {
    status.HTTP_400_BAD_REQUEST: "Bad request",
    status.HTTP_404_NOT_FOUND: "Resource not found",
    status.HTTP_409_CONFLICT: "Conflict",
    status.HTTP_422_UNPROCESSABLE_ENTITY: "Validation error",
    status.HTTP_500_INTERNAL_SERVER_ERROR: "Internal server error",
}


def _error_response(
    status_code: int,
    message: Any,
    error_type: str,
    extra: Optional[Dict[str, Any]] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    content = {"message": message, "type": error_type, "status": status_code}
    if extra:
        content.update(extra)
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def setup_exception_handlers(app: FastAPI):
    """Render treatment errors as JSON bodies carrying kind, field and id"""

    @app.exception_handler(BaseAPIException)
    async def treatment_exception_handler(request: Request, exc: BaseAPIException):
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            logger.info(f"Not found: {exc.detail}")
        else:
            logger.warning(f"{exc.kind} error on {request.url.path}: {exc.detail}")

        extra = {"kind": exc.kind, "field": exc.field, "id": exc.resource_id}
        if isinstance(exc, ConcurrentModificationException):
            extra["retryable"] = exc.retryable
        return _error_response(
            exc.status_code, exc.detail, exc.__class__.__name__, extra, exc.headers
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        message = exc.detail or DEFAULT_MESSAGES.get(exc.status_code, "An error occurred")
        logger.warning(f"HTTP Exception {exc.status_code}: {message}")
        return _error_response(
            exc.status_code, message, "HTTPException", headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_exception_handler(request: Request, exc: SQLAlchemyError):
        logger.error(f"Database error: {str(exc)}", exc_info=True)

        if isinstance(exc, IntegrityError):
            status_code = status.HTTP_409_CONFLICT
            message = "Treatment record violates a storage constraint"
        elif isinstance(exc, NoResultFound):
            status_code = status.HTTP_404_NOT_FOUND
            message = DEFAULT_MESSAGES[status_code]
        else:
            status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
            message = "Database operation failed"
        return _error_response(status_code, message, "DatabaseError")

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unexpected error: {str(exc)}", exc_info=True)
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            DEFAULT_MESSAGES[status.HTTP_500_INTERNAL_SERVER_ERROR],
            "InternalServerError",
        )
