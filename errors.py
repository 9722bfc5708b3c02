"""
Course Correct error taxonomy

Checkers and route handlers raise these; the handlers installed by
`register_error_handlers` render every failure as ``{"message", "code"}`` JSON.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class DomainError(Exception):
    """Base class for errors produced by explicit validation."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.headers = headers
        super().__init__(message)

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            {"message": self.message, "code": self.code},
            status_code=self.status_code,
            headers=self.headers,
        )


class InvalidRequest(DomainError):
    """Malformed ids, impossible time ranges, unknown status values."""

    status_code = status.HTTP_400_BAD_REQUEST


class Unauthorized(DomainError):
    status_code = status.HTTP_401_UNAUTHORIZED


class Forbidden(DomainError):
    """Wrong role, or wrong party for the action."""

    status_code = status.HTTP_403_FORBIDDEN


class NotFound(DomainError):
    status_code = status.HTTP_404_NOT_FOUND


class Conflict(DomainError):
    """Time-ordering, booking-overlap and membership violations."""

    status_code = status.HTTP_400_BAD_REQUEST


class InternalError(DomainError):
    pass


def _body(message: str, code: str, errors: Optional[Any] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"message": message, "code": code}
    if errors is not None:
        body["errors"] = errors
    return body


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return exc.to_response()

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return JSONResponse(
            _body(message, "http_error"),
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            _body("Invalid request", "validation_error", jsonable_encoder(exc.errors())),
            status_code=422,
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(_body("Server error", "internal_error"), status_code=500)
