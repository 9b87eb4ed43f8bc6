from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger


class AppError(Exception):
    """Base class for failures that are reported to the caller as structured JSON."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: str = "Internal"

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.error, "message": self.message, **self.extra}


class ValidationFailed(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "ValidationFailed"


class Unauthenticated(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "Unauthenticated"


class SessionExpired(Unauthenticated):
    error = "SessionExpired"


class Forbidden(AppError):
    """Raised when a role or permission gate rejects the caller."""

    status_code = status.HTTP_403_FORBIDDEN
    error = "Forbidden"


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "NotFound"


class Conflict(AppError):
    status_code = status.HTTP_409_CONFLICT
    error = "Conflict"


def _format_validation_error(err: dict[str, Any]) -> str:
    """Renders one pydantic error entry as `"<field path>" <message>`."""
    location = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
    field = ".".join(location) or "request"
    return f'"{field}" {err.get("msg", "is invalid")}'


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Converts domain failures into their HTTP status and JSON body."""
    if exc.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error(f"{exc.error}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected with {exc.status_code} {exc.error}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Reports malformed bodies, params and queries as a 400 with field-level details."""
    details = [_format_validation_error(err) for err in exc.errors()]
    logger.info(f"Validation failed for {request.method} {request.url.path}: {details}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "status": "error",
            "type": "ValidationFailed",
            "message": "Invalid data submitted. See details for errors",
            "details": details,
        },
    )
