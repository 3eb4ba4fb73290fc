import logging
import uuid

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.core.logging import request_id_var

logger = logging.getLogger(__name__)


class AdaptiveEngineError(Exception):
    """Base class for errors raised by the skill-profile engine."""

    code = "engine_error"
    status_code = 500

    def __init__(self, message: str, *, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(AdaptiveEngineError):
    """Referenced student or concept does not exist."""

    code = "not_found"
    status_code = 404


class ValidationError(AdaptiveEngineError):
    """Malformed input at the ledger / query boundary."""

    code = "validation_error"
    status_code = 422


class ConcurrencyConflictError(AdaptiveEngineError):
    """An optimistic profile write targeted a stale version."""

    code = "concurrency_conflict"
    status_code = 409


class StorageError(AdaptiveEngineError):
    """I/O failure in the ledger or the profile store."""

    code = "storage_error"
    status_code = 503


class AppendOnlyViolationError(AdaptiveEngineError):
    """Something tried to update or delete a ledger row."""

    code = "append_only_violation"
    status_code = 409


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    status_code: int,
    details=None,
) -> JSONResponse:
    payload = {
        "success": False,
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
            "details": details,
        },
    }
    return JSONResponse(status_code=status_code, content=payload)


async def http_exception_handler(request: Request, exc: HTTPException):
    return error_response(
        request,
        code="http_error",
        message=str(exc.detail),
        status_code=exc.status_code,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return error_response(
        request,
        code="validation_error",
        message="Request validation failed",
        status_code=422,
        details=exc.errors(),
    )


async def engine_exception_handler(request: Request, exc: AdaptiveEngineError):
    if exc.status_code >= 500:
        logger.error("Engine error | request_id=%s | %s: %s", get_request_id(request), exc.code, exc.message)
    return error_response(
        request,
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details or None,
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception | request_id=%s", get_request_id(request), exc_info=exc)
    return error_response(
        request,
        code="internal_error",
        message="Internal server error",
        status_code=500,
    )


async def request_id_middleware(request: Request, call_next):
    incoming = request.headers.get("x-request-id")
    request.state.request_id = incoming or str(uuid.uuid4())
    token = request_id_var.set(request.state.request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)
    response.headers["x-request-id"] = request.state.request_id
    return response
