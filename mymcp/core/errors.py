"""Error taxonomy and FastAPI handlers.

Client errors (validation, not found, quota, conflict) are expected control
flow. Orchestrator failures are retryable server errors; configuration
errors are fatal and need an operator.
"""

import logging
from typing import Dict, Optional
from uuid import uuid4

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request

from mymcp.core.logging import get_request_id

logger = logging.getLogger("mymcp")

_HTTP_CODES = {401: "unauthorized", 403: "forbidden", 404: "not_found", 405: "method_not_allowed"}


class AppError(Exception):
    code = "app_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    """Missing entity, or one owned by another user (reported identically)."""
    code = "not_found"
    status_code = 404


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class OrchestratorError(AppError):
    """Container operation failed or timed out; nothing was persisted."""
    code = "orchestrator_error"
    status_code = 502
    retryable = True

    def __init__(self, message: str, *, operation: Optional[str] = None, timed_out: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.operation = operation
        self.timed_out = timed_out


class ConfigurationError(AppError):
    code = "configuration_error"
    status_code = 500


def _request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def error_body(code: str, message: str, request_id: str, retryable: bool = False) -> dict:
    """Envelope shared by every error response; `detail` mirrors FastAPI's default key."""
    return {
        "error": {"code": code, "message": message, "request_id": request_id, "retryable": retryable},
        "detail": message,
    }


def _render(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    *,
    retryable: bool = False,
    headers: Optional[Dict[str, str]] = None,
    exc_info: bool = False,
) -> JSONResponse:
    rid = _request_id_for(request)
    logger.log(
        logging.ERROR if status_code >= 500 else logging.WARNING,
        "request.failed",
        exc_info=exc_info,
        extra={
            "request_id": rid,
            "error_code": code,
            "status": status_code,
            "path": request.url.path,
        },
    )
    response = JSONResponse(
        status_code=status_code,
        content=error_body(code, message, rid, retryable),
        headers=headers,
    )
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    return _render(request, exc.status_code, exc.code, exc.message, retryable=exc.retryable)


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = _HTTP_CODES.get(exc.status_code, "http_error")
    return _render(
        request,
        exc.status_code,
        code,
        str(exc.detail or "HTTP error"),
        headers=getattr(exc, "headers", None),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = exc.errors()
    if problems:
        first = problems[0]
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{where}: {first.get('msg')}" if where else str(first.get("msg"))
    else:
        message = "Invalid request"
    return _render(request, 400, ValidationError.code, message)


async def unhandled_exception_handler(request: Request, exc: Exception):
    return _render(request, 500, "internal_error", "Unexpected error", exc_info=True)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
