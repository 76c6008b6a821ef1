from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from moodcircle.api.schemas import Envelope, ErrorBody
from moodcircle.logging import get_logger, sanitize_error_message
from moodcircle.service.errors import ErrorKind, RateLimitedError, ServiceError

logger = get_logger(__name__)

# Status is chosen by error kind alone, never by message text
_KIND_TO_STATUS = {
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.INVALID_CODE: 401,
    ErrorKind.NO_TOKEN: 401,
    ErrorKind.TOKEN_EXPIRED: 401,
    ErrorKind.TOKEN_INVALID: 401,
    ErrorKind.DEPENDENCY_FAILURE: 503,
}

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "token_invalid",
    404: "not_found",
    429: "rate_limited",
    500: "server_error",
    503: "dependency_failure",
}


def status_for_kind(kind: ErrorKind) -> int:
    return _KIND_TO_STATUS[kind]


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(), headers=headers
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-shaped handlers for service, validation and HTTP errors."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        status_code = status_for_kind(exc.kind)
        log_fn = logger.error if status_code >= 500 else logger.warning
        # detail is operator context; it is logged but never returned
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=status_code,
            error_code=exc.error_code,
            detail=exc.detail,
        )
        details = None
        headers = None
        if isinstance(exc, RateLimitedError):
            details = {"minutes_remaining": exc.minutes_remaining}
            headers = {"Retry-After": str(exc.minutes_remaining * 60)}
        return _error_response(
            status_code, exc.message, details, code=exc.error_code, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = [
            ".".join(str(part) for part in err.get("loc", ()) if part != "body")
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=fields,
        )
        return _error_response(
            400, "invalid request", {"fields": fields}, code="validation_error"
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        elif exc.status_code >= 400:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return _error_response(500, "internal server error", code="server_error")
