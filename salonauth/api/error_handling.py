from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from salonauth.api.schemas import Envelope, ErrorBody
from salonauth.logging import get_logger, sanitize_error_message
from salonauth.service.errors import ServiceError

logger = get_logger(__name__)

# stable error codes keyed by HTTP status
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    error_type: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    error_body = ErrorBody(
        code=code or _error_code_for_status(status_code),
        type=error_type,
        message=sanitize_error_message(message) if status_code >= 500 else message,
        details=details,
    )
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def _log_failure(request: Request, event: str, status_code: int, **fields) -> None:
    # full message only for server-side failures; client errors log the variant
    if status_code >= 500:
        logger.error(event, path=request.url.path, method=request.method, status_code=status_code, **fields)
    else:
        fields.pop("message", None)
        logger.warning(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as an error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_failure(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            error_type=exc.error_type,
            message=exc.message,
        )
        return _error_response(
            exc.status_code,
            exc.message,
            exc.detail or None,
            code=exc.error_code,
            error_type=exc.error_type,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {
                "loc": [str(part) for part in err.get("loc", ())],
                "msg": err.get("msg", ""),
                "type": err.get("type", ""),
            }
            for err in exc.errors()
        ]
        _log_failure(request, "request_validation_failed", 400, error_count=len(errors))
        return _error_response(400, "Invalid request data", errors, error_type="VALIDATION_ERROR")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        error = exc.detail.get("error") if isinstance(exc.detail, dict) else None
        if isinstance(error, dict):
            # envelope already built by routes._http_error()
            _log_failure(
                request,
                "http_error",
                exc.status_code,
                error_code=error.get("code"),
                error_type=error.get("type"),
                message=error.get("message"),
            )
            return _error_response(
                exc.status_code,
                error.get("message", "http error"),
                error.get("details"),
                code=error.get("code"),
                error_type=error.get("type"),
                headers=exc.headers,
            )
        # raised by the router itself: unknown path, wrong method
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            _log_failure(request, "http_error", exc.status_code, message=message)
        return _error_response(exc.status_code, message, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "Internal server error", error_type="INTERNAL_ERROR")
