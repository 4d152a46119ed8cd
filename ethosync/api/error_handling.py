from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ethosync.api.schemas import ErrorBody
from ethosync.logging import get_logger, sanitize_error_message
from ethosync.service.errors import ServiceError
from ethosync.storage.errors import ConstraintViolation, TenantStoreError, TenantUnavailable

logger = get_logger(__name__)


def _error_response(
    status_code: int,
    message: str,
    details: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """Render the ``{"error", "details"?}`` envelope plus any extra top-level keys."""
    body = ErrorBody(error=message, details=details, **(extra or {}))
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", exclude_none=True),
    )


def _describe_validation_errors(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        message = err.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope handlers for domain, storage and framework errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        details = exc.detail if isinstance(exc.detail, str) else None
        return _error_response(409, exc.message, details)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            message=exc.message,
            details=exc.details,
        )
        return _error_response(exc.status_code, exc.message, exc.details, exc.extra)

    @app.exception_handler(TenantUnavailable)
    async def handle_tenant_unavailable(request: Request, exc: TenantUnavailable):
        logger.error(
            "tenant_store_unavailable",
            path=request.url.path,
            method=request.method,
            error=str(exc),
        )
        return _error_response(
            503, "Database connection failed", sanitize_error_message(str(exc))
        )

    @app.exception_handler(TenantStoreError)
    async def handle_tenant_store_error(request: Request, exc: TenantStoreError):
        logger.error(
            "tenant_store_error",
            path=request.url.path,
            method=request.method,
            error=str(exc),
        )
        return _error_response(500, "Database operation failed", sanitize_error_message(str(exc)))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _describe_validation_errors(exc)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            details=details,
        )
        return _error_response(400, "Invalid request", details or None)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict) and "error" in exc.detail:
            message = str(exc.detail["error"])
            details = exc.detail.get("details")
        else:
            message = str(exc.detail) if exc.detail else "HTTP error"
            details = None
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
        response = _error_response(
            exc.status_code, message, str(details) if details is not None else None
        )
        for name, value in (exc.headers or {}).items():
            response.headers[name] = value
        return response

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "Internal server error")
