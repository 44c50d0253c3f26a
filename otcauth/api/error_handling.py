from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from otcauth.api.schemas import Envelope, ErrorBody
from otcauth.logging import get_logger
from otcauth.service.errors import RateLimitedError, ServiceError
from otcauth.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    503: "service_unavailable",
}


def _request_fields(request: Request) -> Dict[str, str]:
    return {"path": request.url.path, "method": request.method}


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    *,
    code: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Render the error envelope; unknown statuses map to ``server_error``."""
    body = ErrorBody(
        code=code or _STATUS_TO_CODE.get(status_code, "server_error"),
        message=message,
        details=details,
    )
    return JSONResponse(
        status_code=status_code,
        content=Envelope(status="error", error=body).model_dump(mode="json"),
        headers=headers,
    )


def _retry_after_header(exc: ServiceError) -> Optional[Dict[str, str]]:
    if isinstance(exc, RateLimitedError) and exc.retry_after > 0:
        return {"Retry-After": str(exc.retry_after)}
    return None


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "service_error",
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            **_request_fields(request),
        )
        return _error_response(
            exc.status_code,
            exc.message,
            exc.detail or None,
            code=exc.error_code,
            headers=_retry_after_header(exc),
        )

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(
            "store_unavailable", backend=exc.backend, error=exc.message, **_request_fields(request)
        )
        return _error_response(503, "storage unavailable", code="service_unavailable")

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning("constraint_violation", message=exc.message, **_request_fields(request))
        return _error_response(409, exc.message, exc.detail or None, code="conflict")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        # FastAPI's 422 is reported as a plain 400 validation error
        problems = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        logger.warning("request_validation_error", **_request_fields(request))
        return _error_response(400, "invalid request", problems, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        detail = exc.detail
        error = detail.get("error") if isinstance(detail, dict) else None
        if isinstance(error, dict):
            message = error.get("message", "http error")
            code = error.get("code")
            details = error.get("details")
        else:
            message = detail if isinstance(detail, str) else "http error"
            code = None
            details = None
        if exc.status_code >= 500:
            logger.error(
                "http_error", status_code=exc.status_code, message=message, **_request_fields(request)
            )
        return _error_response(
            exc.status_code, message, details, code=code, headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            error_type=type(exc).__name__,
            **_request_fields(request),
        )
        return _error_response(500, "internal server error", code="server_error")
