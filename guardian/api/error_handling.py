from __future__ import annotations

from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from guardian.api.schemas import Envelope, ErrorBody
from guardian.logging import get_correlation_id, get_logger
from guardian.service.errors import AuthDeniedError, Denied, ErrorCategory, ErrorKind, status_hint
from guardian.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
    503: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    error_body = ErrorBody(code=code or _error_code_for_status(status_code), message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    if get_correlation_id():
        envelope.request_id = get_correlation_id()
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


# Callers must not learn whether the account or the password was wrong
_MERGED_REASONS = {
    ErrorKind.USER_NOT_FOUND: "invalid_credentials",
    ErrorKind.INVALID_PASSWORD: "invalid_credentials",
}


def denied_response(denied: Denied) -> JSONResponse:
    """Translate a core refusal into an HTTP error envelope."""
    status_code = status_hint(denied.kind)
    headers = None
    details = {"reason": _MERGED_REASONS.get(denied.kind, denied.kind.value)}
    if denied.category == ErrorCategory.RATE_LIMIT:
        headers = {"Retry-After": str(max(1, denied.retry_after_seconds))}
        details["retry_after"] = denied.retry_after_seconds
    return _error_response(status_code, denied.public_message, details, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AuthDeniedError)
    async def handle_auth_denied(request: Request, exc: AuthDeniedError):
        denied = exc.denied
        log_fn = logger.error if denied.category == ErrorCategory.INFRASTRUCTURE else logger.info
        log_fn(
            "auth_denied",
            path=request.url.path,
            method=request.method,
            kind=denied.kind.value,
        )
        return denied_response(denied)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
        )
        return _error_response(409, exc.message, code="conflict")

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            backend=exc.backend,
        )
        return _error_response(503, "service temporarily unavailable", code="server_error")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        return _error_response(400, "invalid request", errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            details = error_obj.get("details")
        else:
            message = str(exc.detail) if exc.detail else "http error"
            code = None
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
                error_code=code,
                message=message,
            )
        return _error_response(exc.status_code, message, details, code=code, headers=exc.headers)

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
        return _error_response(500, "internal server error", code="server_error")
