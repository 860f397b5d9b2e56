"""Domain errors and the standardized JSON error envelope."""
from typing import Any

import sentry_sdk
import structlog
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error envelope returned by all API error handlers."""
    error: str
    message: str
    detail: Any = None
    retryable: bool = False
    request_id: str = "unknown"

logger = structlog.get_logger()


# ── Domain error taxonomy ─────────────────────────────────────────────────────


class DomainError(Exception):
    """Base for every typed failure the token sale and distribution flows raise.

    ``code`` is stable and machine readable, ``status_code`` is what the API
    answers with, and ``retryable`` tells the caller whether re-invoking the
    same operation may succeed.
    """

    code = "domain_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or None


# Validation — rejected before any mutation


class InvalidAmount(DomainError):
    code = "invalid_amount"
    status_code = 422


# Preconditions — rejected after a read-only check


class ProjectNotFound(DomainError):
    code = "project_not_found"
    status_code = 404


class ProjectNotActive(DomainError):
    code = "project_not_active"
    status_code = 409


class InsufficientSupply(DomainError):
    code = "insufficient_supply"
    status_code = 409


class NotReady(DomainError):
    code = "not_ready"
    status_code = 409

    def __init__(self, reason: str, **detail: Any) -> None:
        super().__init__(reason, **detail)
        self.reason = reason


class AlreadyDistributed(DomainError):
    code = "already_distributed"
    status_code = 409


class NotProjectOwner(DomainError):
    code = "not_project_owner"
    status_code = 403


# Contention — lost a race, safe to retry


class ContentionError(DomainError):
    code = "contention"
    status_code = 409
    retryable = True


# External ledger


class LedgerError(DomainError):
    code = "ledger_error"
    status_code = 502


class LedgerUnavailable(LedgerError):
    """Transient: unreachable, timed out, or not configured."""

    code = "ledger_unavailable"
    status_code = 503
    retryable = True


class LedgerRejected(LedgerError):
    """Permanent: the ledger refused the record; never retried automatically."""

    code = "ledger_rejected"
    status_code = 502


# Data integrity


class ConsistencyViolation(DomainError):
    code = "consistency_violation"
    status_code = 500


# ── Handlers ──────────────────────────────────────────────────────────────────


async def domain_exception_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Render a DomainError with its specific code and retry hint."""
    request_id = request.headers.get("x-request-id", "unknown")

    if isinstance(exc, ConsistencyViolation):
        logger.error(
            "consistency_violation",
            error=exc.message,
            detail=exc.detail,
            path=request.url.path,
            request_id=request_id,
        )
        sentry_sdk.capture_exception(exc)
    else:
        logger.info(
            "domain_error",
            error=exc.code,
            message=exc.message,
            path=request.url.path,
            request_id=request_id,
        )

    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=exc.code,
            message=exc.message,
            detail=exc.detail,
            retryable=exc.retryable,
            request_id=request_id,
        ).model_dump(mode="json"),
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch unhandled exceptions and return a consistent JSON envelope."""
    request_id = request.headers.get("x-request-id", "unknown")

    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        request_id=request_id,
    )

    sentry_sdk.capture_exception(exc)

    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred. Our team has been notified.",
            "request_id": request_id,
        },
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Standardize HTTPException responses into the same JSON envelope."""
    request_id = request.headers.get("x-request-id", "unknown")

    if isinstance(exc.detail, dict):
        error = exc.detail.get("error", f"http_{exc.status_code}")
        message = exc.detail.get("message", str(exc.detail))
        detail: Any = exc.detail.get("detail")
    else:
        error = f"http_{exc.status_code}"
        message = str(exc.detail)
        detail = exc.detail

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": error,
            "message": message,
            "detail": detail,
            "request_id": request_id,
        },
        headers=dict(exc.headers or {}),
    )
