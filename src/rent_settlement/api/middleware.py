"""FastAPI middleware for request tracing, error handling, and CORS.

Middleware stack (applied bottom-up):
    1. RequestIDMiddleware — injects X-Request-ID into every request/response
    2. ErrorHandlerMiddleware — catches domain exceptions -> structured JSON errors
    3. CORSMiddleware — handles browser-based dashboards
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from rent_settlement.domain.exceptions import (
    AgreementNotFoundError,
    AlreadyInitializedError,
    DuplicateSubmissionError,
    FatalLedgerRejectionError,
    InvalidAmountError,
    InvalidStateTransitionError,
    PaymentRecordNotFoundError,
    RetryableNetworkError,
    SettlementError,
    UnauthorizedError,
)
from rent_settlement.logging_config import bind_request, get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = get_logger(__name__)

# Checked in order; the first matching class wins.
_STATUS_BY_ERROR: list[tuple[type[SettlementError], int]] = [
    (UnauthorizedError, 403),
    (AgreementNotFoundError, 404),
    (PaymentRecordNotFoundError, 404),
    (InvalidStateTransitionError, 409),
    (AlreadyInitializedError, 409),
    (DuplicateSubmissionError, 409),
    (InvalidAmountError, 422),
    (FatalLedgerRejectionError, 502),
    (RetryableNetworkError, 503),
]


def status_for(exc: SettlementError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 400


# ---------------------------------------------------------------------------
# 1. Request ID Middleware
# ---------------------------------------------------------------------------
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Inject a unique X-Request-ID into every request for log correlation."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        bind_request(request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# 2. Error Handler Middleware
# ---------------------------------------------------------------------------
class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch domain exceptions and return structured JSON error responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except SettlementError as exc:
            status_code = status_for(exc)
            log = logger.error if status_code >= 500 else logger.warning
            log("request.domain_error", code=exc.code, error=exc.message, status=status_code)
            content = {"error": exc.code, "message": exc.message}
            if isinstance(exc, RetryableNetworkError):
                content["retryable"] = True
                content["outcome_unknown"] = exc.unknown_outcome
            return JSONResponse(status_code=status_code, content=content)
        except Exception as exc:
            logger.exception("unhandled.error", error=str(exc))
            return JSONResponse(
                status_code=500,
                content={
                    "error": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred",
                },
            )


# ---------------------------------------------------------------------------
# Setup function
# ---------------------------------------------------------------------------
def setup_middleware(app: FastAPI) -> None:
    """Register all middleware on the FastAPI application.

    Order matters — middleware is applied bottom-up, so the last added
    middleware runs first.
    """
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestIDMiddleware)
