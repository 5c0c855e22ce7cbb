"""Error normalization and handlers."""

import logging
from datetime import datetime
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from charachat.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500
    details: Optional[dict] = None

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class InsufficientCreditsError(AppError):
    """A debit would take the account balance below zero."""
    code = "insufficient_credits"
    status_code = 402

    def __init__(self, balance: int, required: int, message: str = "Insufficient credits"):
        super().__init__(message)
        self.balance = balance
        self.required = required
        self.details = {"balance": balance, "required": required}


class AlreadyClaimedError(ConflictError):
    """A once-per-day reward has already been granted today."""
    code = "already_claimed"

    def __init__(self, message: str, *, can_claim_at: Optional[datetime] = None):
        super().__init__(message)
        self.can_claim_at = can_claim_at
        if can_claim_at:
            self.details = {"can_claim_at": can_claim_at.isoformat()}


class LedgerConflictError(ConflictError):
    """Another writer advanced the account's ledger first. Nothing was written."""
    code = "ledger_conflict"


class PlanNotFoundError(NotFoundError):
    code = "plan_not_found"


class NoActiveSubscriptionError(NotFoundError):
    code = "no_active_subscription"


class MissingSeedDataError(AppError):
    """Reference data (plans, service costs) was never seeded."""
    code = "missing_seed_data"
    status_code = 500


logger = logging.getLogger("charachat.errors")


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def _error_response(
    rid: str,
    status_code: int,
    code: str,
    message: str,
    details: Optional[dict] = None,
) -> JSONResponse:
    """Body shape shared by every handler: {"error": {...}, "detail": message}."""
    error = {"code": code, "message": message, "request_id": rid}
    if details:
        error.update(details)
    response = JSONResponse(status_code=status_code, content={"error": error, "detail": message})
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return _error_response(rid, exc.status_code, exc.code, exc.message, exc.details)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _error_response(rid, exc.status_code, code, exc.detail or "HTTP error")


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id(request)
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    return _error_response(rid, 500, "internal_error", "Unexpected error")
