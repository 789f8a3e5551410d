"""Error taxonomy and normalized FastAPI handlers."""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from finplan.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class PaymentMethodRequiredError(ValidationError):
    code = "payment_method_required"


class UnauthenticatedError(AppError):
    code = "unauthenticated"
    status_code = 401


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    """A non-terminal subscription already exists for the user."""
    code = "conflict"
    status_code = 409


class ConcurrentModificationError(ConflictError):
    """The subscription row changed between read and write."""
    code = "concurrent_modification"


class InvalidStateError(AppError):
    """Transition is not legal from the subscription's current status."""
    code = "invalid_state"
    status_code = 409


class InvalidTransitionError(AppError):
    """Tier ordering forbids the requested upgrade/downgrade direction."""
    code = "invalid_transition"
    status_code = 400


class LimitExceededError(AppError):
    """Quota check failed for a resource kind."""
    status_code = 403

    def __init__(self, resource_kind, limit, current_count: int, plan_tier=None, message: Optional[str] = None):
        kind = getattr(resource_kind, "value", resource_kind)
        tier = getattr(plan_tier, "value", plan_tier)
        self.resource_kind = resource_kind
        self.limit = limit
        self.current_count = current_count
        self.plan_tier = plan_tier
        super().__init__(
            message or f"{kind.capitalize()} limit exceeded. Current plan allows {limit} {kind}s.",
            code=f"{kind}_limit_exceeded",
            details={
                "resource_kind": kind,
                "limit": getattr(limit, "cap", limit),
                "current_count": current_count,
                "plan_tier": tier,
                "upgrade_required": True,
            },
        )


class CapabilityRequiredError(AppError):
    code = "capability_required"
    status_code = 403


class PaymentFailedError(AppError):
    """The payment collaborator declined the charge, refund or plan change."""
    code = "payment_failed"
    status_code = 402


class InternalError(AppError):
    code = "internal_error"
    status_code = 500


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, details: Optional[Dict[str, Any]] = None) -> dict:
    error: Dict[str, Any] = {"code": code, "message": message, "request_id": request_id}
    if details:
        error["details"] = details
    return {
        "error": error,
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.details)
    logger = logging.getLogger("finplan")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("finplan")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    payload = _error_payload("validation_error", "Invalid request", rid, {"errors": exc.errors()})
    logging.getLogger("finplan").warning(
        "request.invalid", extra={"request_id": rid, "error_code": "validation_error", "status": 422}
    )
    response = JSONResponse(status_code=422, content=jsonable_encoder(payload))
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("finplan")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
