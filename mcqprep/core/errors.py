"""
Error taxonomy for the billing engine and the FastAPI handlers that render it.

Every error reaches clients as
{"error": {"code", "message", "request_id"}, "detail": message}; some classes
add fields (retryable for provider failures, the prior result for conflicts).
"""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from mcqprep.core.logging import get_request_id

logger = logging.getLogger("mcqprep")


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None,
                 request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.code
        self.status_code = status_code or self.status_code
        self.request_id = request_id

    def public_message(self) -> str:
        return self.message

    def public_fields(self) -> Dict[str, Any]:
        """Extra top-level fields merged into the response body."""
        return {}


class ValidationError(AppError, ValueError):
    """Malformed or missing required fields. No state change."""
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class AuthenticityError(AppError):
    """Webhook signature missing, malformed or not matching."""
    code = "authenticity_error"
    status_code = 400


class ProviderError(AppError):
    """An external payment-provider call failed or returned an error status."""
    code = "provider_error"
    status_code = 502

    def __init__(self, message: str, *, retryable: bool = False, provider: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retryable = retryable
        self.provider = provider

    def public_message(self) -> str:
        if self.retryable:
            return f"{self.message}. Please try again in a moment."
        return self.message


class ReconciliationGap(AppError):
    """Payment was confirmed by the provider but no entitlement was recorded.

    The internal message is for operators only; clients see a generic
    "confirming your payment" state.
    """
    code = "payment_pending_confirmation"
    status_code = 500

    def __init__(self, message: str, *, user_id: Optional[str] = None, provider: Optional[str] = None,
                 provider_subscription_id: Optional[str] = None, alert_id: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.user_id = user_id
        self.provider = provider
        self.provider_subscription_id = provider_subscription_id
        self.alert_id = alert_id

    def public_message(self) -> str:
        return "We're confirming your payment. Your access will be enabled shortly."


class ConflictError(AppError):
    """Duplicate submission or event; carries the previously recorded result."""
    code = "conflict"
    status_code = 409

    def __init__(self, message: str, *, prior_result: Optional[Dict[str, Any]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.prior_result = prior_result

    def public_fields(self) -> Dict[str, Any]:
        return dict(self.prior_result or {})


class AdminAuditWriteError(AppError):
    code = "admin_audit_failed"
    status_code = 500


def _request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def _error_response(
    request_id: str,
    status_code: int,
    code: str,
    message: str,
    *,
    error_fields: Optional[Dict[str, Any]] = None,
    body_fields: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    error = {"code": code, "message": message, "request_id": request_id}
    error.update(error_fields or {})
    content: Dict[str, Any] = {"error": error, "detail": message}
    content.update(body_fields or {})
    response = JSONResponse(status_code=status_code, content=content, headers=headers)
    response.headers["x-request-id"] = request_id
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id_for(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    error_fields = {"retryable": exc.retryable} if isinstance(exc, ProviderError) else None
    return _error_response(
        rid,
        exc.status_code,
        exc.code,
        exc.public_message(),
        error_fields=error_fields,
        body_fields=exc.public_fields(),
    )


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _request_id_for(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _error_response(
        rid,
        exc.status_code,
        code,
        exc.detail or "HTTP error",
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id_for(request)
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    return _error_response(rid, 500, "internal_error", "Unexpected error")
