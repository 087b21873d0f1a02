"""
Error Handling
==============

Standardized error codes, billing domain exceptions and exception handlers.

Two families live here:

* ``BillingError`` and subclasses are raised inside the reconciliation
  pipeline (verifier, receipt validator, event store, state machine).
  They carry an ``ErrorCodes`` value but know nothing about HTTP.
* ``AppException`` and subclasses are HTTP-facing and rendered through the
  ``{"success": false, "error": {...}}`` envelope.
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Standardized error codes."""

    # Authentication
    AUTH_INVALID_TOKEN = "AUTH_005"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    # Webhooks
    WEBHOOK_SIGNATURE_INVALID = "WEBHOOK_001"
    WEBHOOK_PAYLOAD_MALFORMED = "WEBHOOK_002"
    WEBHOOK_DUPLICATE = "WEBHOOK_003"

    # Receipts
    RECEIPT_MALFORMED_FORMAT = "RECEIPT_MALFORMED_FORMAT"
    RECEIPT_ENVIRONMENT_MISMATCH = "RECEIPT_ENVIRONMENT_MISMATCH"
    RECEIPT_INVALID = "RECEIPT_INVALID"

    # Providers
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    PROVIDER_REJECTED = "PROVIDER_REJECTED"

    # Reconciliation
    FACT_MALFORMED = "FACT_001"
    FACT_ILLEGAL_TRANSITION = "FACT_002"
    RECORD_NOT_FOUND = "FACT_003"
    OWNERSHIP_CONFLICT = "FACT_004"

    # Subscription actions (SUB_001 - SUB_010)
    SUB_INVALID_CYCLE = "SUB_001"
    SUB_PAYMENT_FAILED = "SUB_002"
    SUB_ALREADY_ACTIVE = "SUB_003"
    SUB_NO_ACTIVE_SUB = "SUB_004"
    SUB_ALREADY_CANCELLED = "SUB_005"
    SUB_SAME_CYCLE = "SUB_006"
    SUB_MANAGED_BY_STORE = "SUB_007"

    # Refunds (REFUND_001 - REFUND_010)
    REFUND_NO_TRANSACTION = "REFUND_001"
    REFUND_WINDOW_EXPIRED = "REFUND_002"
    REFUND_ALREADY_REQUESTED = "REFUND_003"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"


# =============================================================================
# Billing Domain Exceptions
# =============================================================================

class BillingError(Exception):
    """Base exception for the reconciliation pipeline."""

    code = ErrorCodes.INTERNAL_ERROR

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class AuthenticityError(BillingError):
    """Notification failed signature, tolerance or shape checks."""

    code = ErrorCodes.WEBHOOK_SIGNATURE_INVALID


class DuplicateEventError(BillingError):
    """The (provider, event id) pair was already claimed."""

    code = ErrorCodes.WEBHOOK_DUPLICATE


class MalformedFactError(BillingError):
    """A fact cannot be applied to the record it targets."""

    code = ErrorCodes.FACT_MALFORMED


class RecordNotFoundError(MalformedFactError):
    """No subscription record could be resolved for a fact."""

    code = ErrorCodes.RECORD_NOT_FOUND


class OwnershipConflictError(BillingError):
    """An action targets a subscription owned by a different provider."""

    code = ErrorCodes.OWNERSHIP_CONFLICT


class ProviderUnavailableError(BillingError):
    """Transient provider failure; the caller may retry later."""

    code = ErrorCodes.PROVIDER_UNAVAILABLE


class ReceiptInvalidError(BillingError):
    """Apple rejected the receipt or it belongs to another app."""

    code = ErrorCodes.RECEIPT_INVALID


class ReceiptFormatError(ReceiptInvalidError):
    """
    Receipt blob rejected locally, before any network call.

    ``kind`` is ``wrong_token_type`` or ``invalid_encoding``.
    """

    code = ErrorCodes.RECEIPT_MALFORMED_FORMAT

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind


class EnvironmentMismatchError(ReceiptInvalidError):
    """Sandbox/production mismatch persisted after the single retry."""

    code = ErrorCodes.RECEIPT_ENVIRONMENT_MISMATCH


class ProrationError(BillingError):
    """A billing-cycle change cannot be priced."""

    code = ErrorCodes.SUB_SAME_CYCLE


# =============================================================================
# HTTP Exceptions
# =============================================================================

class AppException(HTTPException):
    """Base application exception with structured error response."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        field: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        **extra,
    ):
        self.code = code
        self.field = field
        self.extra = extra

        detail = {
            "code": code,
            "message": message,
        }

        if field:
            detail["field"] = field

        detail.update(extra)

        super().__init__(status_code=status_code, detail=detail, headers=headers)


class AuthenticationError(AppException):
    """Authentication-related errors."""

    def __init__(
        self,
        code: str = ErrorCodes.AUTH_INVALID_TOKEN,
        message: str = "Authentication failed",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=code,
            message=message,
            headers={"WWW-Authenticate": "Bearer"},
            **extra,
        )


class PaymentRequiredError(AppException):
    """Card declined or payment otherwise refused by the provider."""

    def __init__(
        self,
        code: str = ErrorCodes.SUB_PAYMENT_FAILED,
        message: str = "Payment failed",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            code=code,
            message=message,
            **extra,
        )


class NotFoundError(AppException):
    """Resource not found errors."""

    def __init__(
        self,
        code: str = ErrorCodes.NOT_FOUND,
        message: str = "Resource not found",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code=code,
            message=message,
            **extra,
        )


class ConflictError(AppException):
    """Resource conflict errors."""

    def __init__(
        self,
        code: str,
        message: str,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            code=code,
            message=message,
            **extra,
        )


class ForbiddenError(AppException):
    """Permission errors."""

    def __init__(
        self,
        code: str = ErrorCodes.FORBIDDEN,
        message: str = "Access denied",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            code=code,
            message=message,
            **extra,
        )


class ValidationError(AppException):
    """Validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        code: str = ErrorCodes.VALIDATION_ERROR,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=code,
            message=message,
            field=field,
            **extra,
        )


class ServiceUnavailableError(AppException):
    """External service unavailable errors."""

    def __init__(
        self,
        code: str = ErrorCodes.PROVIDER_UNAVAILABLE,
        message: str = "Service temporarily unavailable",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code=code,
            message=message,
            **extra,
        )


# =============================================================================
# Exception Handlers
# =============================================================================

async def app_exception_handler(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    """Handler for AppException."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
        },
        headers=exc.headers,
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException,
) -> JSONResponse:
    """Handler for standard HTTPException."""
    # Check if detail is already structured
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        error = exc.detail
    else:
        error = {
            "code": "HTTP_ERROR",
            "message": str(exc.detail),
        }

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": error,
        },
    )


async def validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for request validation errors."""
    errors = exc.errors() if hasattr(exc, "errors") else []
    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", []))
        message = first_error.get("msg", "Validation error")
    else:
        field = None
        message = str(exc) or "Validation error"

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.VALIDATION_ERROR,
                "message": message,
                "field": field,
            },
        },
    )


async def global_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.error(
        "Unhandled error on %s %s: %s: %s",
        request.method,
        request.url.path,
        type(exc).__name__,
        exc,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.INTERNAL_ERROR,
                "message": "An unexpected error occurred",
            },
        },
    )


def setup_exception_handlers(app):
    """
    Register exception handlers with FastAPI app.

    Usage:
        from app.core.errors import setup_exception_handlers
        setup_exception_handlers(app)
    """
    from pydantic import ValidationError as PydanticValidationError
    from fastapi.exceptions import RequestValidationError

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PydanticValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
