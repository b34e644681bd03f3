"""
Error taxonomy and the JSON envelope every failure is rendered with.

Failures are raised as RelayError subclasses by the components and turned
into {"success": false, "error": ..., "code": ...} at the HTTP boundary.
"""
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)


class ErrorCodes:
    VALIDATION_ERROR = "VALIDATION_ERROR"
    MISSING_FIELD = "MISSING_FIELD"
    INVALID_AMOUNT = "INVALID_AMOUNT"

    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"

    NOT_FOUND = "NOT_FOUND"
    VENDOR_NOT_FOUND = "VENDOR_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    CUSTOMER_NOT_FOUND = "CUSTOMER_NOT_FOUND"
    PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"
    INSTRUMENT_NOT_FOUND = "INSTRUMENT_NOT_FOUND"

    DUPLICATE_EMAIL = "DUPLICATE_EMAIL"
    ALREADY_FINALIZED = "ALREADY_FINALIZED"
    PAYMENT_EXPIRED = "PAYMENT_EXPIRED"

    CHARGE_DECLINED = "CHARGE_DECLINED"
    INVALID_METHOD = "INVALID_METHOD"
    BILLING_PROFILE_ERROR = "BILLING_PROFILE_ERROR"
    SMS_DELIVERY_FAILED = "SMS_DELIVERY_FAILED"

    OTP_NOT_REQUESTED = "OTP_NOT_REQUESTED"
    OTP_EXPIRED = "OTP_EXPIRED"
    OTP_MISMATCH = "OTP_MISMATCH"
    OTP_ATTEMPTS_EXCEEDED = "OTP_ATTEMPTS_EXCEEDED"

    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"


class RelayError(Exception):
    """Base class for every expected failure of the relay."""

    status_code = 400
    default_code = ErrorCodes.VALIDATION_ERROR

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code or self.default_code
        super().__init__(message)


class ValidationError(RelayError):
    status_code = 400
    default_code = ErrorCodes.VALIDATION_ERROR


class AuthError(RelayError):
    status_code = 401
    default_code = ErrorCodes.UNAUTHORIZED


class NotFoundError(RelayError):
    status_code = 404
    default_code = ErrorCodes.NOT_FOUND


class ConflictError(RelayError):
    status_code = 409
    default_code = ErrorCodes.ALREADY_FINALIZED


class ExternalServiceError(RelayError):
    """A card processor, billing-profile or SMS call failed upstream."""

    status_code = 502
    default_code = ErrorCodes.CHARGE_DECLINED


def error_envelope(message: str, code: str) -> dict:
    return {"success": False, "error": message, "code": code}


async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    logger.warning(
        "request_failed",
        path=request.url.path,
        code=exc.code,
        status_code=exc.status_code,
        error=exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=error_envelope(exc.message, exc.code))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Invalid request"
    return JSONResponse(status_code=422, content=error_envelope(message, ErrorCodes.VALIDATION_ERROR))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", path=request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=error_envelope("Internal server error", ErrorCodes.INTERNAL_SERVER_ERROR),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RelayError, relay_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
