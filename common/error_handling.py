"""
Error taxonomy and standardized error responses for the reconciliation service
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel
import logging
import traceback
import time

logger = logging.getLogger(__name__)

class ErrorDetail(BaseModel):
    """Detailed error information"""
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class StandardErrorResponse(BaseModel):
    """Standard error response format"""
    success: bool = False
    error: ErrorDetail
    timestamp: float
    trace_id: Optional[str] = None
    retryable: bool = False

class ErrorCodes:
    """Standard error codes"""
    # Authentication & Authorization
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    INVALID_TOKEN = "INVALID_TOKEN"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_EVENT = "INVALID_EVENT"

    # Business Logic
    NOT_FOUND = "NOT_FOUND"
    CLASS_NOT_FOUND = "CLASS_NOT_FOUND"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"

    # System Errors
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    DATABASE_ERROR = "DATABASE_ERROR"

    # External Service Errors
    GATEWAY_ERROR = "GATEWAY_ERROR"
    GATEWAY_VALIDATION_ERROR = "GATEWAY_VALIDATION_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"

class BusinessLogicError(Exception):
    """Custom exception for business logic errors"""
    def __init__(self, code: str, message: str, field: str = None, context: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class ServiceError(Exception):
    """Custom exception for service-level errors"""
    def __init__(self, code: str, message: str, original_error: Exception = None):
        self.code = code
        self.message = message
        self.original_error = original_error
        super().__init__(message)

class AuthenticationError(BusinessLogicError):
    """Bad or missing signature / token on an inbound request. Never retried."""
    def __init__(self, message: str, code: str = ErrorCodes.UNAUTHORIZED):
        super().__init__(code, message)

class NotFoundError(BusinessLogicError):
    """A referenced class, student, transaction or payment does not exist."""
    def __init__(self, message: str, code: str = ErrorCodes.NOT_FOUND, context: Dict[str, Any] = None):
        super().__init__(code, message, context=context)

class EventValidationError(BusinessLogicError):
    """Inbound event is authentic but lacks a field the engine needs."""
    def __init__(self, message: str, field: str = None):
        super().__init__(ErrorCodes.INVALID_EVENT, message, field=field)

class ConflictAlreadyProcessed(Exception):
    """
    A uniqueness constraint rejected a write because the same logical record
    already exists. Callers translate this into an idempotent success.
    """
    def __init__(self, key: str, existing_id: Optional[str] = None):
        self.key = key
        self.existing_id = existing_id
        super().__init__(f"already processed: {key}")

class TransientIOError(ServiceError, LookupError):
    """Storage or network unavailability; safe to retry."""
    def __init__(self, message: str, original_error: Exception = None, code: str = ErrorCodes.SERVICE_UNAVAILABLE):
        super().__init__(code, message, original_error)

class GatewayValidationError(ServiceError):
    """The payment gateway rejected a request as invalid; retrying will not help."""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(ErrorCodes.GATEWAY_VALIDATION_ERROR, message, original_error)

def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
    trace_id: str = None,
    retryable: bool = False
) -> JSONResponse:
    """Create standardized error response"""

    error_detail = ErrorDetail(
        code=error_code,
        message=message,
        field=field,
        context=context
    )

    error_response = StandardErrorResponse(
        error=error_detail,
        timestamp=time.time(),
        trace_id=trace_id,
        retryable=retryable
    )

    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump()
    )

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    """Handle business logic exceptions"""

    status_code_map = {
        ErrorCodes.UNAUTHORIZED: 401,
        ErrorCodes.INVALID_SIGNATURE: 401,
        ErrorCodes.INVALID_TOKEN: 401,
        ErrorCodes.NOT_FOUND: 404,
        ErrorCodes.CLASS_NOT_FOUND: 404,
        ErrorCodes.TRANSACTION_NOT_FOUND: 404,
        ErrorCodes.VALIDATION_ERROR: 400,
        ErrorCodes.INVALID_EVENT: 400,
    }

    status_code = status_code_map.get(exc.code, 400)
    trace_id = getattr(request.state, 'trace_id', None)

    logger.warning(f"Business logic error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "field": exc.field,
        "context": exc.context
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        field=exc.field,
        context=exc.context,
        trace_id=trace_id
    )

async def service_exception_handler(request: Request, exc: ServiceError):
    """Handle service-level exceptions"""

    status_code_map = {
        ErrorCodes.SERVICE_UNAVAILABLE: 503,
        ErrorCodes.DATABASE_ERROR: 503,
        ErrorCodes.TIMEOUT_ERROR: 504,
        ErrorCodes.GATEWAY_ERROR: 502,
        ErrorCodes.GATEWAY_VALIDATION_ERROR: 502,
    }

    status_code = status_code_map.get(exc.code, 500)
    trace_id = getattr(request.state, 'trace_id', None)
    retryable = isinstance(exc, TransientIOError)

    logger.error(f"Service error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "retryable": retryable,
        "original_error": str(exc.original_error) if exc.original_error else None
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        trace_id=trace_id,
        retryable=retryable
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)

    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")

    logger.warning(f"Validation error: {message} on field {field}", extra={
        "trace_id": trace_id,
    })

    return create_error_response(
        error_code=ErrorCodes.VALIDATION_ERROR,
        message=f"Validation error on field '{field}': {message}",
        status_code=400,
        field=field,
        trace_id=trace_id
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle FastAPI HTTP exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)

    status_to_code = {
        401: ErrorCodes.UNAUTHORIZED,
        404: ErrorCodes.NOT_FOUND,
        500: ErrorCodes.INTERNAL_SERVER_ERROR,
        503: ErrorCodes.SERVICE_UNAVAILABLE,
    }

    error_code = status_to_code.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)

    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}", extra={
        "status_code": exc.status_code,
        "trace_id": trace_id
    })

    return create_error_response(
        error_code=error_code,
        message=str(exc.detail),
        status_code=exc.status_code,
        trace_id=trace_id
    )

async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)

    logger.error(f"Unexpected error: {str(exc)}", extra={
        "trace_id": trace_id,
        "traceback": traceback.format_exc()
    })

    # Don't expose internal error details
    return create_error_response(
        error_code=ErrorCodes.INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
        trace_id=trace_id,
        retryable=True
    )

def add_error_handlers(app):
    """Add all error handlers to FastAPI app"""
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
