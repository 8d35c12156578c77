"""
Error taxonomy for the payment engine with standardized responses
"""
from enum import Enum
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
    request_id: Optional[str] = None

class ErrorKind(str, Enum):
    """Closed set of error kinds surfaced by the engine"""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    AUTHORIZATION_ERROR = "AUTHORIZATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    EXTERNAL_PROCESSOR_ERROR = "EXTERNAL_PROCESSOR_ERROR"
    INVARIANT_VIOLATION = "INVARIANT_VIOLATION"
    RATE_LIMITED = "RATE_LIMITED"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"

STATUS_CODES = {
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.AUTHORIZATION_ERROR: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.EXTERNAL_PROCESSOR_ERROR: 502,
    ErrorKind.INVARIANT_VIOLATION: 500,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.INTERNAL_SERVER_ERROR: 500,
}

class EngineError(Exception):
    """Base class for every error the engine raises on purpose"""
    kind = ErrorKind.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, field: str = None, context: Dict[str, Any] = None):
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.kind]

class ValidationError(EngineError):
    kind = ErrorKind.VALIDATION_ERROR

class InvalidAmountError(ValidationError):
    def __init__(self, message: str = "Amount must be a positive number of minor units", **kwargs):
        super().__init__(message, field=kwargs.pop("field", "amount"), **kwargs)

class AuthorizationError(EngineError):
    kind = ErrorKind.AUTHORIZATION_ERROR

class NotFoundError(EngineError):
    kind = ErrorKind.NOT_FOUND

class ConflictError(EngineError):
    kind = ErrorKind.CONFLICT

class ExternalProcessorError(EngineError):
    """Gateway unavailable (502) or gateway rejected the request (400)"""
    kind = ErrorKind.EXTERNAL_PROCESSOR_ERROR

    def __init__(self, message: str, rejected: bool = False, **kwargs):
        self.rejected = rejected
        super().__init__(message, **kwargs)

    @property
    def status_code(self) -> int:
        return 400 if self.rejected else 502

class InvariantViolationError(EngineError):
    kind = ErrorKind.INVARIANT_VIOLATION

class RateLimitedError(EngineError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, retry_after: int, message: str = "Too many requests, slow down", **kwargs):
        self.retry_after = max(1, int(retry_after))
        super().__init__(message, **kwargs)

def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
    trace_id: str = None,
    request_id: str = None,
    headers: Dict[str, str] = None
) -> JSONResponse:
    """Create standardized error response"""

    error_response = StandardErrorResponse(
        error=ErrorDetail(code=error_code, message=message, field=field, context=context),
        timestamp=time.time(),
        trace_id=trace_id,
        request_id=request_id
    )

    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump(),
        headers=headers
    )

async def engine_exception_handler(request: Request, exc: EngineError):
    """Render any EngineError; internal causes never leave the process"""

    trace_id = getattr(request.state, 'trace_id', None)
    request_id = getattr(request.state, 'request_id', None)
    extra = {
        "error_code": exc.kind.value,
        "trace_id": trace_id,
        "request_id": request_id,
        "field": exc.field,
        "context": exc.context
    }

    headers = None
    message = exc.message
    context = exc.context or None
    if isinstance(exc, InvariantViolationError):
        logger.critical(f"Invariant violation: {exc.message}", extra=extra)
        message = "Internal consistency check failed; an operator has been alerted."
        context = None
    elif isinstance(exc, ExternalProcessorError):
        logger.error(f"Payment processor error: {exc.message}", extra=extra)
    else:
        logger.warning(f"{exc.kind.value}: {exc.message}", extra=extra)

    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after)}
        context = {"retry_after": exc.retry_after}

    return create_error_response(
        error_code=exc.kind.value,
        message=message,
        status_code=exc.status_code,
        field=exc.field,
        context=context,
        trace_id=trace_id,
        request_id=request_id,
        headers=headers
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request body/query validation exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)
    request_id = getattr(request.state, 'request_id', None)

    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")

    logger.warning(f"Validation error: {message} on field {field}", extra={
        "trace_id": trace_id,
        "request_id": request_id
    })

    return create_error_response(
        error_code=ErrorKind.VALIDATION_ERROR.value,
        message=f"Validation error on field '{field}': {message}",
        status_code=400,
        field=field,
        trace_id=trace_id,
        request_id=request_id
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle FastAPI HTTP exceptions"""

    status_to_kind = {
        400: ErrorKind.VALIDATION_ERROR,
        401: ErrorKind.UNAUTHORIZED,
        403: ErrorKind.AUTHORIZATION_ERROR,
        404: ErrorKind.NOT_FOUND,
        409: ErrorKind.CONFLICT,
        429: ErrorKind.RATE_LIMITED,
    }
    kind = status_to_kind.get(exc.status_code, ErrorKind.INTERNAL_SERVER_ERROR)

    return create_error_response(
        error_code=kind.value,
        message=str(exc.detail),
        status_code=exc.status_code,
        trace_id=getattr(request.state, 'trace_id', None),
        request_id=getattr(request.state, 'request_id', None)
    )

async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)
    request_id = getattr(request.state, 'request_id', None)

    logger.error(f"Unexpected error: {str(exc)}", extra={
        "trace_id": trace_id,
        "request_id": request_id,
        "traceback": traceback.format_exc()
    })

    return create_error_response(
        error_code=ErrorKind.INTERNAL_SERVER_ERROR.value,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
        trace_id=trace_id,
        request_id=request_id
    )

def add_error_handlers(app):
    """Add all error handlers to FastAPI app"""
    app.add_exception_handler(EngineError, engine_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
