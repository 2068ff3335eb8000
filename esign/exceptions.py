"""
Error types for the e-signature service.

Two families live here:

- RFC 7807 Problem Details exceptions raised by the HTTP layer
  (see https://datatracker.ietf.org/doc/html/rfc7807).
- The remote provider taxonomy raised by the signing provider client.
  Callers branch on the class, never on message text:

    RemoteAmbiguousError    the request may have reached the provider; outcome unknown
    RemoteRejectedError     explicit 4xx (other than 429); the provider refused it
    RemoteRateLimitedError  429; carries retry_after seconds
    RemoteAuthError         credentials missing or refused
    RemoteUnavailableError  the request never left this process
"""

from typing import Optional, Dict, Any, List
from enum import Enum
from pydantic import BaseModel, Field
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging
import traceback
import uuid

from esign.middleware.correlation import get_request_id
from esign.utils.timestamps import utcnow

logger = logging.getLogger(__name__)


def _get_trace_id() -> str:
    """Get trace ID from correlation context or generate a new one."""
    request_id = get_request_id()
    if request_id and request_id != "unknown":
        return request_id
    return str(uuid.uuid4())[:12]


def _timestamp() -> str:
    return utcnow().strftime("%Y-%m-%dT%H:%M:%S.%fZ")


# Remote provider taxonomy


class RemoteProviderError(Exception):
    """Base class for failures talking to the signing provider."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteAuthError(RemoteProviderError):
    """Credentials are missing or were refused (401/403)."""


class RemoteRateLimitedError(RemoteProviderError):
    """Provider answered 429."""

    def __init__(self, message: str, retry_after: int):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class RemoteAmbiguousError(RemoteProviderError):
    """Timeout, reset or gateway failure after the request was sent.

    The provider may or may not have applied the request.
    """


class RemoteRejectedError(RemoteProviderError):
    """Clean 4xx rejection. The provider did not apply the request."""


class RemoteNotFoundError(RemoteRejectedError):
    """Provider answered 404."""


class RemoteUnavailableError(RemoteProviderError):
    """Connection could not be established."""


# HTTP API errors


class ErrorCode(str, Enum):
    """Standardized error codes for the e-signature API."""

    # Validation
    VALIDATION_ERROR = "VAL_001"

    # Resource
    NOT_FOUND = "RES_001"

    # Business Logic
    QUOTA_EXCEEDED = "BIZ_002"

    # External Services
    EXTERNAL_SERVICE_ERROR = "EXT_001"
    SIGNING_PROVIDER_ERROR = "EXT_002"

    # Server
    INTERNAL_ERROR = "SRV_001"
    SERVICE_UNAVAILABLE = "SRV_002"
    TIMEOUT = "SRV_003"


class ProblemDetail(BaseModel):
    """
    RFC 7807 Problem Details response schema.

    Attributes:
        type: URI reference identifying the problem type
        title: Short, human-readable summary
        status: HTTP status code
        detail: Human-readable explanation specific to this occurrence
        instance: URI reference identifying this specific occurrence
        code: Machine-readable error code for client handling
        timestamp: ISO 8601 timestamp of when the error occurred
        trace_id: Unique identifier for tracing in logs
        errors: List of field-level validation errors (for 422)
        retry_after: Seconds to wait before retrying (for rate limits)
    """

    type: str = Field(default="about:blank", description="URI reference identifying the problem type")
    title: str = Field(description="Short, human-readable summary of the problem")
    status: int = Field(description="HTTP status code")
    detail: str = Field(description="Human-readable explanation specific to this occurrence")
    instance: Optional[str] = Field(default=None, description="URI reference for this specific occurrence")
    code: str = Field(description="Machine-readable error code")
    timestamp: str = Field(description="ISO 8601 timestamp")
    trace_id: str = Field(description="Unique trace ID for debugging")
    errors: Optional[List[Dict[str, Any]]] = Field(default=None, description="Field-level validation errors")
    retry_after: Optional[int] = Field(default=None, description="Seconds to wait before retrying")


def _problem_type(code: ErrorCode) -> str:
    return f"https://esign.local/problems/{code.value.lower().replace('_', '-')}"


class ESignException(HTTPException):
    """
    Base exception for the API with RFC 7807 support.

    Usage:
        raise ESignException(
            status_code=404,
            code=ErrorCode.NOT_FOUND,
            detail="Document not found",
            instance="/api/v2/documents/123"
        )
    """

    def __init__(
        self,
        status_code: int,
        code: ErrorCode,
        detail: str,
        title: Optional[str] = None,
        instance: Optional[str] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
        retry_after: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.code = code
        self.title = title or self._default_title(status_code)
        self.instance = instance
        self.errors = errors
        self.retry_after = retry_after
        self.trace_id = _get_trace_id()
        self.timestamp = _timestamp()

        super().__init__(status_code=status_code, detail=detail, headers=headers)

    @staticmethod
    def _default_title(status_code: int) -> str:
        """Get default title based on status code."""
        titles = {
            400: "Bad Request",
            404: "Not Found",
            422: "Validation Error",
            429: "Too Many Requests",
            500: "Internal Server Error",
            502: "Bad Gateway",
            503: "Service Unavailable",
            504: "Gateway Timeout",
        }
        return titles.get(status_code, "Error")

    def to_problem_detail(self) -> ProblemDetail:
        """Convert to RFC 7807 ProblemDetail."""
        return ProblemDetail(
            type=_problem_type(self.code),
            title=self.title,
            status=self.status_code,
            detail=self.detail,
            instance=self.instance,
            code=self.code.value,
            timestamp=self.timestamp,
            trace_id=self.trace_id,
            errors=self.errors,
            retry_after=self.retry_after,
        )


# Convenience exception classes

class NotFoundError(ESignException):
    """Resource not found (404)."""

    def __init__(self, resource: str, resource_id: str, instance: Optional[str] = None):
        super().__init__(
            status_code=404,
            code=ErrorCode.NOT_FOUND,
            detail=f"{resource} with ID {resource_id} was not found",
            instance=instance,
        )


class ValidationError(ESignException):
    """Validation error (422)."""

    def __init__(self, detail: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(
            status_code=422,
            code=ErrorCode.VALIDATION_ERROR,
            detail=detail,
            errors=errors,
        )


class RateLimitError(ESignException):
    """Signing provider cooldown in effect (429)."""

    def __init__(self, retry_after: int = 60):
        super().__init__(
            status_code=429,
            code=ErrorCode.QUOTA_EXCEEDED,
            detail=f"Signing provider rate limit in effect. Try again in {retry_after} seconds.",
            retry_after=retry_after,
            headers={"Retry-After": str(retry_after)},
        )


class ExternalServiceError(ESignException):
    """External service error (502)."""

    def __init__(self, service: str, detail: str):
        super().__init__(
            status_code=502,
            code=ErrorCode.SIGNING_PROVIDER_ERROR,
            detail=f"{service} service error: {detail}",
        )


# Exception handlers for FastAPI

def _apply_cors(response: JSONResponse, request: Request, allowed_origins: Optional[List[str]]) -> None:
    if allowed_origins:
        origin = request.headers.get("origin", "")
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Credentials"] = "true"
            response.headers["Vary"] = "Origin"


def create_problem_response(
    status_code: int,
    code: ErrorCode,
    detail: str,
    request: Request,
    errors: Optional[List[Dict[str, Any]]] = None,
    trace_id: Optional[str] = None,
    allowed_origins: Optional[List[str]] = None,
) -> JSONResponse:
    """Create a RFC 7807 compliant JSON response with CORS headers."""
    problem = ProblemDetail(
        type=_problem_type(code),
        title=ESignException._default_title(status_code),
        status=status_code,
        detail=detail,
        instance=str(request.url.path),
        code=code.value,
        timestamp=_timestamp(),
        trace_id=trace_id or _get_trace_id(),
        errors=errors,
    )

    response = JSONResponse(
        status_code=status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )
    _apply_cors(response, request, allowed_origins)
    return response


def create_exception_handlers(allowed_origins: List[str]):
    """
    Create exception handlers with configured allowed origins for CORS.

    Usage in main.py:
        handlers = create_exception_handlers(allowed_origins)
        app.add_exception_handler(ESignException, handlers["esign"])
        app.add_exception_handler(RequestValidationError, handlers["validation"])
        app.add_exception_handler(Exception, handlers["generic"])
    """

    async def handle_esign_exception(request: Request, exc: ESignException) -> JSONResponse:
        logger.warning(
            f"ESignException: {exc.code.value} - {exc.detail}",
            extra={"trace_id": exc.trace_id, "status_code": exc.status_code, "path": request.url.path},
        )
        response = JSONResponse(
            status_code=exc.status_code,
            content=exc.to_problem_detail().model_dump(exclude_none=True),
            media_type="application/problem+json",
            headers=exc.headers,
        )
        _apply_cors(response, request, allowed_origins)
        return response

    async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Handle standard HTTPException with RFC 7807 response."""
        code_map = {
            400: ErrorCode.VALIDATION_ERROR,
            404: ErrorCode.NOT_FOUND,
            422: ErrorCode.VALIDATION_ERROR,
            429: ErrorCode.QUOTA_EXCEEDED,
            500: ErrorCode.INTERNAL_ERROR,
            502: ErrorCode.EXTERNAL_SERVICE_ERROR,
            503: ErrorCode.SERVICE_UNAVAILABLE,
        }
        return create_problem_response(
            status_code=exc.status_code,
            code=code_map.get(exc.status_code, ErrorCode.INTERNAL_ERROR),
            detail=str(exc.detail),
            request=request,
            allowed_origins=allowed_origins,
        )

    async def handle_validation_exception(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle Pydantic validation errors with field-level details."""
        errors = []
        for error in exc.errors():
            errors.append({
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            })

        return create_problem_response(
            status_code=422,
            code=ErrorCode.VALIDATION_ERROR,
            detail="Request validation failed",
            request=request,
            errors=errors,
            allowed_origins=allowed_origins,
        )

    async def handle_remote_exception(request: Request, exc: RemoteProviderError) -> JSONResponse:
        """Provider failures that escaped a service surface as 502/503."""
        logger.warning(f"Signing provider error on {request.url.path}: {type(exc).__name__}: {exc}")
        if isinstance(exc, RemoteRateLimitedError):
            response = create_problem_response(
                status_code=429,
                code=ErrorCode.QUOTA_EXCEEDED,
                detail=f"Signing provider rate limit in effect. Try again in {exc.retry_after} seconds.",
                request=request,
                allowed_origins=allowed_origins,
            )
            response.headers["Retry-After"] = str(exc.retry_after)
            return response
        if isinstance(exc, RemoteUnavailableError):
            status_code, code = 503, ErrorCode.SERVICE_UNAVAILABLE
        elif isinstance(exc, RemoteAmbiguousError):
            status_code, code = 504, ErrorCode.TIMEOUT
        else:
            status_code, code = 502, ErrorCode.SIGNING_PROVIDER_ERROR
        return create_problem_response(
            status_code=status_code,
            code=code,
            detail=f"Signing provider error: {exc}",
            request=request,
            allowed_origins=allowed_origins,
        )

    async def handle_generic_exception(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions with RFC 7807 response."""
        trace_id = str(uuid.uuid4())[:12]

        logger.error(
            f"Unhandled exception: {exc}",
            extra={"trace_id": trace_id, "path": request.url.path},
        )
        logger.error(traceback.format_exc())

        # Don't expose internal details in production
        from esign.config import settings
        detail = str(exc) if settings.DEBUG else "An unexpected error occurred"

        return create_problem_response(
            status_code=500,
            code=ErrorCode.INTERNAL_ERROR,
            detail=detail,
            request=request,
            trace_id=trace_id,
            allowed_origins=allowed_origins,
        )

    return {
        "esign": handle_esign_exception,
        "http": handle_http_exception,
        "validation": handle_validation_exception,
        "remote": handle_remote_exception,
        "generic": handle_generic_exception,
    }
