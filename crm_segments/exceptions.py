"""
RFC 7807 Problem Details exception handling.

Every error leaving the API is rendered as ``application/problem+json``.
Segmentation errors raised by the engine and repositories are mapped here,
so endpoints simply let them propagate:

- CriteriaValidationError → 422 with one entry per offending rule
- SegmentNotFoundError → 404
- DuplicateSegmentError → 409
- RepositoryError → 503

See: https://datatracker.ietf.org/doc/html/rfc7807
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
from datetime import datetime, timezone

from crm_segments.config import settings
from crm_segments.services.segmentation.errors import (
    CriteriaValidationError,
    DuplicateSegmentError,
    RepositoryError,
    SegmentationError,
    SegmentNotFoundError,
)

logger = logging.getLogger(__name__)

PROBLEM_TYPE_BASE = "https://api.crm-segments.dev/problems"


def _new_trace_id() -> str:
    return str(uuid.uuid4())[:12]


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class ErrorCode(str, Enum):
    """Standardized error codes for the segments API."""

    # Validation
    VALIDATION_ERROR = "VAL_001"
    INVALID_CRITERIA = "VAL_005"

    # Resource
    NOT_FOUND = "RES_001"
    ALREADY_EXISTS = "RES_002"
    CONFLICT = "RES_003"

    # Business Logic
    BUSINESS_RULE_VIOLATION = "BIZ_001"
    QUOTA_EXCEEDED = "BIZ_002"

    # External Services
    DATABASE_ERROR = "EXT_004"

    # Server
    INTERNAL_ERROR = "SRV_001"
    SERVICE_UNAVAILABLE = "SRV_002"


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
        errors: List of field- or rule-level errors (for 422)
        retry_after: Seconds to wait before retrying
    """

    type: str = Field(default="about:blank", description="URI reference identifying the problem type")
    title: str = Field(description="Short, human-readable summary of the problem")
    status: int = Field(description="HTTP status code")
    detail: str = Field(description="Human-readable explanation specific to this occurrence")
    instance: Optional[str] = Field(default=None, description="URI reference for this specific occurrence")
    code: str = Field(description="Machine-readable error code")
    timestamp: str = Field(description="ISO 8601 timestamp")
    trace_id: str = Field(description="Unique trace ID for debugging")
    errors: Optional[List[Dict[str, Any]]] = Field(default=None, description="Field- or rule-level errors")
    retry_after: Optional[int] = Field(default=None, description="Seconds to wait before retrying")

    model_config = {
        "json_schema_extra": {
            "example": {
                "type": f"{PROBLEM_TYPE_BASE}/val-005",
                "title": "Validation Error",
                "status": 422,
                "detail": "Segment criteria is not valid",
                "instance": "/api/v2/segments",
                "code": "VAL_005",
                "timestamp": "2026-01-29T10:30:00Z",
                "trace_id": "abc123def456",
                "errors": [
                    {
                        "code": "incompatible_operator",
                        "rule_index": 0,
                        "field": "isHighValue",
                        "message": "Operator GREATER_THAN cannot be used with BOOLEAN field 'isHighValue'",
                    }
                ],
            }
        }
    }


def _problem_type(code: ErrorCode) -> str:
    return f"{PROBLEM_TYPE_BASE}/{code.value.lower().replace('_', '-')}"


class CRMException(HTTPException):
    """
    Base exception for the API with RFC 7807 support.

    Usage:
        raise CRMException(
            status_code=404,
            code=ErrorCode.NOT_FOUND,
            detail="Segment not found",
            instance="/api/v2/segments/123"
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
        self.trace_id = _new_trace_id()
        self.timestamp = _timestamp()

        super().__init__(status_code=status_code, detail=detail, headers=headers)

    @staticmethod
    def _default_title(status_code: int) -> str:
        """Get default title based on status code."""
        titles = {
            400: "Bad Request",
            404: "Not Found",
            409: "Conflict",
            422: "Validation Error",
            429: "Too Many Requests",
            500: "Internal Server Error",
            503: "Service Unavailable",
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


def from_segmentation_error(exc: SegmentationError) -> CRMException:
    """Translate an engine or repository error into its HTTP form."""
    if isinstance(exc, CriteriaValidationError):
        return CRMException(
            status_code=422,
            code=ErrorCode.INVALID_CRITERIA,
            detail="Segment criteria is not valid",
            errors=exc.to_list(),
        )
    if isinstance(exc, SegmentNotFoundError):
        return CRMException(status_code=404, code=ErrorCode.NOT_FOUND, detail=str(exc))
    if isinstance(exc, DuplicateSegmentError):
        return CRMException(status_code=409, code=ErrorCode.ALREADY_EXISTS, detail=str(exc))
    if isinstance(exc, RepositoryError):
        retry_after = 5 if exc.transient else None
        return CRMException(
            status_code=503,
            code=ErrorCode.DATABASE_ERROR,
            detail="Segment storage is temporarily unavailable" if exc.transient else str(exc),
            retry_after=retry_after,
            headers={"Retry-After": str(retry_after)} if retry_after else None,
        )
    return CRMException(status_code=400, code=ErrorCode.BUSINESS_RULE_VIOLATION, detail=str(exc))


# Exception handlers for FastAPI

def _with_cors(response: JSONResponse, request: Request, allowed_origins: Optional[List[str]]) -> JSONResponse:
    if allowed_origins:
        origin = request.headers.get("origin", "")
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Credentials"] = "true"
            response.headers["Vary"] = "Origin"
    return response


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
        title=CRMException._default_title(status_code),
        status=status_code,
        detail=detail,
        instance=str(request.url.path),
        code=code.value,
        timestamp=_timestamp(),
        trace_id=trace_id or _new_trace_id(),
        errors=errors,
    )

    response = JSONResponse(
        status_code=status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )
    return _with_cors(response, request, allowed_origins)


async def crm_exception_handler(
    request: Request,
    exc: CRMException,
    allowed_origins: Optional[List[str]] = None,
) -> JSONResponse:
    """Handle CRMException with RFC 7807 response."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"CRMException: {exc.code.value} - {exc.detail}",
        extra={
            "trace_id": exc.trace_id,
            "status_code": exc.status_code,
            "path": request.url.path,
        },
    )

    if exc.instance is None:
        exc.instance = str(request.url.path)

    response = JSONResponse(
        status_code=exc.status_code,
        content=exc.to_problem_detail().model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=exc.headers,
    )
    return _with_cors(response, request, allowed_origins)


def create_exception_handlers(allowed_origins: List[str]):
    """
    Create exception handlers with configured allowed origins for CORS.

    Usage in main.py:
        handlers = create_exception_handlers(allowed_origins)
        app.add_exception_handler(CRMException, handlers["crm"])
        app.add_exception_handler(SegmentationError, handlers["segmentation"])
        app.add_exception_handler(RequestValidationError, handlers["validation"])
        app.add_exception_handler(Exception, handlers["generic"])
    """

    async def handle_crm_exception(request: Request, exc: CRMException) -> JSONResponse:
        return await crm_exception_handler(request, exc, allowed_origins)

    async def handle_segmentation_exception(request: Request, exc: SegmentationError) -> JSONResponse:
        return await crm_exception_handler(request, from_segmentation_error(exc), allowed_origins)

    async def handle_http_exception(
        request: Request,
        exc: StarletteHTTPException
    ) -> JSONResponse:
        """Handle standard HTTPException with RFC 7807 response."""
        code_map = {
            400: ErrorCode.VALIDATION_ERROR,
            404: ErrorCode.NOT_FOUND,
            409: ErrorCode.CONFLICT,
            422: ErrorCode.VALIDATION_ERROR,
            429: ErrorCode.QUOTA_EXCEEDED,
            500: ErrorCode.INTERNAL_ERROR,
            503: ErrorCode.SERVICE_UNAVAILABLE,
        }

        code = code_map.get(exc.status_code, ErrorCode.INTERNAL_ERROR)

        return create_problem_response(
            status_code=exc.status_code,
            code=code,
            detail=str(exc.detail),
            request=request,
            allowed_origins=allowed_origins,
        )

    async def handle_validation_exception(
        request: Request,
        exc: RequestValidationError
    ) -> JSONResponse:
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

    async def handle_generic_exception(
        request: Request,
        exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions with RFC 7807 response."""
        trace_id = _new_trace_id()

        logger.error(
            f"Unhandled exception: {exc}",
            extra={"trace_id": trace_id, "path": request.url.path},
        )
        logger.error(traceback.format_exc())

        # Don't expose internal details in production
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
        "crm": handle_crm_exception,
        "segmentation": handle_segmentation_exception,
        "http": handle_http_exception,
        "validation": handle_validation_exception,
        "generic": handle_generic_exception,
    }
