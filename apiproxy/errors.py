from typing import Any, ClassVar, Dict, Optional

from fastapi import status
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, Field


# Non-standard status returned for requests without any path segment.
MALFORMED_REQUEST_STATUS = 625


class ErrorResponse(BaseModel):
    """
    Standard error payload returned by the gateway itself:
    {
        "error": "invalid_route",
        "message": "Unknown API route key: 'foo'",
        "code": 404,
        "details": {...}
    }
    """

    error: str = Field(..., description="Machine-readable error type")
    message: str = Field(..., description="Human-readable error message")
    code: int = Field(..., description="HTTP status code for this error")
    details: Optional[Dict[str, Any]] = Field(
        default=None, description="Optional structured error details"
    )


class GatewayError(Exception):
    """
    Base class for failures the pipeline converts into HTTP responses.
    """

    status_code: ClassVar[int] = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: ClassVar[str] = "internal_error"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> ErrorResponse:
        return ErrorResponse(
            error=self.error,
            message=self.message,
            code=self.status_code,
            details=self.details,
        )

    def to_response(self) -> Response:
        return JSONResponse(
            status_code=self.status_code,
            content=self.to_payload().model_dump(exclude_none=True),
        )


class InvalidRoute(GatewayError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "invalid_route"


class MalformedRequest(GatewayError):
    """
    URL carries no path segment at all. Rejected before classification,
    answered in plain text and never recorded in telemetry.
    """

    status_code = MALFORMED_REQUEST_STATUS
    error = "malformed_request"

    def to_response(self) -> Response:
        return PlainTextResponse(self.message, status_code=self.status_code)


class Unauthorized(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "unauthorized"


class InvalidModel(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "invalid_model"


class NotConfigured(GatewayError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "not_configured"


class StoreFailure(GatewayError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error = "store_failure"


class UpstreamUnreachable(GatewayError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error = "upstream_unreachable"


__all__ = [
    "ErrorResponse",
    "GatewayError",
    "InvalidModel",
    "InvalidRoute",
    "MALFORMED_REQUEST_STATUS",
    "MalformedRequest",
    "NotConfigured",
    "StoreFailure",
    "Unauthorized",
    "UpstreamUnreachable",
]
