"""
hireloop Error Handling

Specific error types with structured context. Only webhook authentication
and payload errors are meant to reach the HTTP layer; everything else is
caught by the workflow code and reported through logs and trace comments.
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException
from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    # Inbound webhook errors (400/401)
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    MISSING_SIGNATURE = "MISSING_SIGNATURE"
    STALE_EVENT = "STALE_EVENT"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"

    # Collaborator errors
    RECORD_STORE_ERROR = "RECORD_STORE_ERROR"
    BILLING_ERROR = "BILLING_ERROR"
    LLM_UNAVAILABLE = "LLM_UNAVAILABLE"
    EMAIL_ERROR = "EMAIL_ERROR"
    DOCUMENT_PARSE_FAILED = "DOCUMENT_PARSE_FAILED"
    CONFIG_MISSING = "CONFIG_MISSING"


class HireloopError(Exception):
    """Base exception with structured error info."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "error": self.code.value,
            "message": self.message
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        return result


class WebhookAuthError(HireloopError):
    """Inbound webhook failed signature or freshness checks."""

    def __init__(self, code: ErrorCode, detail: str):
        super().__init__(
            code=code,
            message="Webhook authentication failed",
            detail=detail,
        )


class PayloadError(HireloopError):
    """Inbound webhook body could not be parsed."""

    def __init__(self, detail: str):
        super().__init__(
            code=ErrorCode.INVALID_PAYLOAD,
            message="Invalid webhook payload",
            detail=detail,
        )


class CollaboratorError(HireloopError):
    """
    Error returned by an external service (Linear, Polar, Resend, LLM).

    `status_code` is the upstream HTTP status when there was one; it drives
    the retryable/fatal classification.
    """

    def __init__(self, service: str, detail: str, status_code: Optional[int] = None):
        code_map = {
            "linear": ErrorCode.RECORD_STORE_ERROR,
            "polar": ErrorCode.BILLING_ERROR,
            "llm": ErrorCode.LLM_UNAVAILABLE,
            "resend": ErrorCode.EMAIL_ERROR,
        }
        super().__init__(
            code=code_map.get(service.lower(), ErrorCode.RECORD_STORE_ERROR),
            message=f"{service} request failed",
            detail=detail,
            context={"service": service, "status_code": status_code},
        )
        self.service = service
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code >= 500 or self.status_code == 429


class DocumentParseError(HireloopError):
    """Attachment could not be converted to text."""

    def __init__(self, file_name: str, detail: str):
        super().__init__(
            code=ErrorCode.DOCUMENT_PARSE_FAILED,
            message=f"Could not parse document {file_name}",
            detail=detail,
            context={"file_name": file_name},
        )


class ScreeningError(HireloopError):
    """LLM returned an unusable screening response."""

    def __init__(self, detail: str):
        super().__init__(
            code=ErrorCode.LLM_UNAVAILABLE,
            message="AI screening unavailable",
            detail=detail,
        )


class NotificationError(HireloopError):
    """Transactional email could not be sent."""

    def __init__(self, kind: str, detail: str):
        super().__init__(
            code=ErrorCode.EMAIL_ERROR,
            message=f"Failed to send {kind} email",
            detail=detail,
            context={"kind": kind},
        )


def to_http_exception(error: HireloopError) -> HTTPException:
    """Convert HireloopError to HTTPException."""
    status_map = {
        ErrorCode.INVALID_SIGNATURE: 401,
        ErrorCode.MISSING_SIGNATURE: 401,
        ErrorCode.STALE_EVENT: 401,
        ErrorCode.INVALID_PAYLOAD: 400,
        ErrorCode.CONFIG_MISSING: 500,
        ErrorCode.RECORD_STORE_ERROR: 502,
        ErrorCode.BILLING_ERROR: 502,
        ErrorCode.EMAIL_ERROR: 502,
        ErrorCode.LLM_UNAVAILABLE: 503,
    }

    return HTTPException(
        status_code=status_map.get(error.code, 500),
        detail=error.to_dict()
    )
