"""
Custom exception hierarchy for API error handling
RAG errors are a single type discriminated by code, mapped to HTTP status
"""

from enum import Enum
from typing import Optional, Dict, Any


class CompanionAPIException(Exception):
    """
    Base exception for all API errors.
    Includes HTTP status code and structured error context.
    """

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        context: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize exception.

        Args:
            message: Human-readable error message
            status_code: HTTP status code
            error_code: Machine-readable error code
            context: Additional error context
        """
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dict for JSON response"""
        return {
            "error": {
                "message": self.message,
                "code": self.error_code,
                "status": self.status_code,
                "context": self.context,
            }
        }


class InsufficientPermissionsException(CompanionAPIException):
    """
    User lacks required permissions for the operation.
    HTTP 403 Forbidden
    """

    def __init__(
        self,
        message: str = "Insufficient permissions for this operation",
        required_permission: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = context or {}
        if required_permission:
            context["required_permission"] = required_permission

        super().__init__(
            message=message,
            status_code=403,
            error_code="INSUFFICIENT_PERMISSIONS",
            context=context,
        )


class ErrorCode(str, Enum):
    """RAG error codes"""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    EMBEDDING_SERVICE_ERROR = "EMBEDDING_SERVICE_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    NOT_FOUND = "NOT_FOUND"


_STATUS_BY_CODE = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.EMBEDDING_SERVICE_ERROR: 502,
    ErrorCode.DATABASE_ERROR: 500,
}


class RAGError(CompanionAPIException):
    """
    Error raised by the RAG core.
    The code decides the HTTP status the API answers with.
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode,
        context: Optional[Dict[str, Any]] = None,
    ):
        code = ErrorCode(code)
        super().__init__(
            message=message,
            status_code=_STATUS_BY_CODE[code],
            error_code=code.value,
            context=context,
        )
        self.code = code


class RAGValidationError(RAGError):
    """
    Bad caller input (chunk size, empty content, missing ids, oversized text).
    HTTP 400 Bad Request
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCode.VALIDATION_ERROR, context)


class EmbeddingServiceError(RAGError):
    """
    Embedding service unreachable, timed out or answered non-2xx.
    HTTP 502 Bad Gateway
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCode.EMBEDDING_SERVICE_ERROR, context)


class DatabaseError(RAGError):
    """
    Vector store failure, including connectivity.
    HTTP 500 Internal Server Error
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCode.DATABASE_ERROR, context)


class DocumentNotFoundError(RAGError):
    """
    Referenced document does not exist.
    HTTP 404 Not Found
    """

    def __init__(
        self,
        message: str = "Document not found",
        document_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = context or {}
        if document_id:
            context["document_id"] = document_id

        super().__init__(message, ErrorCode.NOT_FOUND, context)
