"""Models package - Custom exceptions"""

from .exceptions import (
    CompanionAPIException,
    InsufficientPermissionsException,
    ErrorCode,
    RAGError,
    RAGValidationError,
    EmbeddingServiceError,
    DatabaseError,
    DocumentNotFoundError,
)

__all__ = [
    "CompanionAPIException",
    "InsufficientPermissionsException",
    "ErrorCode",
    "RAGError",
    "RAGValidationError",
    "EmbeddingServiceError",
    "DatabaseError",
    "DocumentNotFoundError",
]
