"""
Error taxonomy for the image similarity core.

Every error raised by the codec, the index gateway and the service derives
from ImageSearchError and carries a numeric ErrorCode, a message and a
details dict, so an outer layer can turn it into a response body without
string matching.
"""

from enum import IntEnum
from typing import Any, Dict, Optional


class ErrorCode(IntEnum):
    """Error codes shared with the HTTP layer."""

    BAD_REQUEST = 400
    NOT_FOUND = 404
    VALIDATION_ERROR = 422
    INTERNAL_ERROR = 500
    SERVICE_UNAVAILABLE = 503
    GATEWAY_TIMEOUT = 504

    DATABASE_ERROR = 1001
    FILE_NOT_FOUND = 1002
    INVALID_FILE_FORMAT = 1003
    FILE_SIZE_EXCEEDED = 1004
    VECTOR_DIMENSION_MISMATCH = 1005
    MODEL_LOAD_ERROR = 1006
    EMBEDDING_GENERATION_ERROR = 1007
    SEARCH_ERROR = 1008
    INSERT_ERROR = 1009
    DELETE_ERROR = 1010


ERROR_MESSAGES = {
    ErrorCode.BAD_REQUEST: "Bad request",
    ErrorCode.NOT_FOUND: "Resource not found",
    ErrorCode.VALIDATION_ERROR: "Validation failed",
    ErrorCode.INTERNAL_ERROR: "Internal error",
    ErrorCode.SERVICE_UNAVAILABLE: "Service unavailable",
    ErrorCode.GATEWAY_TIMEOUT: "Gateway timeout",
    ErrorCode.DATABASE_ERROR: "Database operation failed",
    ErrorCode.FILE_NOT_FOUND: "File not found",
    ErrorCode.INVALID_FILE_FORMAT: "Invalid file format",
    ErrorCode.FILE_SIZE_EXCEEDED: "File size exceeded",
    ErrorCode.VECTOR_DIMENSION_MISMATCH: "Vector dimension mismatch",
    ErrorCode.MODEL_LOAD_ERROR: "Model load failed",
    ErrorCode.EMBEDDING_GENERATION_ERROR: "Embedding generation failed",
    ErrorCode.SEARCH_ERROR: "Search failed",
    ErrorCode.INSERT_ERROR: "Insert failed",
    ErrorCode.DELETE_ERROR: "Delete failed",
}


def get_error_message(code: int) -> str:
    """Get the default message for an error code."""
    try:
        return ERROR_MESSAGES[ErrorCode(code)]
    except ValueError:
        return "Unknown error"


class ImageSearchError(Exception):
    """Base class for all errors raised by the image similarity core."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    http_status: int = 500

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or get_error_message(self.code)
        self.details = dict(details or {})
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": int(self.code),
            "message": self.message,
            "details": self.details,
        }


class ValidationError(ImageSearchError):
    """Malformed or missing required input. Never retried."""

    code = ErrorCode.VALIDATION_ERROR
    http_status = 422


class InvalidFileFormatError(ValidationError):
    """Image data is not in a supported image format."""

    code = ErrorCode.INVALID_FILE_FORMAT
    http_status = 400


class FileSizeExceededError(ValidationError):
    """Image data is larger than the configured upload limit."""

    code = ErrorCode.FILE_SIZE_EXCEEDED
    http_status = 400


class SourceNotFoundError(ImageSearchError, FileNotFoundError):
    """A local image source does not exist."""

    code = ErrorCode.FILE_NOT_FOUND
    http_status = 404


class ModelLoadError(ImageSearchError):
    """The feature extraction model could not be acquired."""

    code = ErrorCode.MODEL_LOAD_ERROR


class EmbeddingGenerationError(ImageSearchError):
    """The model could not produce a feature vector for a source."""

    code = ErrorCode.EMBEDDING_GENERATION_ERROR


class DimensionMismatchError(ImageSearchError):
    """A vector does not match the index width."""

    code = ErrorCode.VECTOR_DIMENSION_MISMATCH
    http_status = 422


class ServiceUnavailableError(ImageSearchError):
    """The index could not be reached (refused, DNS failure, dropped connection)."""

    code = ErrorCode.SERVICE_UNAVAILABLE
    http_status = 503


class GatewayTimeoutError(ImageSearchError):
    """An index operation exceeded its timeout."""

    code = ErrorCode.GATEWAY_TIMEOUT
    http_status = 504


class DatabaseError(ImageSearchError):
    """Any other index-layer failure (bad filter, schema conflict, ...)."""

    code = ErrorCode.DATABASE_ERROR


class SearchError(DatabaseError):
    code = ErrorCode.SEARCH_ERROR


class InsertError(DatabaseError):
    code = ErrorCode.INSERT_ERROR


class DeleteError(DatabaseError):
    code = ErrorCode.DELETE_ERROR


class QueryError(DatabaseError):
    code = ErrorCode.DATABASE_ERROR


class UpsertError(DatabaseError):
    code = ErrorCode.DATABASE_ERROR


class CorrelationNotFoundError(UpsertError):
    """An update was requested for a correlation id with no records."""

    code = ErrorCode.NOT_FOUND
    http_status = 404


# Retry classification used by both the codec and the gateway
TRANSIENT_ERRORS = (ServiceUnavailableError, GatewayTimeoutError)
