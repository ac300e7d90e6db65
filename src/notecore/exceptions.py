"""Custom exceptions for notecore.

Provides a structured exception hierarchy with error codes and
machine-readable error information for better error handling.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_VALIDATION_FAILED = 1002
    NOTE_BODY_REQUIRED = 1005

    # Tag errors (3xxx)
    TAG_NOT_FOUND = 3001
    TAG_INVALID = 3002
    TAG_NAME_CONFLICT = 3003
    TAG_MERGE_CONFLICT = 3004

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    INTEGRITY_VIOLATION = 4008

    # Search errors (5xxx)
    SEARCH_FAILED = 5001
    SEARCH_INVALID_QUERY = 5002
    SEARCH_INVALID_CURSOR = 5003
    SEARCH_CANCELLED = 5004

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001


class NoteCoreError(Exception):
    """Base exception for all notecore errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class ValidationError(NoteCoreError):
    """Raised when input is rejected before any mutation begins."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class ConflictError(NoteCoreError):
    """Raised for duplicate tag names and merge collisions.

    Never auto-resolved; the caller decides whether to retry or rename.
    """

    def __init__(
        self,
        message: str,
        tag_name: Optional[str] = None,
        tag_id: Optional[str] = None,
        code: ErrorCode = ErrorCode.TAG_NAME_CONFLICT
    ):
        details = {}
        if tag_name:
            details["tag_name"] = tag_name
        if tag_id:
            details["tag_id"] = tag_id

        super().__init__(message, code=code, details=details)
        self.tag_name = tag_name
        self.tag_id = tag_id


class NotFoundError(NoteCoreError):
    """Raised when an operation targets a missing or deleted record."""


class NoteNotFoundError(NotFoundError):
    """Raised when a note cannot be found for the owner."""

    def __init__(self, note_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Note with ID '{note_id}' not found",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"note_id": note_id}
        )
        self.note_id = note_id


class TagNotFoundError(NotFoundError):
    """Raised when a tag cannot be found for the owner."""

    def __init__(self, tag_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Tag with ID '{tag_id}' not found",
            code=ErrorCode.TAG_NOT_FOUND,
            details={"tag_id": tag_id}
        )
        self.tag_id = tag_id


class IntegrityViolation(NoteCoreError):
    """Raised when a stored invariant is found broken.

    Examples are a usage_count that would drop below zero or an
    association pointing at a deleted note. The enclosing transaction is
    rolled back; the data is only fixed by an explicit repair run.
    """

    def __init__(
        self,
        message: str,
        owner_id: Optional[str] = None,
        tag_id: Optional[str] = None,
        note_id: Optional[str] = None,
    ):
        details = {}
        if owner_id:
            details["owner_id"] = owner_id
        if tag_id:
            details["tag_id"] = tag_id
        if note_id:
            details["note_id"] = note_id

        super().__init__(message, code=ErrorCode.INTEGRITY_VIOLATION, details=details)
        self.owner_id = owner_id
        self.tag_id = tag_id
        self.note_id = note_id


class StorageError(NoteCoreError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.original_error = original_error


class SearchError(NoteCoreError):
    """Raised for search-related errors."""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        code: ErrorCode = ErrorCode.SEARCH_FAILED
    ):
        details = {}
        if query:
            details["query"] = query[:100]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.query = query


class SearchCancelledError(SearchError):
    """Raised when a search is cancelled or exceeds its deadline."""

    def __init__(self, query: Optional[str] = None, reason: str = "cancelled"):
        super().__init__(
            f"Search {reason}", query=query, code=ErrorCode.SEARCH_CANCELLED
        )
        self.reason = reason
