"""Blockstore Error Hierarchy.

This module provides a structured exception hierarchy for the block registry.
All blockstore exceptions inherit from BlockstoreError to enable:
- Consistent error handling across registry, store, resolver and client
- Retry logic based on error types (only TransientError is retryable)
- Machine-readable error codes
- Context naming the block type, document and field involved

Error Categories:
- ValidationError: values or names that fail a schema
- NotFoundError: missing block type or document
- AlreadyExistsError / SchemaConflictError / ConflictError: write collisions
- CyclicReferenceError: reference graph cycles found while hydrating
- TransientError: timeouts and other retryable I/O failures
- StorageError / DecryptionError: permanent backend failures
"""

import dataclasses
from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    """High-level error categories for classification."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    REFERENCE = "reference"
    STORAGE = "storage"
    SECRET = "secret"
    TIMEOUT = "timeout"


class ErrorSeverity(StrEnum):
    """Error severity levels for prioritization."""

    LOW = "low"  # Recoverable, can continue
    MEDIUM = "medium"  # Caller must change input
    HIGH = "high"  # Backend failure, needs attention
    CRITICAL = "critical"  # Secrets unreadable


@dataclass
class ErrorContext:
    """Structured context for debugging errors."""

    type_slug: str | None = None
    name: str | None = None
    field: str | None = None
    metadata: dict[str, Any] = dataclasses.field(default_factory=dict)

    @property
    def key(self) -> str | None:
        """The ``type_slug/name`` key, when both parts are known."""
        if self.type_slug and self.name:
            return f"{self.type_slug}/{self.name}"
        return None


class BlockstoreError(Exception):
    """Base exception for all blockstore errors.

    Provides:
    - Unique error code for programmatic handling
    - Category and severity for reporting
    - Retry hint for recovery logic
    - Structured context (type slug, document name, field)

    Example:
        try:
            client.save("cube", "rubiks-cube", values)
        except BlockstoreError as e:
            if e.retry_allowed:
                schedule_retry(e.context)
            else:
                report(e.to_dict())
    """

    error_code: str = "BLOCKSTORE_ERROR"
    category: ErrorCategory = ErrorCategory.STORAGE
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    retry_allowed: bool = False

    def __init__(
        self,
        message: str,
        *,
        type_slug: str | None = None,
        name: str | None = None,
        field: str | None = None,
        metadata: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        self.message = message
        self.context = ErrorContext(
            type_slug=type_slug,
            name=name,
            field=field,
            metadata=metadata or {},
        )

        # Build full message with context
        parts = []
        if type_slug:
            parts.append(f"type_slug={type_slug}")
        if name:
            parts.append(f"name={name}")
        if field:
            parts.append(f"field={field}")
        full_message = f"{message} [{', '.join(parts)}]" if parts else message

        super().__init__(full_message)
        if cause is not None:
            self.__cause__ = cause

    @property
    def type_slug(self) -> str | None:
        return self.context.type_slug

    @property
    def name(self) -> str | None:
        return self.context.name

    @property
    def field(self) -> str | None:
        return self.context.field

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "retry_allowed": self.retry_allowed,
            "context": {
                "type_slug": self.context.type_slug,
                "name": self.context.name,
                "field": self.context.field,
                "metadata": self.context.metadata,
            },
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.error_code}, message={self.message!r})"


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(BlockstoreError):
    """Raised when values, names or schemas fail validation."""

    error_code = "VALIDATION_ERROR"
    category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        errors: list[dict[str, Any]] | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.errors = errors or []


# =============================================================================
# Lookup Errors
# =============================================================================


class NotFoundError(BlockstoreError):
    """Raised when a block type or document does not exist."""

    error_code = "NOT_FOUND"
    category = ErrorCategory.NOT_FOUND


class SchemaNotFoundError(NotFoundError):
    """Raised when no block type is registered under a slug."""

    error_code = "SCHEMA_NOT_FOUND"


class DocumentNotFoundError(NotFoundError):
    """Raised when no document exists under a key or id."""

    error_code = "DOCUMENT_NOT_FOUND"


# =============================================================================
# Write Collisions
# =============================================================================


class AlreadyExistsError(BlockstoreError):
    """Raised when saving without overwrite onto an existing document."""

    error_code = "ALREADY_EXISTS"
    category = ErrorCategory.CONFLICT


class SchemaConflictError(BlockstoreError):
    """Raised when registering an incompatible schema under a used slug."""

    error_code = "SCHEMA_CONFLICT"
    category = ErrorCategory.CONFLICT


class ConflictError(BlockstoreError):
    """Raised when an optimistic version check fails."""

    error_code = "VERSION_CONFLICT"
    category = ErrorCategory.CONFLICT

    def __init__(
        self,
        message: str,
        *,
        expected_version: int | None = None,
        actual_version: int | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.expected_version = expected_version
        self.actual_version = actual_version


# =============================================================================
# Reference Errors
# =============================================================================


class CyclicReferenceError(BlockstoreError):
    """Raised when document references form a cycle."""

    error_code = "CYCLIC_REFERENCE"
    category = ErrorCategory.REFERENCE
    severity = ErrorSeverity.HIGH

    def __init__(self, message: str, *, path: list[str] | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.path = path or []


# =============================================================================
# Storage Errors
# =============================================================================


class TransientError(BlockstoreError):
    """Raised on timeouts and other failures that may succeed when retried."""

    error_code = "TRANSIENT_ERROR"
    category = ErrorCategory.TIMEOUT
    severity = ErrorSeverity.LOW
    retry_allowed = True


class StorageError(BlockstoreError):
    """Raised when the storage backend fails permanently."""

    error_code = "STORAGE_ERROR"
    category = ErrorCategory.STORAGE
    severity = ErrorSeverity.HIGH


class DecryptionError(BlockstoreError):
    """Raised when a stored secret cannot be decrypted with the current key."""

    error_code = "DECRYPTION_ERROR"
    category = ErrorCategory.SECRET
    severity = ErrorSeverity.CRITICAL


__all__ = [
    "ErrorCategory",
    "ErrorSeverity",
    "ErrorContext",
    "BlockstoreError",
    "ValidationError",
    "NotFoundError",
    "SchemaNotFoundError",
    "DocumentNotFoundError",
    "AlreadyExistsError",
    "SchemaConflictError",
    "ConflictError",
    "CyclicReferenceError",
    "TransientError",
    "StorageError",
    "DecryptionError",
]
