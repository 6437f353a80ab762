"""Error handling framework for Stockbridge.

This package provides:
- Error code registry with E-XXXX format codes
- Typed domain exceptions
- Error formatting utilities

Error categories:
- E-2xxx: Validation errors
- E-3xxx: Sync errors
- E-4xxx: System/internal errors
- E-5xxx: Credential errors
"""

from src.errors.domain import (
    DomainError,
    IntegrationError,
    NotFoundError,
)
from src.errors.formatter import format_error, render_message, to_exception
from src.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    # Exceptions
    "DomainError",
    "IntegrationError",
    "NotFoundError",
    # Formatter
    "format_error",
    "render_message",
    "to_exception",
]
