"""Error code registry with E-XXXX format codes.

This module defines the error code system for Stockbridge, organizing errors
into categories:
- E-2xxx: Validation errors (operator input, conflict state)
- E-3xxx: Sync errors (provider connectivity, retry exhaustion)
- E-4xxx: System/internal errors (secret store, persisted state)
- E-5xxx: Credential errors

Each error includes a code, title, message template, and remediation steps.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    VALIDATION = "validation"  # E-2xxx
    SYNC = "sync"  # E-3xxx
    SYSTEM = "system"  # E-4xxx
    CREDENTIAL = "credential"  # E-5xxx


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action user should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str
    category: ErrorCategory
    title: str
    message_template: str
    remediation: str
    is_retryable: bool = False


# Named aliases for the codes the services reference directly.
CONFLICT_ALREADY_RESOLVED = "E-2001"
UNKNOWN_PROVIDER = "E-2002"
RETRY_EXHAUSTED = "E-3001"
NO_CONNECTED_PROVIDER = "E-3002"
PROVIDER_SYNC_FAILED = "E-3003"
SECRET_WRITE_FAILED = "E-4001"
PERSISTED_STATE_CORRUPT = "E-4002"
CREDENTIAL_MISSING = "E-5001"
CREDENTIAL_EXPIRED = "E-5002"


ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Validation errors (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.VALIDATION,
        title="Conflict Already Resolved",
        message_template="Conflict {conflict_id} is already {status}.",
        remediation="Refresh the conflict list; only unresolved conflicts can be resolved.",
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.VALIDATION,
        title="Unknown Provider",
        message_template="Unknown provider '{provider}'.",
        remediation="Use one of the supported providers (quickbooks, shopify).",
    ),
    # Sync errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.SYNC,
        title="Retry Exhausted",
        message_template="Retry abandoned after {attempts} attempts.",
        remediation="Reconnect the provider or refresh its token, then run sync manually.",
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.SYNC,
        title="No Connected Provider",
        message_template="No connected provider. Connect QuickBooks or Shopify in Integration Hub.",
        remediation="Save credentials for at least one provider in this workspace.",
        is_retryable=True,
    ),
    "E-3003": ErrorCode(
        code="E-3003",
        category=ErrorCategory.SYNC,
        title="Provider Sync Failed",
        message_template="{provider} sync failed. Review retry queue and token health.",
        remediation="Check the retry queue; refresh or re-enter the provider token.",
        is_retryable=True,
    ),
    # System errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.SYSTEM,
        title="Secret Write Failed",
        message_template="Could not store {kind} for {provider} in the system keychain.",
        remediation="Unlock the system keychain and retry.",
        is_retryable=True,
    ),
    "E-4002": ErrorCode(
        code="E-4002",
        category=ErrorCategory.SYSTEM,
        title="Persisted State Corrupt",
        message_template="Stored collection '{key}' could not be decoded; starting empty.",
        remediation="Restore a backup if the collection held data you need.",
    ),
    # Credential errors (E-5xxx)
    "E-5001": ErrorCode(
        code="E-5001",
        category=ErrorCategory.CREDENTIAL,
        title="Credential Missing",
        message_template="Sync blocked: connect {provider} credentials first.",
        remediation="Save an access token for this provider.",
        is_retryable=True,
    ),
    "E-5002": ErrorCode(
        code="E-5002",
        category=ErrorCategory.CREDENTIAL,
        title="Credential Expired",
        message_template="{provider} access token expired and no refresh token is available.",
        remediation="Re-authenticate with the provider or save a refresh token.",
        is_retryable=True,
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Get error definition by code.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all errors in a category.

    Args:
        category: The error category to filter by.

    Returns:
        List of ErrorCode objects in the specified category.
    """
    return [e for e in ERROR_REGISTRY.values() if e.category == category]
