"""Typed domain exceptions.

Store operations recover from integration failures locally and report them
through return values. These exceptions cover the remaining seams: lookups
by id from the CLI and coded integration errors (unknown provider names,
for one) that the CLI renders with their remediation text.

Usage:
    # In service layer
    raise NotFoundError("Conflict", conflict_id)

    # In CLI command
    try:
        platform.require_conflict(conflict_id)
    except NotFoundError as e:
        console.print(f"[red]{e}[/red]")
"""

from src.errors.registry import get_error


class DomainError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class NotFoundError(DomainError):
    """Resource was not found."""

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class IntegrationError(DomainError):
    """Coded integration failure (E-XXXX)."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message

    @property
    def remediation(self) -> str:
        error_def = get_error(self.code)
        return error_def.remediation if error_def else ""
