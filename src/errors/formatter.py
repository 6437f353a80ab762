"""Error formatting utilities.

Renders registry codes into the short strings stored on retry jobs and
ledger events, and into IntegrationError instances for the CLI.
"""

from src.errors.domain import IntegrationError
from src.errors.registry import get_error


def render_message(code: str, **context: object) -> str:
    """Render a registry message template with context substitution.

    Missing placeholders leave the template text in place rather than
    failing, so a partially-known context still yields a readable message.

    Args:
        code: Error code in E-XXXX format.
        **context: Values for the message template placeholders.

    Returns:
        The formatted message, or "Unknown error: <code>".
    """
    error_def = get_error(code)
    if error_def is None:
        return f"Unknown error: {code}"
    try:
        return error_def.message_template.format(**context)
    except KeyError:
        return error_def.message_template


def format_error(code: str, **context: object) -> str:
    """Format an error for display as "[E-XXXX] Title: message".

    Args:
        code: Error code in E-XXXX format.
        **context: Values for the message template placeholders.

    Returns:
        Formatted single-line error string.
    """
    error_def = get_error(code)
    title = error_def.title if error_def else "Error"
    return f"[{code}] {title}: {render_message(code, **context)}"


def to_exception(code: str, **context: object) -> IntegrationError:
    """Build an IntegrationError from a registry code."""
    return IntegrationError(code, render_message(code, **context))
