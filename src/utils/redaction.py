"""Secret redaction for log lines, error text, and webhook previews.

Inbound webhook lines are operator-pasted free text and may carry signing
secrets or tokens; error messages can echo provider responses. Both pass
through here before they are logged or persisted in durable state.
"""

import re

# Substring patterns matched case-insensitively against dict keys
_DEFAULT_SENSITIVE_PATTERNS = frozenset({
    "secret", "token", "authorization", "api_key", "password",
    "credential", "signature",
})

_REDACTED = "***REDACTED***"

_SENSITIVE_KEYWORDS = (
    r"secret|token|password|api_key|signature|"
    r"access_token|refresh_token|webhook_secret|authorization|credential"
)
_SENSITIVE_VALUE_PATTERNS = re.compile(
    r"(?i)"
    r"(?:"
    # Authorization: Bearer <token>
    r"Authorization\s*:\s*Bearer\s+\S+"
    r"|"
    # JSON-style "key": "value"
    r'"(?:' + _SENSITIVE_KEYWORDS + r')"\s*:\s*"[^"]*"'
    r"|"
    # key="quoted value"
    r"(?:" + _SENSITIVE_KEYWORDS + r")\s*[=:]\s*\"[^\"]*\""
    r"|"
    # key=value, terminated like webhook tokens (space, comma, semicolon)
    r"(?:" + _SENSITIVE_KEYWORDS + r")\s*[=:]\s*[^\s,;]+"
    r")",
)


def redact_for_logging(
    obj: dict,
    sensitive_patterns: frozenset[str] = _DEFAULT_SENSITIVE_PATTERNS,
) -> dict:
    """Return a copy of ``obj`` with sensitive values replaced.

    Keys are matched case-insensitively by substring. Nested dicts and
    lists of dicts are handled recursively.
    """
    result = {}
    for key, value in obj.items():
        key_lower = key.lower()
        if any(pattern in key_lower for pattern in sensitive_patterns):
            result[key] = _REDACTED
        elif isinstance(value, dict):
            result[key] = redact_for_logging(value, sensitive_patterns)
        elif isinstance(value, list):
            result[key] = [
                redact_for_logging(item, sensitive_patterns) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            result[key] = value
    return result


def sanitize_error_message(msg: str | None, max_length: int = 2000) -> str | None:
    """Sanitize free text for safe persistence.

    Redacts sensitive-looking key=value pairs and truncates to max_length.

    Args:
        msg: Text to sanitize (None passes through).
        max_length: Maximum length of the sanitized text.

    Returns:
        Sanitized and truncated text, or None.
    """
    if msg is None:
        return None
    sanitized = _SENSITIVE_VALUE_PATTERNS.sub(_REDACTED, msg)
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length - 3] + "..."
    return sanitized
