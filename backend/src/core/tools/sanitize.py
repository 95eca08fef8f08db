"""
Sanitization of tool call inputs and results before they are logged or
persisted.

Redaction walks nested dicts and lists. Keys match on a case-insensitive
substring, so ``author`` and ``monkey`` are redacted along with ``api_key``.
Size truncation applies to the whole payload after redaction, so a preview
never leaks a redacted value.
"""

import json
from typing import Any

SENSITIVE_TERMS = ("token", "password", "secret", "key", "credential", "auth")
REDACTED = "[REDACTED]"

DEFAULT_MAX_CHARS = 1000
PREVIEW_CHARS = 500


def is_sensitive_key(key: Any) -> bool:
    lowered = str(key).lower()
    return any(term in lowered for term in SENSITIVE_TERMS)


def redact(value: Any) -> Any:
    """Return a copy with every sensitive key's value replaced, at any depth."""
    if isinstance(value, dict):
        return {
            k: REDACTED if is_sensitive_key(k) else redact(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value


def truncate_payload(value: Any, max_chars: int = DEFAULT_MAX_CHARS) -> Any:
    """Replace payloads whose JSON form exceeds ``max_chars`` with a preview."""
    if value is None:
        return None
    serialized = json.dumps(value, default=str)
    if len(serialized) <= max_chars:
        return value
    return {
        "_truncated": True,
        "_original_length": len(serialized),
        "preview": serialized[:PREVIEW_CHARS] + "...",
    }


def sanitize(value: Any, max_chars: int = DEFAULT_MAX_CHARS) -> Any:
    return truncate_payload(redact(value), max_chars)
