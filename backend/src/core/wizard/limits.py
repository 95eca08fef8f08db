"""
Byte ceilings for text persisted in the session document.

Truncation keeps the head of the text and appends a marker naming how many
bytes were dropped. The result never exceeds the ceiling and never splits a
UTF-8 sequence.
"""

from dataclasses import dataclass

TRUNCATION_MARKER = "\n...[truncated {} bytes]"


@dataclass(frozen=True)
class TruncatedText:
    """Text cut to a byte ceiling."""
    text: str
    truncated: bool
    original_bytes: int


def truncate_text(text: str, limit_bytes: int) -> TruncatedText:
    """
    Cut ``text`` to at most ``limit_bytes`` UTF-8 bytes.

    Deterministic: the same input and limit always yield the same output.
    """
    if limit_bytes < 0:
        raise ValueError("limit_bytes must be non-negative")

    encoded = text.encode("utf-8")
    original = len(encoded)
    if original <= limit_bytes:
        return TruncatedText(text=text, truncated=False, original_bytes=original)

    # Budget the marker for the largest possible dropped count so the final
    # marker can only be shorter or equal.
    budget = len(TRUNCATION_MARKER.format(original).encode("utf-8"))
    keep = limit_bytes - budget
    if keep <= 0:
        marker = TRUNCATION_MARKER.format(original).encode("utf-8")[:limit_bytes]
        return TruncatedText(
            text=marker.decode("utf-8", errors="ignore"),
            truncated=True,
            original_bytes=original,
        )

    head = encoded[:keep].decode("utf-8", errors="ignore")
    dropped = original - len(head.encode("utf-8"))
    return TruncatedText(
        text=head + TRUNCATION_MARKER.format(dropped),
        truncated=True,
        original_bytes=original,
    )


def byte_length(text: str) -> int:
    return len(text.encode("utf-8"))
