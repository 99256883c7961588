"""Output truncation: bound tool payloads before they reach the model."""

from __future__ import annotations

MAX_LINES = 2000
MAX_BYTES = 50 * 1024  # 50KB


def truncate_output(
    text: str,
    max_lines: int = MAX_LINES,
    max_bytes: int = MAX_BYTES,
) -> str:
    """Keep the head of ``text`` within line and byte limits.

    A notice describing what was dropped is appended so the model knows the
    payload is partial.
    """
    if not text:
        return text

    lines = text.split("\n")
    byte_count = len(text.encode("utf-8", errors="replace"))
    if len(lines) <= max_lines and byte_count <= max_bytes:
        return text

    skipped_lines = max(0, len(lines) - max_lines)
    result = "\n".join(lines[:max_lines])

    encoded = result.encode("utf-8", errors="replace")
    skipped_bytes = 0
    if len(encoded) > max_bytes:
        # Cut at a safe UTF-8 boundary
        result = encoded[:max_bytes].decode("utf-8", errors="ignore")
        skipped_bytes = byte_count - max_bytes

    dropped = []
    if skipped_lines:
        dropped.append(f"{skipped_lines} lines")
    if skipped_bytes:
        dropped.append(f"{skipped_bytes} bytes")

    return (
        f"{result}\n[Output truncated: {' and '.join(dropped)} omitted. "
        f"Total: {len(lines)} lines, {byte_count} bytes]"
    )
