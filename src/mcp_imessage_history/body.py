"""Best-effort text recovery from ``message.attributedBody``.

The attributed body is an NSArchiver typedstream. This module does not decode
it; it scans for runs of printable ASCII, which is enough to recover the text of
most messages whose ``text`` column is empty. A structural decoder can replace
``extract_plain_text`` without touching its callers.
"""
import re
from typing import Optional, Union

PRINTABLE_RUN = re.compile(rb"[\x20-\x7e]{3,}")

# Shown when neither the text column nor the attributed body yields anything
NO_TEXT_PLACEHOLDER = "[No text]"


def extract_plain_text(raw_body: Union[bytes, bytearray, memoryview, str, None]) -> Optional[str]:
    """Join printable ASCII runs (length >= 3) from raw_body with single spaces.

    Returns None when raw_body is absent, unreadable, or contains no such run.
    """
    if raw_body is None:
        return None

    if isinstance(raw_body, str):
        data = raw_body.encode("utf-8", errors="ignore")
    elif isinstance(raw_body, (bytes, bytearray, memoryview)):
        data = bytes(raw_body)
    else:
        return None

    runs = PRINTABLE_RUN.findall(data)
    if not runs:
        return None

    text = b" ".join(runs).decode("ascii").strip()
    return text or None


def message_text(text: Optional[str], raw_body=None) -> str:
    """Return the display text for a message row, never empty."""
    if text and text.strip():
        return text
    return extract_plain_text(raw_body) or NO_TEXT_PLACEHOLDER
