"""Pull the first complete JSON object out of free-form model text.

Models wrap JSON in fences, prefix it with prose, or get cut off mid-object.
The scanner walks the text once with explicit states and reports the span of
the first balanced top-level object, ignoring braces that appear inside
string literals.
"""

from enum import Enum
from typing import Optional


class ScanState(Enum):
    OUTSIDE = "outside"
    IN_OBJECT = "in_object"
    IN_STRING = "in_string"
    ESCAPE_PENDING = "escape_pending"


def find_json_object_span(text: str) -> Optional[tuple[int, int]]:
    """Return ``(start, end)`` of the first balanced ``{...}``, or None.

    ``end`` is exclusive. Returns None when no object starts, or when the
    first object is never closed (truncated output).
    """
    state = ScanState.OUTSIDE
    depth = 0
    start = -1

    for index, char in enumerate(text):
        if state is ScanState.OUTSIDE:
            if char == "{":
                state = ScanState.IN_OBJECT
                depth = 1
                start = index
        elif state is ScanState.IN_OBJECT:
            if char == '"':
                state = ScanState.IN_STRING
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return start, index + 1
        elif state is ScanState.IN_STRING:
            if char == "\\":
                state = ScanState.ESCAPE_PENDING
            elif char == '"':
                state = ScanState.IN_OBJECT
        elif state is ScanState.ESCAPE_PENDING:
            state = ScanState.IN_STRING

    return None


def extract_first_json_object(text: str) -> Optional[str]:
    """Return the text of the first balanced JSON object in ``text``."""
    if not text:
        return None
    span = find_json_object_span(text)
    if span is None:
        return None
    return text[span[0]:span[1]]
