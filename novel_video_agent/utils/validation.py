"""
Validation utilities for the novel video agent.

Small guards used at stage entry points, plus cleanup of
provider output before it is parsed as JSON.
"""

import re
from typing import Iterable

from novel_video_agent.errors import InvalidInputError


# Valid novel styles and narration types
VALID_STYLES = {"anime", "live", "mixed"}
VALID_NARRATION_TYPES = {"narration", "dialogue"}

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?|\n?```\s*$")


def clean_json_content(content: str) -> str:
    """Strip Markdown code fences and surrounding noise from LLM output.

    Models frequently wrap JSON in ```json fences or add a sentence before
    the object. Everything outside the outermost braces is dropped.

    Args:
        content: Raw model output.

    Returns:
        Text that should parse as a JSON object.

    Examples:
        >>> clean_json_content('```json\\n{"scenes": []}\\n```')
        '{"scenes": []}'
    """
    text = content.strip()
    text = _FENCE_RE.sub("", text).strip()

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        text = text[start:end + 1]
    return text


def require_text(value: str, field: str) -> str:
    """Reject None, empty or whitespace-only text."""
    if value is None or not str(value).strip():
        raise InvalidInputError(f"{field} must be non-empty")
    return value


def require_positive(value: int, field: str) -> int:
    """Reject non-integers and values below 1."""
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidInputError(f"{field} must be a positive integer, got {value!r}")
    return value


def require_choice(value: str, choices: Iterable[str], field: str) -> str:
    """Reject values outside an allowed set."""
    allowed = set(choices)
    if value not in allowed:
        raise InvalidInputError(f"Invalid {field}: {value}. Must be one of {sorted(allowed)}")
    return value
