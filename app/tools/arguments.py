"""Repair of raw tool-call argument strings emitted by providers."""

import json
import re
from typing import Any

from app.models.errors import MalformedArguments
from app.utils.logging import get_logger

logger = get_logger(__name__)

_CONTROL_CHARS = re.compile(r"[\n\r\t]")
_CONCATENATED_OBJECTS = re.compile(r"\}\s*\{")
_BLANK_CHARS = " \t\r\n\"'"


def repair_arguments(raw: str | None) -> dict[str, Any]:
    """Turn a raw argument string into an argument object.

    Tries, in order: empty input, a direct parse, a parse without control
    characters, a shallow merge of back-to-back top-level objects (later keys
    win), and finally the span between the first `{` and the last `}`.

    Args:
        raw: Accumulated argument text for one tool call

    Returns:
        The argument object

    Raises:
        MalformedArguments: If every strategy fails
    """
    if raw is None or not raw.strip(_BLANK_CHARS):
        return {}

    candidate = raw.strip()
    parsed = _parse_object(candidate)
    if parsed is not None:
        return parsed

    cleaned = _CONTROL_CHARS.sub("", candidate)
    parsed = _parse_object(cleaned)
    if parsed is not None:
        logger.debug("Tool arguments parsed after stripping control characters")
        return parsed

    if _CONCATENATED_OBJECTS.search(cleaned):
        merged: dict[str, Any] = {}
        fused = 0
        for span in split_top_level_objects(cleaned):
            part = _parse_object(span)
            if part is not None:
                merged.update(part)
                fused += 1
        if fused:
            logger.info(f"Fused {fused} concatenated argument objects into one")
            return merged

    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        parsed = _parse_object(cleaned[start : end + 1])
        if parsed is not None:
            logger.debug("Tool arguments recovered from outer brace span")
            return parsed

    raise MalformedArguments(raw)


def split_top_level_objects(text: str) -> list[str]:
    """Return every top-level `{...}` span of `text`, skipping braces inside strings."""
    spans: list[str] = []
    depth = 0
    start = -1
    in_string = False
    escaped = False

    for position, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = depth > 0
        elif char == "{":
            if depth == 0:
                start = position
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                spans.append(text[start : position + 1])

    return spans


def _parse_object(text: str) -> dict[str, Any] | None:
    try:
        value = json.loads(text)
    except ValueError:
        return None

    # Some providers double-encode the whole object as a JSON string
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return None

    return value if isinstance(value, dict) else None
