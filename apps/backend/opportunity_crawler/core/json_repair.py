"""
Cleaning and repair of JSON returned by language models.
"""

import json
import logging
import re
from typing import Any, Iterable, List, Optional

from opportunity_crawler.core.errors import LLMResponseError

logger = logging.getLogger(__name__)

_FENCE_START = re.compile(r"^\s*```(?:json)?\s*", re.IGNORECASE)
_FENCE_END = re.compile(r"\s*```\s*$")

# Characters that may legitimately follow the closing quote of a JSON string
_STRING_TERMINATORS = ",:}]"


def strip_code_fences(response: str) -> str:
    """Remove ```json ... ``` wrappers."""
    text = _FENCE_START.sub("", response or "", count=1)
    return _FENCE_END.sub("", text, count=1)


def escape_inner_quotes(text: str) -> str:
    """
    Escape unescaped double quotes that sit inside JSON string values.

    A quote inside a string is treated as the closing quote only when the next
    non-whitespace character can follow a string (``, : } ]`` or end of text).
    Everything else is an embedded quote and gets a backslash.
    """
    out = []
    in_string = False
    escaped = False
    length = len(text)

    for i, char in enumerate(text):
        if not in_string:
            out.append(char)
            if char == '"':
                in_string = True
            continue

        if escaped:
            out.append(char)
            escaped = False
            continue

        if char == "\\":
            out.append(char)
            escaped = True
            continue

        if char == '"':
            j = i + 1
            while j < length and text[j] in " \t\r\n":
                j += 1
            if j >= length or text[j] in _STRING_TERMINATORS:
                in_string = False
                out.append(char)
            else:
                out.append('\\"')
            continue

        out.append(char)

    return "".join(out)


def missing_required_fields(parsed: Any, required_fields: Iterable[str]) -> List[str]:
    """
    Required fields absent from the payload.

    For arrays a field only counts as missing when *every* element lacks it.
    """
    missing = []
    for field in required_fields:
        if isinstance(parsed, list):
            if all(not isinstance(item, dict) or field not in item for item in parsed):
                missing.append(field)
        elif not isinstance(parsed, dict) or field not in parsed:
            missing.append(field)
    return missing


def _validated(parsed: Any, required_fields: List[str]) -> Any:
    missing = missing_required_fields(parsed, required_fields)
    if missing:
        raise LLMResponseError(f"Invalid LLM format: Missing required fields: {', '.join(missing)}")
    return parsed


def clean_llm_json(
    response: Optional[str],
    required_fields: Optional[List[str]] = None,
    preserve_formatting: bool = True,
) -> Any:
    """
    Parse an LLM JSON response.

    Steps: strip code fences, strict parse, on failure one repair pass that
    escapes stray quotes inside string values, then required-field
    validation. Raises LLMResponseError when the payload stays unusable.
    """
    required_fields = list(required_fields or [])
    stripped = strip_code_fences(response or "")

    if not preserve_formatting:
        stripped = stripped.replace("\\n", " ").strip()

    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError as initial_error:
        logger.debug(f"[json_repair] Strict parse failed ({initial_error}), attempting repair")
        try:
            parsed = json.loads(escape_inner_quotes(stripped))
        except json.JSONDecodeError as repair_error:
            logger.error(f"[json_repair] Failed to parse JSON even after fixes: {stripped[:200]!r}")
            raise LLMResponseError(f"Unparseable LLM response: {repair_error}") from repair_error

    return _validated(parsed, required_fields)
