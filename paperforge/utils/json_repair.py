"""Recover structured data from raw LLM text.

Models asked for "JSON only" still wrap it in markdown fences, surround it
with prose, leave trailing commas and comments, emit bare backslashes from
math notation, or stop mid-array when they hit the output limit. ``repair``
runs a fixed cascade of textual fixes and then parses. Each fix is a
best-effort transform, not a parser; the order matters.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple, Union

from paperforge.exceptions import UnrecoverableParseError

logger = logging.getLogger(__name__)

JSONValue = Union[Dict[str, Any], List[Any]]

RAW_PREVIEW_CHARS = 1000
CLEANED_PREVIEW_CHARS = 500
ERROR_CONTEXT_CHARS = 100

# Initial parse plus one truncation retry
_MAX_PARSE_ATTEMPTS = 2

_CLOSERS = {"{": "}", "[": "]"}
_VALID_ESCAPES = frozenset('"\\/bfnrt')
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")

_FENCE_OPEN = re.compile(r"^`+\s*(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*`+$")
_LINE_COMMENT = re.compile(r"//[^\n]*")
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")
_INVISIBLE_CHARS = re.compile("[\u200b-\u200d\u2060\ufeff]")
_SMART_DOUBLE = re.compile("[\u201c\u201d\u201e\u201f]")
_SMART_SINGLE = re.compile("[\u2018\u2019\u201a\u201b]")


def repair(raw_text: Optional[str]) -> JSONValue:
    """
    Parse model output into a dict or list, repairing it on the way.

    Args:
        raw_text: Raw text returned by the model

    Returns:
        Parsed JSON object or array

    Raises:
        UnrecoverableParseError: If no heuristic produces parseable JSON
    """
    if raw_text is None or not raw_text.strip():
        raise UnrecoverableParseError(
            "Model returned an empty response",
            details={"error_message": "empty response", "response_length": 0},
        )

    cleaned = clean_json_text(raw_text)
    candidate: Optional[str] = cleaned
    first_error: Optional[json.JSONDecodeError] = None

    for attempt in range(1, _MAX_PARSE_ATTEMPTS + 1):
        try:
            value = json.loads(candidate, strict=False)
        except json.JSONDecodeError as exc:
            if first_error is None:
                first_error = exc
            logger.debug(f"JSON parse attempt {attempt} failed at position {exc.pos}: {exc.msg}")
            candidate = _truncate_at_fault(candidate, exc.pos)
            if candidate is None:
                break
            continue

        if isinstance(value, (dict, list)):
            if attempt > 1:
                logger.warning("Recovered model JSON by truncating at the last complete element")
            return value
        first_error = first_error or json.JSONDecodeError(
            "Expected a JSON object or array", cleaned, 0
        )
        break

    diagnostics = get_diagnostic_info(raw_text, first_error, cleaned=cleaned)
    logger.error(
        f"Unrecoverable model JSON ({diagnostics['error_message']}), "
        f"response length {diagnostics['response_length']}"
    )
    raise UnrecoverableParseError(
        f"Could not parse model response as JSON: {diagnostics['error_message']}",
        details=diagnostics,
    )


def clean_json_text(raw_text: str) -> str:
    """Apply every textual fix (fences through quote normalisation) without parsing."""
    text = _strip_code_fences(raw_text.strip())

    opener = _detect_shape(text)
    if opener is not None:
        text = _extract_outer(text, opener)
        candidates = _balanced_candidates(text, opener)
        if candidates:
            text = max(candidates, key=len)

    text = _map_segments(text, outside=_strip_comments_and_commas)
    text = _map_segments(text, inside=_escape_control_chars)
    text = _map_segments(text, inside=_fix_invalid_escapes)

    text = _INVISIBLE_CHARS.sub("", text)
    normalized = _map_segments(
        text, inside=_normalize_quotes_inside, outside=_normalize_quotes_outside
    )
    if normalized != text:
        # Smart quotes used as delimiters open new string literals
        normalized = _map_segments(normalized, inside=_escape_control_chars)
        normalized = _map_segments(normalized, inside=_fix_invalid_escapes)
    return normalized


def extract_items(value: JSONValue, key: str) -> List[Any]:
    """Return the list the model produced, whether bare or wrapped under ``key``."""
    if isinstance(value, list):
        return value
    items = value.get(key)
    if isinstance(items, list):
        return items
    return []


def get_diagnostic_info(
    raw_text: str,
    error: Optional[BaseException],
    cleaned: Optional[str] = None,
) -> Dict[str, Any]:
    """Collect previews of the raw and cleaned text around a failed parse."""
    if cleaned is None:
        cleaned = clean_json_text(raw_text)

    info: Dict[str, Any] = {
        "error_message": str(error) if error else "Unknown error",
        "response_length": len(raw_text),
        "first_chars": raw_text[:RAW_PREVIEW_CHARS],
        "last_chars": raw_text[-RAW_PREVIEW_CHARS:],
        "cleaned_first_chars": cleaned[:CLEANED_PREVIEW_CHARS],
        "cleaned_last_chars": cleaned[-CLEANED_PREVIEW_CHARS:],
        "error_context": None,
    }
    position = getattr(error, "pos", None)
    if isinstance(position, int):
        info["error_position"] = position
        info["error_context"] = cleaned[
            max(0, position - ERROR_CONTEXT_CHARS) : position + ERROR_CONTEXT_CHARS
        ]
    return info


def _strip_code_fences(text: str) -> str:
    text = _FENCE_OPEN.sub("", text)
    return _FENCE_CLOSE.sub("", text)


def _detect_shape(text: str) -> Optional[str]:
    first_object = text.find("{")
    first_array = text.find("[")
    if first_object == -1 and first_array == -1:
        return None
    if first_array == -1:
        return "{"
    if first_object == -1:
        return "["
    return "[" if first_array < first_object else "{"


def _extract_outer(text: str, opener: str) -> str:
    start = text.find(opener)
    end = text.rfind(_CLOSERS[opener])
    if end > start:
        return text[start : end + 1]
    return text[start:]


def _scan(text: str) -> Tuple[List[Tuple[int, int]], List[int], List[str]]:
    """
    Walk ``text`` outside string literals.

    Returns:
        Top-level spans ``(start, end)`` that open with ``{`` or ``[`` and
        close back to depth zero, positions of every closing bracket, and the
        stack of containers still open at the end of the text.
    """
    spans: List[Tuple[int, int]] = []
    closer_positions: List[int] = []
    stack: List[str] = []
    start = 0
    in_string = False
    escaped = False

    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in "{[":
            if not stack:
                start = index
            stack.append(char)
        elif char in "}]":
            closer_positions.append(index)
            if not stack:
                continue
            stack.pop()
            if not stack:
                spans.append((start, index))

    return spans, closer_positions, stack


def _balanced_candidates(text: str, opener: str) -> List[str]:
    spans, _, _ = _scan(text)
    return [text[start : end + 1] for start, end in spans if text[start] == opener]


def _truncate_at_fault(text: str, fault_position: int) -> Optional[str]:
    _, closer_positions, _ = _scan(text)
    before_fault = [pos for pos in closer_positions if pos < fault_position]
    if not before_fault:
        return None

    truncated = text[: before_fault[-1] + 1]
    _, _, still_open = _scan(truncated)
    closing = "".join(_CLOSERS[char] for char in reversed(still_open))
    repaired = truncated + closing
    return repaired if repaired != text else None


def _split_segments(text: str) -> List[Tuple[bool, str]]:
    """Split text into ``(is_string_literal, chunk)`` pieces."""
    segments: List[Tuple[bool, str]] = []
    length = len(text)
    plain_start = 0
    index = 0

    while index < length:
        if text[index] != '"':
            index += 1
            continue
        if index > plain_start:
            segments.append((False, text[plain_start:index]))
        cursor = index + 1
        while cursor < length:
            if text[cursor] == "\\":
                cursor += 2
                continue
            if text[cursor] == '"':
                break
            cursor += 1
        end = min(cursor + 1, length)
        segments.append((True, text[index:end]))
        index = plain_start = end

    if plain_start < length:
        segments.append((False, text[plain_start:]))
    return segments


def _map_segments(text: str, inside=None, outside=None) -> str:
    pieces = []
    for is_string, chunk in _split_segments(text):
        transform = inside if is_string else outside
        pieces.append(transform(chunk) if transform else chunk)
    return "".join(pieces)


def _strip_comments_and_commas(chunk: str) -> str:
    chunk = _BLOCK_COMMENT.sub("", chunk)
    chunk = _LINE_COMMENT.sub("", chunk)
    return _TRAILING_COMMA.sub(r"\1", chunk)


def _escape_control_chars(literal: str) -> str:
    return literal.replace("\n", "\\n").replace("\r", "\\r").replace("\t", "\\t")


def _fix_invalid_escapes(literal: str) -> str:
    """Double every backslash that does not start a valid JSON escape."""
    out = []
    index = 0
    length = len(literal)

    while index < length:
        char = literal[index]
        if char != "\\":
            out.append(char)
            index += 1
            continue

        following = literal[index + 1] if index + 1 < length else ""
        if following and following in _VALID_ESCAPES:
            out.append(char + following)
            index += 2
        elif (
            following == "u"
            and index + 6 <= length
            and all(hex_char in _HEX_DIGITS for hex_char in literal[index + 2 : index + 6])
        ):
            out.append(literal[index : index + 6])
            index += 6
        else:
            out.append("\\\\")
            index += 1

    return "".join(out)


def _normalize_quotes_inside(literal: str) -> str:
    closed = len(literal) > 1 and literal.endswith('"')
    body = literal[1:-1] if closed else literal[1:]
    body = _SMART_DOUBLE.sub(lambda _: '\\"', body)
    body = _SMART_SINGLE.sub("'", body)
    return '"' + body + ('"' if closed else "")


def _normalize_quotes_outside(chunk: str) -> str:
    chunk = _SMART_DOUBLE.sub('"', chunk)
    return _SMART_SINGLE.sub("'", chunk)
