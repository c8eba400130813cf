"""Normalization helpers for question items produced by the model."""

import re
from typing import Any, Dict, Optional

OPTION_LABELS = ("A", "B", "C", "D", "E", "F")

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")
_LEADING_LABEL = re.compile(r"^\(?([A-Fa-f])[\).:](?:\s|$)")


def camel_to_snake(value: str) -> str:
    """Convert ``directRecall`` style names to ``direct_recall``."""
    return _CAMEL_BOUNDARY.sub("_", value.strip()).lower().replace("-", "_").replace(" ", "_")


def pick(item: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first present, non-empty value among ``keys``."""
    for key in keys:
        value = item.get(key)
        if value not in (None, "", [], {}):
            return value
    return default


def normalize_options(options: Any) -> Dict[str, str]:
    """
    Coerce model options into a label to text mapping.

    Accepts a mapping (labels are upper-cased) or a list of strings, which
    is labelled A, B, C and so on in order.
    """
    if isinstance(options, dict):
        return {
            str(label).strip().upper(): str(text).strip()
            for label, text in options.items()
            if text is not None
        }
    if isinstance(options, list):
        normalized = {}
        for label, text in zip(OPTION_LABELS, options):
            if isinstance(text, dict):
                text = text.get("text", "")
            normalized[label] = _strip_label(str(text).strip(), label)
        return normalized
    return {}


def normalize_answer(answer: Any, options: Dict[str, str]) -> Optional[str]:
    """
    Resolve the correct answer to an option label.

    Accepts a bare label, a label with punctuation such as ``"(b)"`` or
    ``"B."``, or the full text of one of the options.
    """
    if answer is None:
        return None
    text = str(answer).strip()
    if not text:
        return None
    if text.upper() in options:
        return text.upper()

    match = _LEADING_LABEL.match(text)
    if match and match.group(1).upper() in options:
        return match.group(1).upper()

    for label, option_text in options.items():
        if option_text.strip().lower() == text.lower():
            return label
    return text


def _strip_label(text: str, label: str) -> str:
    match = _LEADING_LABEL.match(text)
    if match and match.group(1).upper() == label:
        return text[match.end():].strip()
    return text
