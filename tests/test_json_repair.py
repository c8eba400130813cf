"""Tests for model output JSON repair."""

import pytest

from paperforge.exceptions import UnrecoverableParseError
from paperforge.utils.json_repair import clean_json_text, extract_items, repair


def test_repair_plain_json():
    """Test that valid JSON parses unchanged."""
    assert repair('{"a": 1, "b": [1, 2]}') == {"a": 1, "b": [1, 2]}


def test_repair_fenced_json_with_trailing_comma():
    """Test markdown fences and a trailing comma."""
    assert repair('```json\n{"a":1,}\n```') == {"a": 1}


def test_repair_fence_without_language():
    """Test a bare ``` fence."""
    assert repair('```\n[1, 2, 3]\n```') == [1, 2, 3]


def test_repair_strips_surrounding_prose():
    """Test that explanation text around the JSON is dropped."""
    raw = 'Here are the questions you asked for:\n{"questions": []}\nLet me know if you need more.'
    assert repair(raw) == {"questions": []}


def test_repair_bare_array_in_prose():
    """Test an array shape is detected when it comes first."""
    raw = 'Sure:\n[{"a": 1}, {"a": 2}]\nDone.'
    assert repair(raw) == [{"a": 1}, {"a": 2}]


def test_repair_picks_longest_balanced_candidate():
    """Test that the longest balanced object wins when several are present."""
    raw = 'First {"a": 1} then {"a": 2, "b": 3}'
    assert repair(raw) == {"a": 2, "b": 3}


def test_repair_removes_comments_outside_strings():
    """Test line and block comments are stripped but URLs in strings survive."""
    raw = '{"a": [1, 2,], // trailing note\n /* block */ "b": "http://example.com/x"}'
    assert repair(raw) == {"a": [1, 2], "b": "http://example.com/x"}


def test_repair_escapes_raw_newlines_in_strings():
    """Test raw control characters inside strings."""
    raw = '{"q": "line one\nline two\tend"}'
    assert repair(raw) == {"q": "line one\nline two\tend"}


def test_repair_doubles_invalid_escapes():
    """Test LaTeX style backslashes become literal backslashes."""
    raw = r'{"q": "x \in S and \sqrt{2} + \alpha"}'
    assert repair(raw) == {"q": r"x \in S and \sqrt{2} + \alpha"}


def test_repair_keeps_valid_escapes():
    """Test valid escapes such as \\n and \\u are left alone."""
    raw = r'{"q": "a\nb \"quoted\" \u00e9"}'
    assert repair(raw) == {"q": 'a\nb "quoted" é'}


def test_repair_keeps_latex_commands_that_look_like_escapes():
    """Test \\frac is read as a form feed, while \\sqrt stays literal."""
    value = repair(r'{"q": "\frac{1}{2} and \sqrt{4}"}')
    assert value["q"] == "\x0crac{1}{2} and \\sqrt{4}"


def test_repair_smart_quote_delimiters():
    """Test curly quotes used as JSON delimiters."""
    raw = "{“q”: “value”}"
    assert repair(raw) == {"q": "value"}


def test_repair_smart_quotes_inside_strings():
    """Test curly quotes inside a string are escaped, not treated as delimiters."""
    raw = '{"q": "He said “hi” and it’s fine"}'
    assert repair(raw) == {"q": "He said \"hi\" and it's fine"}


def test_repair_removes_zero_width_characters():
    """Test invisible characters are removed."""
    assert repair('{"a":\u200b 1}') == {"a": 1}


def test_repair_recovers_truncated_array():
    """Test output cut off mid-array keeps the complete elements."""
    raw = '{"questions": [{"q": 1}, {"q": 2}, {"q": 3'
    assert repair(raw) == {"questions": [{"q": 1}, {"q": 2}]}


def test_repair_recovers_truncation_inside_string():
    """Test output cut off inside a string literal."""
    raw = '{"questions": [{"q": "one"}, {"q": "tw'
    assert repair(raw) == {"questions": [{"q": "one"}]}


def test_repair_unrecoverable_raises_with_diagnostics():
    """Test text with no JSON raises with diagnostics attached."""
    with pytest.raises(UnrecoverableParseError) as exc_info:
        repair("this is not json at all")

    diagnostics = exc_info.value.diagnostics
    assert diagnostics["response_length"] == len("this is not json at all")
    assert diagnostics["first_chars"] == "this is not json at all"
    assert diagnostics["error_message"]
    assert "cleaned_first_chars" in diagnostics


@pytest.mark.parametrize("raw", [None, "", "   \n"])
def test_repair_empty_response(raw):
    """Test empty responses are unrecoverable."""
    with pytest.raises(UnrecoverableParseError, match="empty"):
        repair(raw)


def test_repair_rejects_scalar():
    """Test a bare scalar is not accepted as model output."""
    with pytest.raises(UnrecoverableParseError):
        repair("42")


def test_clean_json_text_is_idempotent_on_clean_input():
    """Test cleaning valid JSON leaves it as is."""
    text = '{"a": "b", "c": [1, 2]}'
    assert clean_json_text(text) == text


def test_extract_items_wrapped_and_bare():
    """Test list extraction from wrapped and bare shapes."""
    assert extract_items({"questions": [1, 2]}, "questions") == [1, 2]
    assert extract_items([1, 2], "questions") == [1, 2]
    assert extract_items({"other": [1]}, "questions") == []
    assert extract_items({"questions": "nope"}, "questions") == []
