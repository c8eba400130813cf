"""Tests for error message sanitization."""

from paperforge.exceptions import LLMProviderException, RetryExhaustedException
from paperforge.utils.error_utils import (
    GENERIC_ERROR_MESSAGE,
    get_safe_error_detail,
    safe_details,
    sanitize_error_message,
)


def test_sanitize_passthrough_in_development():
    """Test messages are untouched outside production."""
    message = "Failed with key sk-abcdefghijklmnop1234"
    assert sanitize_error_message(message, is_production=False) == message


def test_sanitize_redacts_api_keys():
    """Test OpenAI keys are masked in production."""
    result = sanitize_error_message("Auth failed for sk-abcdefghijklmnop1234 today", True)
    assert "sk-abcdefghijklmnop1234" not in result
    assert "sk-***" in result


def test_sanitize_redacts_sql_and_paths():
    """Test SQL statements and file paths are masked."""
    message = (
        "Insert failed [SQL: INSERT INTO papers VALUES (?)] "
        "[parameters: ('paper_1',)] in /srv/app/data/paperforge.db"
    )
    result = sanitize_error_message(message, True)
    assert "INSERT INTO" not in result
    assert "paper_1" not in result
    assert "/srv/app" not in result


def test_sanitize_short_result_becomes_generic():
    """Test a message reduced to almost nothing is replaced."""
    assert sanitize_error_message("token=abc", True) == GENERIC_ERROR_MESSAGE


def test_safe_error_detail_hides_technical_errors():
    """Test tracebacks and ORM errors are never shown in production."""
    error = RuntimeError("sqlalchemy.exc.OperationalError: database is locked")
    assert get_safe_error_detail(error, is_production=True) == GENERIC_ERROR_MESSAGE
    assert "database is locked" in get_safe_error_detail(error, is_production=False)


def test_safe_error_detail_keeps_domain_messages():
    """Test user-facing messages survive sanitization."""
    error = LLMProviderException("LLM provider returned an empty response")
    assert get_safe_error_detail(error, is_production=True) == (
        "LLM provider returned an empty response"
    )


def test_safe_details_sanitizes_strings_only():
    """Test only string values in details are sanitized."""
    error = RetryExhaustedException("failed", attempt_errors=[{"attempt": 1}])
    details = {"key": "sk-abcdefghijklmnop1234 leaked", "count": 3, **error.details}

    result = safe_details(details, is_production=True)

    assert result["count"] == 3
    assert result["attempts"] == [{"attempt": 1}]
    assert "sk-abcdefghijklmnop1234" not in result["key"]
    assert safe_details(details, is_production=False) is details
