"""Custom exception classes."""

from typing import Any, Dict, List, Optional


class PaperForgeException(Exception):
    """Base exception for the application."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize exception.

        Args:
            message: Error message
            details: Additional error details
        """
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationException(PaperForgeException):
    """Exception raised during input validation."""

    pass


class StateTransitionException(PaperForgeException):
    """Raised when a paper or section is not in a state that allows the operation."""

    pass


class NotFoundException(PaperForgeException):
    """Raised when a paper, section, question or knowledge record does not exist."""

    pass


class KnowledgeConflictException(PaperForgeException):
    """Raised when a version-checked chapter knowledge write keeps losing the race."""

    pass


class LLMProviderException(PaperForgeException):
    """Exception raised when the LLM provider call fails or returns nothing."""

    pass


class UnrecoverableParseError(PaperForgeException):
    """Raised when no repair heuristic can turn model output into JSON."""

    @property
    def diagnostics(self) -> Dict[str, Any]:
        return self.details


class GenerationException(PaperForgeException):
    """Exception raised during question generation."""

    pass


class RetryExhaustedException(PaperForgeException):
    """Raised by the bounded retry helper once every attempt has failed."""

    def __init__(
        self,
        message: str,
        attempt_errors: List[Dict[str, Any]],
        last_error: Optional[BaseException] = None,
    ):
        super().__init__(message, details={"attempts": attempt_errors})
        self.attempt_errors = attempt_errors
        self.last_error = last_error
