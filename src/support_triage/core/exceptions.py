"""Custom exceptions for Support Triage."""

from __future__ import annotations


class SupportTriageError(Exception):
    """Base exception for all Support Triage errors."""


class AuthenticationError(SupportTriageError):
    """The Gmail access token is missing, expired or rejected."""


class RateLimitError(SupportTriageError):
    """An upstream provider or the local request gate rejected the call."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ProviderError(SupportTriageError):
    """An upstream API (Gmail, OpenAI) returned an unexpected error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ParseError(SupportTriageError):
    """The LLM response could not be turned into verdicts."""


class EmptyResponse(ParseError):
    """The LLM returned no content."""


class InvalidResponseFormat(ParseError):
    """The LLM content was not JSON or had an unexpected shape."""


class ExtractionError(SupportTriageError):
    """A MIME part could not be decoded."""


class StorageError(SupportTriageError):
    """A document store read or write failed."""
