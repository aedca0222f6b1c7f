"""Error taxonomy shared by the context pipeline and the streaming orchestrator."""
from __future__ import annotations

from enum import Enum


class PipelineError(RuntimeError):
    """Base class for every failure surfaced by a chat turn."""

    user_message = "Sorry, I encountered an error while answering your question."

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.__cause__ = cause


class ExtractionError(PipelineError):
    """Raised when source text cannot be read from a document."""

    user_message = "The document could not be read. It may be missing or corrupt."


class RetrievalError(PipelineError):
    """Raised when the embedding/search backend is unavailable or timed out."""

    user_message = "Document search is unavailable right now. Please try again."


class BudgetExceededWithoutFit(PipelineError):
    """No candidate fits the remaining token budget.

    This is a warning condition: the builder logs it and sends the query
    without context instead of raising it.
    """


class StreamingError(PipelineError):
    """Raised when generation fails after the model call was issued."""

    user_message = "The response could not be completed. Please try again."


class ApiErrorKind(str, Enum):
    """Error kinds reported by the LLM API error body."""

    INVALID_REQUEST = "invalid_request_error"
    AUTHENTICATION = "authentication_error"
    PERMISSION = "permission_error"
    NOT_FOUND = "not_found_error"
    REQUEST_TOO_LARGE = "request_too_large"
    RATE_LIMIT = "rate_limit_error"
    API = "api_error"
    OVERLOADED = "overloaded_error"
    NO_API_KEY = "no_api_key"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: object) -> "ApiErrorKind":
        try:
            return cls(str(value))
        except ValueError:
            return cls.UNKNOWN

    @classmethod
    def from_status(cls, status_code: int) -> "ApiErrorKind":
        return _STATUS_KINDS.get(status_code, cls.API if status_code >= 500 else cls.UNKNOWN)


_STATUS_KINDS = {
    400: ApiErrorKind.INVALID_REQUEST,
    401: ApiErrorKind.AUTHENTICATION,
    403: ApiErrorKind.PERMISSION,
    404: ApiErrorKind.NOT_FOUND,
    413: ApiErrorKind.REQUEST_TOO_LARGE,
    429: ApiErrorKind.RATE_LIMIT,
    529: ApiErrorKind.OVERLOADED,
}

_API_USER_MESSAGES = {
    ApiErrorKind.NO_API_KEY: "Please configure your API key to use the chat feature.",
    ApiErrorKind.AUTHENTICATION: "Invalid API key. Please check your API key.",
    ApiErrorKind.RATE_LIMIT: "API rate limit exceeded. Please wait a moment before trying again.",
    ApiErrorKind.REQUEST_TOO_LARGE: "The document context is too large. Try with fewer or smaller documents.",
    ApiErrorKind.OVERLOADED: "The model is overloaded right now. Please try again shortly.",
}


class ApiError(StreamingError):
    """Structured error returned by the LLM API (non-2xx or ``error`` event)."""

    def __init__(
        self,
        message: str,
        *,
        kind: ApiErrorKind = ApiErrorKind.UNKNOWN,
        status_code: int | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.kind = kind
        self.status_code = status_code

    @property
    def user_message(self) -> str:  # type: ignore[override]
        return _API_USER_MESSAGES.get(self.kind, StreamingError.user_message)

    @property
    def is_retryable(self) -> bool:
        return self.kind in {ApiErrorKind.RATE_LIMIT, ApiErrorKind.OVERLOADED, ApiErrorKind.API}


class CacheCorruptionError(PipelineError):
    """Raised when a cached entry cannot be decoded. Always treated as a miss."""


class TurnCancelledError(PipelineError):
    """Raised at a stage boundary when the turn was cancelled."""

    user_message = "The request was cancelled."


__all__ = [
    "ApiError",
    "ApiErrorKind",
    "BudgetExceededWithoutFit",
    "CacheCorruptionError",
    "ExtractionError",
    "PipelineError",
    "RetrievalError",
    "StreamingError",
    "TurnCancelledError",
]
