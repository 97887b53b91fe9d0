"""Domain exceptions and provider error classification."""

from __future__ import annotations


class FunctionsBotError(Exception):
    """Base class for all functions-bot errors."""


class ConfigError(FunctionsBotError):
    """Configuration file is missing or invalid."""


class CompletionError(FunctionsBotError):
    """The completion API returned an unusable response."""


def _status_of(error: BaseException) -> int | None:
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(error, "status", None)
    return status if isinstance(status, int) else None


def is_invalid_parameter_error(error: BaseException) -> bool:
    """400 responses caused by malformed request parameters (tool arguments)."""
    return _status_of(error) == 400 and "Invalid parameter" in str(error)


def is_context_length_error(error: BaseException) -> bool:
    """The request did not fit into the model context window."""
    code = getattr(error, "code", None)
    return code == "context_length_exceeded" or "context_length_exceeded" in str(error)
