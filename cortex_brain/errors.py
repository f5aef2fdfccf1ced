"""Exception hierarchy shared by the pipeline."""

from __future__ import annotations


class CortexError(Exception):
    """Base class for all Cortex Brain errors."""


class InputError(CortexError):
    """Malformed or missing client input; surfaced synchronously."""


class NotFound(CortexError, KeyError):
    """A point lookup did not match any record."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class InvalidTransition(CortexError):
    """A job status change that the state machine does not allow."""


class StaleClaim(InvalidTransition):
    """The job is no longer held by the claim that tries to finish it."""


class ExecutionFailure(CortexError):
    """A lobe, context read or provider call failed for good."""


class TransientProviderError(CortexError):
    """Rate limit or quota error from a model provider; safe to retry."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


__all__ = [
    "CortexError",
    "InputError",
    "NotFound",
    "InvalidTransition",
    "StaleClaim",
    "ExecutionFailure",
    "TransientProviderError",
]
