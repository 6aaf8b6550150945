"""
Custom exception hierarchy for the case analysis pipeline.

All exceptions inherit from CAPError, which provides optional context
for structured error handling and logging.
"""

from __future__ import annotations

from typing import Any


class CAPError(Exception):
    """Base exception for all case analysis errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(CAPError):
    """Raised when configuration is invalid or missing.

    Examples:
        - Missing reasoning service API key outside dry-run mode
        - Unreadable ledger path
    """

    pass


class ValidationError(CAPError):
    """Raised when a run request is malformed or empty.

    Surfaced before any stage runs and before the event stream opens.

    Context should include:
        - field: The field that failed validation
        - value: The invalid value (when safe to log)
    """

    pass


class RunInProgressError(ValidationError):
    """Raised when the subject already has a live run executing.

    Context should include:
        - subject_id: The subject being analyzed
        - run_id: The in-flight run
    """

    pass


class UpstreamServiceError(CAPError):
    """Raised when the reasoning service call fails.

    Covers transport failures, non-2xx responses, rate limits and timeouts.
    Fatal to the current stage attempt; never retried automatically.
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        status_code: int | None = None,
        rate_limited: bool = False,
        timed_out: bool = False,
    ) -> None:
        super().__init__(message, context)
        self.status_code = status_code
        self.rate_limited = rate_limited
        self.timed_out = timed_out


class ParseError(CAPError):
    """Raised when a payload does not satisfy its required shape.

    Used for reasoning service responses that are not parseable or miss
    structurally required fields, and for undecodable stream events.
    """

    pass


class PersistenceError(CAPError):
    """Raised when a ledger read or write fails.

    Context should include:
        - run_id: The run being written
        - operation: The ledger operation that failed
    """

    pass
