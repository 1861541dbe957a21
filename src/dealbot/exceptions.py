"""
Exception hierarchy for the deal evaluation core.

All exceptions inherit from DealbotError, which carries optional structured
context for logging.
"""

from __future__ import annotations

from typing import Any


class DealbotError(Exception):
    """Base exception for all dealbot errors.

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


class ConfigurationError(DealbotError):
    """Raised when configuration is invalid or a required endpoint is missing."""


class DealNotFoundError(DealbotError):
    """Raised when an operation names a deal that was never created.

    Context should include:
        - deal_id: The unknown deal identifier
    """


class RunNotFoundError(DealbotError):
    """Raised when a run-scoped operation finds no run for the deal.

    Context should include:
        - deal_id: The deal identifier
        - run_id: The run identifier, when one was requested
    """


class PersistenceWriteError(DealbotError):
    """Raised when the event log cannot be appended after retries.

    Context should include:
        - deal_id: The deal identifier
        - path: File that failed to write
        - event_type: Type of the event being appended
    """


class OutputValidationError(DealbotError):
    """Raised when a stage output is required to satisfy its contract.

    Context should include:
        - schema: Contract name
        - errors: Formatted validation errors
    """


class ProviderError(DealbotError):
    """Raised when an external provider call fails.

    Context should include:
        - provider: Provider name
        - status_code: HTTP status code if applicable
    """


class ProviderTimeoutError(ProviderError):
    """Raised when an external provider call exceeds its timeout.

    Context should include:
        - provider: Provider name
        - timeout_s: The timeout that elapsed
    """


class ReasoningError(ProviderError):
    """Raised when a reasoning unit returns an unusable response.

    Context should include:
        - agent_id: The persona that was invoked
        - reason: Short description of the failure
    """
