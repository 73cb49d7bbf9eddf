"""Phaseloop error hierarchy."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    """Category of error for classification and handling."""

    RESOURCE = "resource"
    TIMEOUT = "timeout"
    AGENT = "agent"
    RATE_LIMIT = "rate_limit"
    RECOVERY = "recovery"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class OrchestratorError(Exception):
    """Base error for all orchestrator exceptions."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        retryable: bool = True,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, category={self.category!r})"


class ConcurrencyExceeded(OrchestratorError):
    """The resource manager is already tracking its maximum of operations."""

    def __init__(self, limit: int, operation_id: str = "") -> None:
        super().__init__(
            f"Maximum concurrent operations ({limit}) reached",
            category=ErrorCategory.RESOURCE,
            details={"operation_id": operation_id},
        )
        self.limit = limit
        self.operation_id = operation_id


class OperationTimedOut(OrchestratorError):
    """An operation did not settle before its deadline."""

    def __init__(self, operation_id: str, timeout: float) -> None:
        super().__init__(
            f"Operation {operation_id} timed out after {timeout:g}s",
            category=ErrorCategory.TIMEOUT,
        )
        self.operation_id = operation_id
        self.timeout = timeout


class AgentProcessFailed(OrchestratorError):
    """The agent subprocess exited with a nonzero status."""

    def __init__(
        self,
        exit_code: int | None,
        combined_output: str,
        *,
        category: ErrorCategory = ErrorCategory.AGENT,
    ) -> None:
        super().__init__(
            f"Agent exited with code {exit_code}: {combined_output[:1000]}",
            category=category,
        )
        self.exit_code = exit_code
        self.combined_output = combined_output


class RateLimited(AgentProcessFailed):
    """Agent failure whose output reports provider rate limiting."""

    def __init__(self, exit_code: int | None, combined_output: str) -> None:
        super().__init__(exit_code, combined_output, category=ErrorCategory.RATE_LIMIT)


class AgentProducedNoOutput(OrchestratorError):
    """The agent exited cleanly without writing a single record."""

    def __init__(self) -> None:
        super().__init__("Agent produced no output", category=ErrorCategory.AGENT)


class AgentOutputMalformed(OrchestratorError):
    """A line of agent output could not be parsed as a structured record."""

    def __init__(self, reason: str, sample: str) -> None:
        super().__init__(
            f"Failed to parse agent output: {reason}. Output: {sample[:500]}",
            category=ErrorCategory.AGENT,
            retryable=False,
        )
        self.sample = sample[:500]


class RecoveryExhausted(OrchestratorError):
    """Every recovery attempt failed."""

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        message = f"Error recovery failed after {attempts} attempts"
        if last_error is not None:
            message = f"{message}: {last_error}"
        super().__init__(message, category=ErrorCategory.RECOVERY, retryable=False)
        self.attempts = attempts
        self.last_error = last_error


class ConfigurationError(OrchestratorError):
    """Invalid or missing configuration."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION, retryable=False)
