"""
Error taxonomy for the Estimation Service.

Defines hierarchical exceptions with standardized attributes for consistent
error handling, logging, and caller communication throughout the engine.

Each error class implements:
- code: String identifier for the error type
- message: Human-readable description
- context: Dict containing additional contextual information
- retry_hint: Boolean indicating if retry might succeed
"""
from __future__ import annotations
from typing import Any


class EstimationError(Exception):
    """Base exception for all Estimation Service errors."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "UNKNOWN_ERROR",
        context: dict[str, Any] | None = None,
        retry_hint: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.context = dict(context) if context else {}
        self.retry_hint = retry_hint

    def to_dict(self) -> dict[str, Any]:
        """Serialize to structured dict."""
        return {
            "code": self.code,
            "message": self.message,
            "context": dict(self.context),
            "retry_hint": self.retry_hint,
        }


class InvalidRequestError(EstimationError):
    """Malformed task, constraints, options or feedback payload."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "RANK_BAD_REQUEST",
        context: dict[str, Any] | None = None,
        retry_hint: bool = False,
    ) -> None:
        super().__init__(message, code=code, context=context, retry_hint=retry_hint)


class NoCandidateAvailableError(EstimationError):
    """Pool empty after filtering and no usable last-known-good entry."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "RANK_NO_CANDIDATE",
        context: dict[str, Any] | None = None,
        retry_hint: bool = False,
    ) -> None:
        super().__init__(message, code=code, context=context, retry_hint=retry_hint)


class StoreUnavailableError(EstimationError):
    """Candidate, decision or metrics store unreachable."""

    def __init__(
        self,
        message: str,
        *,
        store: str = "unknown",
        code: str = "RANK_STORE_ERROR",
        context: dict[str, Any] | None = None,
        retry_hint: bool = True,
    ) -> None:
        ctx = dict(context) if context else {}
        ctx["store"] = store
        super().__init__(message, code=code, context=ctx, retry_hint=retry_hint)


class CandidateNotFoundError(EstimationError):
    """Candidate id does not exist in the pool."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "CANDIDATE_NOT_FOUND",
        context: dict[str, Any] | None = None,
        retry_hint: bool = False,
    ) -> None:
        super().__init__(message, code=code, context=context, retry_hint=retry_hint)


class DecisionNotFoundError(EstimationError):
    """Decision id does not exist."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "DECISION_NOT_FOUND",
        context: dict[str, Any] | None = None,
        retry_hint: bool = False,
    ) -> None:
        super().__init__(message, code=code, context=context, retry_hint=retry_hint)


class ConfigurationError(EstimationError):
    """Missing or invalid configuration."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "CONFIGURATION_ERROR",
        context: dict[str, Any] | None = None,
        retry_hint: bool = False,
    ) -> None:
        super().__init__(message, code=code, context=context, retry_hint=retry_hint)
