"""Error types raised by the orchestrator and its collaborators."""

from __future__ import annotations

from typing import Any


class OrchestratorError(Exception):
    """Base error with a machine-readable code and an HTTP-ish status."""

    default_code = "INTERNAL_ERROR"
    default_status = 500

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.status_code = status_code or self.default_status
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidRequestError(OrchestratorError):
    """Raised when a submission is malformed; nothing has been created."""

    default_code = "VALIDATION_ERROR"
    default_status = 400


class OperationNotFoundError(OrchestratorError):
    default_code = "NOT_FOUND"
    default_status = 404


class RateLimitExceededError(OrchestratorError):
    """Raised when the rate gate rejects an admission."""

    default_code = "RATE_LIMIT_EXCEEDED"
    default_status = 429

    def __init__(
        self,
        message: str,
        *,
        limiter: str,
        retry_after: int,
        limit: int,
        reset_at: float,
    ) -> None:
        super().__init__(message, details={"limiter": limiter})
        self.limiter = limiter
        self.retry_after = retry_after
        self.limit = limit
        self.reset_at = reset_at

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["retryAfter"] = self.retry_after
        return payload


class OperationAlreadyStartedError(OrchestratorError):
    """Raised when processing is requested twice for the same operation."""

    default_code = "ALREADY_STARTED"
    default_status = 409


class InvalidConcurrencyError(OrchestratorError, ValueError):
    default_code = "INVALID_CONCURRENCY"
    default_status = 500


class StoreError(OrchestratorError):
    default_code = "STORE_ERROR"
    default_status = 500


class OperationTimeoutError(OrchestratorError):
    """Raised in place of an apply call once the operation deadline has passed."""

    default_code = "operation_timeout"
    default_status = 504
