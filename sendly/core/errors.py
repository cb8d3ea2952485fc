from typing import Any


class AppError(Exception):
    """Domain error rendered into the standard error envelope."""

    status_code = 400
    code = "bad_request"

    def __init__(
        self,
        message: str,
        *,
        details: list[dict[str, Any]] | dict[str, Any] | None = None,
        status_code: int | None = None,
        code: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"


class InsufficientCreditsError(AppError):
    status_code = 400
    code = "insufficient_credits"

    def __init__(self, *, required: int, available: int):
        self.required_credits = required
        self.available_credits = available
        self.missing_credits = max(required - available, 0)
        super().__init__(
            f"Insufficient credits. Required: {required}, Available: {available}",
            details={
                "required_credits": required,
                "available_credits": available,
                "missing_credits": self.missing_credits,
            },
        )


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"


class ConflictError(AppError):
    status_code = 409
    code = "conflict"


class InvalidStateError(AppError):
    status_code = 400
    code = "invalid_state"


class TransientError(AppError):
    status_code = 503
    code = "transient_error"


class QueueUnavailableError(AppError):
    status_code = 503
    code = "queue_unavailable"


class ProviderError(AppError):
    status_code = 502
    code = "provider_error"

    def __init__(self, message: str, *, provider: str, retryable: bool = True, **kwargs):
        super().__init__(message, **kwargs)
        self.provider = provider
        self.retryable = retryable
