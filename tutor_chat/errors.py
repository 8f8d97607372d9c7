"""
Error taxonomy for the tutor chat service.

Only ValidationError, RateLimitExceeded and the provider errors ever reach the
end user. Cache and cost-tracking failures are logged and degrade silently.
"""
from typing import Optional


class ChatCoreError(Exception):
    """Base class for all chat core errors."""

    status_code = 500
    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        if user_message is not None:
            self.user_message = user_message


class ValidationError(ChatCoreError):
    """Malformed request. Rejected immediately, never retried, never billed."""

    status_code = 400
    user_message = "Your message could not be processed. Please check it and try again."


class RateLimitExceeded(ChatCoreError):
    """Admission denied by the rate limiter."""

    status_code = 429

    def __init__(self, limited_by: str, retry_after_seconds: int, user_message: Optional[str] = None):
        self.limited_by = limited_by
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Rate limit exceeded (limited by {limited_by}, retry after {retry_after_seconds}s)",
            user_message or f"You're sending messages too quickly. Please try again in {retry_after_seconds} seconds.",
        )


class UnknownModelError(ChatCoreError):
    """Model id not present in the registry."""

    def __init__(self, model_id: str):
        self.model_id = model_id
        super().__init__(f"Unknown model: {model_id}")


class ProviderError(ChatCoreError):
    """Base class for completion provider failures."""

    status_code = 503
    user_message = "The assistant is temporarily unavailable. Please try again in a few seconds."


class ProviderAuthError(ProviderError):
    """Invalid credentials or permission denied. Never retried."""

    status_code = 502
    user_message = "The assistant is unavailable right now. Please let your instructor know if this keeps happening."


class ProviderTransientError(ProviderError):
    """Timeouts, overload, connection resets and other retryable failures."""


class RetriesExhaustedError(ProviderTransientError):
    """Raised once every attempt against the provider has failed."""

    def __init__(self, attempts: int, last_error: Optional[BaseException]):
        self.attempts = attempts
        self.last_error = last_error
        detail = str(last_error) if last_error else "Unknown error"
        super().__init__(f"Failed after {attempts} attempts: {detail}")


class RetrieverContractError(ChatCoreError):
    """The context retriever returned a malformed chunk."""

    status_code = 502
    user_message = "Course search is temporarily unavailable. Please try again in a few seconds."


class CostTrackingFailure(ChatCoreError):
    """Usage accounting failed. Logged, never fails a chat response."""


class SessionAccessDenied(ChatCoreError):
    """The chat session exists but belongs to another user."""

    status_code = 403
    user_message = "This conversation is not available. Please start a new one."
