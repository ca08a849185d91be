"""Custom exception classes for the application."""

from typing import Any


class ComboRankError(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


# Input and invariant errors
class ValidationError(ComboRankError):
    """Request or metadata input rejected before any work is done."""

    pass


class MalformedComboError(ComboRankError):
    """A combo violated a construction invariant (duplicate words, bad length)."""

    def __init__(self, words: tuple[str, ...] | list[str], reason: str) -> None:
        super().__init__(
            f"Malformed combo {' '.join(words)!r}: {reason}",
            details={"words": list(words), "reason": reason},
        )


# External API Errors
class ExternalAPIError(ComboRankError):
    """Error calling external API."""

    def __init__(self, api_name: str, message: str) -> None:
        self.api_name = api_name
        super().__init__(f"{api_name} API error: {message}")


class TransientFetchError(ExternalAPIError):
    """Timeout, 5xx or upstream throttling; safe to retry."""

    def __init__(
        self,
        api_name: str,
        message: str,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(api_name, message)


class FetchFailedError(ExternalAPIError):
    """Transient failures persisted through every retry attempt."""

    def __init__(self, api_name: str, attempts: int, last_error: str) -> None:
        self.attempts = attempts
        super().__init__(api_name, f"failed after {attempts} attempts: {last_error}")


# Local resilience rejections (not upstream misbehaviour)
class RateLimitExceededError(ComboRankError):
    """The local token bucket could not supply a token within the wait bound."""

    def __init__(self, limiter_name: str, waited_seconds: float) -> None:
        super().__init__(
            f"Rate limit exceeded for {limiter_name} after waiting {waited_seconds:.2f}s",
            details={"limiter": limiter_name, "waited_seconds": round(waited_seconds, 3)},
        )


class BreakerOpenError(ComboRankError):
    """Circuit breaker is open; the call was rejected without a network attempt."""

    def __init__(self, breaker_name: str, retry_in_seconds: float) -> None:
        self.retry_in_seconds = max(0.0, retry_in_seconds)
        super().__init__(
            f"Circuit breaker open for {breaker_name}; retry in {self.retry_in_seconds:.1f}s",
            details={"breaker": breaker_name, "retry_in_seconds": round(self.retry_in_seconds, 3)},
        )


# Storage errors
class CacheStoreError(ComboRankError):
    """Ranking cache read or write failed."""

    def __init__(self, backend: str, message: str) -> None:
        super().__init__(f"{backend} ranking cache error: {message}")
